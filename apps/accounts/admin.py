# ==========================================
# apps/accounts/admin.py
# ==========================================

from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin
from django.utils.html import format_html
from .models import User, StaffRole


@admin.register(User)
class UserAdmin(BaseUserAdmin):
    """
    Admin interface for hotel staff accounts.

    Reception staff issue and cancel vouchers, cafeteria staff
    validate and redeem them. Admins can do both.
    """

    list_display = [
        'email',
        'display_name',
        'role_badge',
        'is_active',
        'created_at',
        'last_login',
    ]

    list_filter = [
        'role',
        'is_active',
        'is_staff',
    ]

    search_fields = [
        'email',
        'display_name',
    ]

    ordering = ['-created_at']

    fieldsets = (
        ('Basic Information', {
            'fields': ('email', 'display_name', 'password')
        }),
        ('Role', {
            'fields': ('role',)
        }),
        ('Permissions', {
            'fields': ('is_active', 'is_staff', 'is_superuser', 'groups', 'user_permissions'),
        }),
        ('Timestamps', {
            'fields': ('created_at', 'last_login'),
            'classes': ('collapse',),
        }),
    )

    add_fieldsets = (
        ('Create User', {
            'classes': ('wide',),
            'fields': ('email', 'display_name', 'role', 'password1', 'password2'),
        }),
    )

    readonly_fields = [
        'created_at',
        'last_login',
    ]

    filter_horizontal = ['groups', 'user_permissions']

    def role_badge(self, obj):
        """Display staff role as colored badge."""
        colors = {
            StaffRole.ADMIN: ('#B85C5C', 'white'),
            StaffRole.RECEPTION: ('#A47449', 'white'),
            StaffRole.CAFETERIA: ('#6B8E5E', 'white'),
        }
        bg, fg = colors.get(obj.role, ('#ccc', '#666'))
        return format_html(
            '<span style="background: {}; color: {}; padding: 3px 8px; '
            'border-radius: 10px; font-size: 11px;">{}</span>',
            bg, fg, obj.get_role_display()
        )
    role_badge.short_description = 'Role'
    role_badge.admin_order_field = 'role'
