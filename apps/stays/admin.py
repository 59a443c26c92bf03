from django.contrib import admin
from .models import Stay


@admin.register(Stay)
class StayAdmin(admin.ModelAdmin):
    """Read-mostly admin for stays mirrored from the property system."""

    list_display = ['guest_name', 'room_number', 'check_in', 'check_out', 'status']
    list_filter = ['status']
    search_fields = ['guest_name', 'room_number']
    date_hierarchy = 'check_in'
    readonly_fields = ['created_at', 'updated_at']
