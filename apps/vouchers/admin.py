# ==========================================
# apps/vouchers/admin.py
# ==========================================

from django.contrib import admin
from django.utils.html import format_html
from .models import Voucher, VoucherStatus, VoucherSequence, Redemption, SyncLogEntry, SyncResult


class RedemptionInline(admin.StackedInline):
    """Read-only redemption shown under its voucher."""
    model = Redemption
    extra = 0
    can_delete = False
    fields = ['cafeteria_id', 'device_id', 'local_id', 'local_timestamp', 'redeemed_by', 'timestamp']
    readonly_fields = fields

    def has_add_permission(self, request, obj=None):
        """Redemptions are created by the redemption service only."""
        return False


@admin.register(Voucher)
class VoucherAdmin(admin.ModelAdmin):
    """
    Admin interface for vouchers.

    Status changes go through the services (issue, redeem, cancel),
    so every field here is read-only.
    """

    list_display = [
        'code',
        'stay',
        'valid_from',
        'valid_until',
        'status_badge',
        'created_at',
    ]

    list_filter = ['status', 'valid_from']
    search_fields = ['code', 'stay__guest_name', 'stay__room_number']
    date_hierarchy = 'valid_from'
    inlines = [RedemptionInline]

    readonly_fields = [
        'code',
        'stay',
        'valid_from',
        'valid_until',
        'status',
        'signature',
        'redeemed_at',
        'expired_at',
        'cancelled_at',
        'cancelled_by',
        'cancellation_reason',
        'issued_by',
        'created_at',
        'updated_at',
    ]

    def status_badge(self, obj):
        """Display voucher status as colored badge."""
        colors = {
            VoucherStatus.ACTIVE: ('#6B8E5E', 'white'),
            VoucherStatus.REDEEMED: ('#A47449', 'white'),
            VoucherStatus.CANCELLED: ('#B85C5C', 'white'),
            VoucherStatus.EXPIRED: ('#E5C49A', '#2C1810'),
        }
        bg, fg = colors.get(obj.status, ('#ccc', '#666'))
        return format_html(
            '<span style="background: {}; color: {}; padding: 3px 8px; '
            'border-radius: 10px; font-size: 11px;">{}</span>',
            bg, fg, obj.get_status_display()
        )
    status_badge.short_description = 'Status'
    status_badge.admin_order_field = 'status'

    def has_add_permission(self, request):
        return False


@admin.register(VoucherSequence)
class VoucherSequenceAdmin(admin.ModelAdmin):
    list_display = ['prefix', 'year', 'last_number']
    readonly_fields = ['prefix', 'year', 'last_number']


@admin.register(SyncLogEntry)
class SyncLogEntryAdmin(admin.ModelAdmin):
    """Audit trail of reconciled offline redemptions."""

    list_display = ['device_id', 'local_id', 'voucher_code', 'result_badge', 'reason', 'synced_at']
    list_filter = ['result', 'device_id']
    search_fields = ['local_id', 'voucher_code', 'device_id']
    readonly_fields = ['device_id', 'local_id', 'voucher_code', 'result', 'reason', 'payload', 'synced_at']

    def result_badge(self, obj):
        colors = {
            SyncResult.SYNCED: ('#6B8E5E', 'white'),
            SyncResult.CONFLICT: ('#E5C49A', '#2C1810'),
            SyncResult.ERROR: ('#B85C5C', 'white'),
        }
        bg, fg = colors.get(obj.result, ('#ccc', '#666'))
        return format_html(
            '<span style="background: {}; color: {}; padding: 3px 8px; '
            'border-radius: 10px; font-size: 11px;">{}</span>',
            bg, fg, obj.get_result_display()
        )
    result_badge.short_description = 'Result'
