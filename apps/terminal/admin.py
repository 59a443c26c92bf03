from django.contrib import admin, messages

from .models import CachedVoucher, Conflict, PendingRedemptionIntent, TerminalDevice
from .services import resolve_conflict


@admin.register(PendingRedemptionIntent)
class PendingRedemptionIntentAdmin(admin.ModelAdmin):
    list_display = ['local_id', 'voucher_code', 'cafeteria_id', 'status', 'attempts', 'next_attempt_at', 'local_timestamp']
    list_filter = ['status']
    search_fields = ['local_id', 'voucher_code']
    readonly_fields = [
        'local_id',
        'voucher_code',
        'cafeteria_id',
        'signature',
        'local_timestamp',
        'attempts',
        'last_error',
        'last_attempt_at',
        'created_at',
    ]


@admin.register(Conflict)
class ConflictAdmin(admin.ModelAdmin):
    """
    Conflicts reported by the server.

    Resolution goes through the admin actions so the audit log sees it.
    """

    list_display = ['voucher_code', 'local_id', 'reason', 'server_cafeteria_id', 'resolved', 'resolution', 'detected_at']
    list_filter = ['resolved', 'resolution']
    search_fields = ['voucher_code', 'local_id']
    actions = ['accept_server', 'mark_for_regeneration', 'dismiss']

    def get_readonly_fields(self, request, obj=None):
        return [field.name for field in self.model._meta.fields]

    def _resolve(self, request, queryset, action):
        for conflict in queryset:
            resolve_conflict(local_id=conflict.local_id, action=action, user=request.user)
        self.message_user(request, f"{queryset.count()} conflict(s) resolved.", messages.SUCCESS)

    @admin.action(description='Accept server version')
    def accept_server(self, request, queryset):
        self._resolve(request, queryset, 'accept_server')

    @admin.action(description='Mark for voucher regeneration')
    def mark_for_regeneration(self, request, queryset):
        self._resolve(request, queryset, 'regenerate')

    @admin.action(description='Dismiss')
    def dismiss(self, request, queryset):
        self._resolve(request, queryset, 'dismiss')


@admin.register(CachedVoucher)
class CachedVoucherAdmin(admin.ModelAdmin):
    list_display = ['code', 'status', 'valid_from', 'valid_until', 'guest_name', 'room_number', 'cached_at']
    search_fields = ['code', 'guest_name', 'room_number']


@admin.register(TerminalDevice)
class TerminalDeviceAdmin(admin.ModelAdmin):
    list_display = ['device_id', 'last_sync_at', 'created_at']
    readonly_fields = ['device_id', 'last_sync_at', 'created_at']
