from django.db import models
from django.utils import timezone


class IntentStatus(models.TextChoices):
    PENDING = 'pending', 'Pending'
    CONFLICT = 'conflict', 'Conflict'
    ERROR = 'error', 'Error'


class PendingRedemptionIntent(models.Model):
    """
    A redemption recorded on this terminal that the server has not confirmed.

    Deleted once the server reports it synced or conflicting. Intents that
    keep failing move to ``error`` after TERMINAL_MAX_SYNC_ATTEMPTS and are
    no longer retried automatically.
    """

    local_id = models.CharField(max_length=64, primary_key=True)
    voucher_code = models.CharField(max_length=32, db_index=True)
    cafeteria_id = models.PositiveIntegerField()
    signature = models.CharField(max_length=128, blank=True)
    local_timestamp = models.DateTimeField(default=timezone.now)

    # Retry bookkeeping
    attempts = models.PositiveIntegerField(default=0)
    status = models.CharField(
        max_length=20,
        choices=IntentStatus.choices,
        default=IntentStatus.PENDING
    )
    last_error = models.CharField(max_length=500, blank=True)
    last_attempt_at = models.DateTimeField(null=True, blank=True)
    next_attempt_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'terminal_pending_redemptions'
        indexes = [
            models.Index(fields=['status', 'next_attempt_at']),
        ]
        ordering = ['local_timestamp', 'created_at']

    def __str__(self):
        return f"{self.local_id} -> {self.voucher_code} ({self.status}, {self.attempts} attempts)"

    def as_payload(self):
        """Wire format expected by the sync endpoint."""
        payload = {
            'local_id': self.local_id,
            'voucher_code': self.voucher_code,
            'cafeteria_id': self.cafeteria_id,
            'local_timestamp': self.local_timestamp.isoformat(),
        }
        if self.signature:
            payload['signature'] = self.signature
        return payload


class ConflictResolution(models.TextChoices):
    ACCEPTED_SERVER = 'accepted_server_version', 'Accepted server version'
    MARKED_FOR_REGENERATION = 'marked_for_regeneration', 'Marked for regeneration'
    DISMISSED = 'dismissed', 'Dismissed'


class Conflict(models.Model):
    """
    An offline redemption the server refused because the voucher was already
    redeemed elsewhere. Kept forever as an audit trail.
    """

    local_id = models.CharField(max_length=64, primary_key=True)
    voucher_code = models.CharField(max_length=32, db_index=True)
    cafeteria_id = models.PositiveIntegerField(null=True, blank=True)
    reason = models.CharField(max_length=100)
    local_timestamp = models.DateTimeField(null=True, blank=True)

    # Winning redemption as reported by the server
    server_timestamp = models.DateTimeField(null=True, blank=True)
    server_cafeteria_id = models.PositiveIntegerField(null=True, blank=True)
    server_device_id = models.CharField(max_length=100, blank=True)

    resolved = models.BooleanField(default=False)
    resolution = models.CharField(
        max_length=30,
        choices=ConflictResolution.choices,
        blank=True
    )

    detected_at = models.DateTimeField(auto_now_add=True)
    resolved_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'terminal_conflicts'
        indexes = [
            models.Index(fields=['resolved', 'detected_at']),
        ]
        ordering = ['-detected_at']

    def __str__(self):
        state = self.resolution or 'unresolved'
        return f"{self.voucher_code} ({self.local_id}): {state}"


class CachedVoucher(models.Model):
    """Last known state of a voucher, for display while offline."""

    code = models.CharField(max_length=32, primary_key=True)
    status = models.CharField(max_length=20)
    valid_from = models.DateField()
    valid_until = models.DateField()
    guest_name = models.CharField(max_length=200, blank=True)
    room_number = models.CharField(max_length=20, blank=True)
    cached_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = 'terminal_cached_vouchers'
        indexes = [
            models.Index(fields=['cached_at']),
        ]

    def __str__(self):
        return f"{self.code} ({self.status}, cached {self.cached_at:%Y-%m-%d %H:%M})"


class TerminalDevice(models.Model):
    """Singleton row holding this terminal's identity."""

    id = models.PositiveSmallIntegerField(primary_key=True, default=1, editable=False)
    device_id = models.CharField(max_length=100, unique=True)
    last_sync_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'terminal_device'

    def __str__(self):
        return self.device_id
