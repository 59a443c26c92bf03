from django.db import models
import uuid


class VoucherStatus(models.TextChoices):
    ACTIVE = 'active', 'Active'
    REDEEMED = 'redeemed', 'Redeemed'
    CANCELLED = 'cancelled', 'Cancelled'
    EXPIRED = 'expired', 'Expired'


TERMINAL_STATUSES = (
    VoucherStatus.REDEEMED,
    VoucherStatus.CANCELLED,
    VoucherStatus.EXPIRED,
)


class Voucher(models.Model):
    """Single-use breakfast voucher bound to a guest stay."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    # Human-shareable code, e.g. HPN-2026-0042
    code = models.CharField(max_length=32, unique=True, db_index=True, editable=False)

    stay = models.ForeignKey(
        'stays.Stay',
        on_delete=models.PROTECT,
        related_name='vouchers'
    )

    # Validity window (inclusive, local dates)
    valid_from = models.DateField()
    valid_until = models.DateField()

    status = models.CharField(
        max_length=20,
        choices=VoucherStatus.choices,
        default=VoucherStatus.ACTIVE
    )

    # Ed25519 signature over code|stay_id|valid_from|valid_until
    signature = models.CharField(max_length=128, editable=False)

    # Terminal-state metadata
    redeemed_at = models.DateTimeField(null=True, blank=True)
    expired_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancelled_by = models.ForeignKey(
        'accounts.User',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='cancelled_vouchers'
    )
    cancellation_reason = models.CharField(max_length=500, blank=True)

    issued_by = models.ForeignKey(
        'accounts.User',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='issued_vouchers'
    )

    # Timestamps
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'vouchers'
        indexes = [
            models.Index(fields=['stay', 'status']),
            models.Index(fields=['status', 'valid_until']),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(valid_from__lte=models.F('valid_until')),
                name='voucher_valid_from_before_until',
            ),
        ]
        ordering = ['code']

    def __str__(self):
        return f"{self.code} ({self.status})"

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    def is_past(self, today):
        return today > self.valid_until

    def is_before_window(self, today):
        return today < self.valid_from


class VoucherSequence(models.Model):
    """
    Per-prefix, per-year counter for voucher code numbers.

    Issuance locks the row with select_for_update() and reserves a whole
    batch of numbers before inserting vouchers.
    """

    prefix = models.CharField(max_length=16)
    year = models.PositiveIntegerField()
    last_number = models.PositiveIntegerField(default=0)

    class Meta:
        db_table = 'voucher_sequences'
        constraints = [
            models.UniqueConstraint(fields=['prefix', 'year'], name='unique_voucher_sequence'),
        ]

    def __str__(self):
        return f"{self.prefix}-{self.year}: {self.last_number}"


class Redemption(models.Model):
    """
    Durable record of a voucher being consumed.

    The unique constraint on ``voucher`` is what decides the winner between
    concurrent redemption attempts. Rows are never updated or deleted.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    voucher = models.OneToOneField(
        Voucher,
        on_delete=models.PROTECT,
        related_name='redemption'
    )

    # Cafeteria / device registry references (external)
    cafeteria_id = models.PositiveIntegerField()
    device_id = models.CharField(max_length=100)

    # Client-generated idempotency key
    local_id = models.CharField(max_length=64)
    local_timestamp = models.DateTimeField(null=True, blank=True)

    redeemed_by = models.ForeignKey(
        'accounts.User',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='redemptions'
    )

    timestamp = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'redemptions'
        constraints = [
            models.UniqueConstraint(
                fields=['device_id', 'local_id'],
                name='unique_redemption_device_local_id',
            ),
        ]
        indexes = [
            models.Index(fields=['cafeteria_id', 'timestamp']),
            models.Index(fields=['local_id']),
        ]
        ordering = ['-timestamp']

    def __str__(self):
        return f"{self.voucher.code} @ cafeteria {self.cafeteria_id} ({self.device_id})"


class SyncResult(models.TextChoices):
    SYNCED = 'synced', 'Synced'
    CONFLICT = 'conflict', 'Conflict'
    ERROR = 'error', 'Error'


class SyncLogEntry(models.Model):
    """One reconciled offline intent, as received from a terminal."""

    device_id = models.CharField(max_length=100)
    local_id = models.CharField(max_length=64)
    voucher_code = models.CharField(max_length=32)
    result = models.CharField(max_length=20, choices=SyncResult.choices)
    reason = models.CharField(max_length=100, blank=True)
    payload = models.JSONField(default=dict)
    synced_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'sync_log'
        indexes = [
            models.Index(fields=['device_id', 'synced_at']),
        ]
        ordering = ['-synced_at', '-id']

    def __str__(self):
        return f"{self.device_id}/{self.local_id}: {self.result}"
