from django.conf import settings
from rest_framework import serializers

from apps.stays.models import Stay

from .models import Redemption, SyncLogEntry, Voucher
from .services import encode_qr_payload


# =============================================================================
# Input serializers
# =============================================================================

class StrictInputSerializer(serializers.Serializer):
    """Input serializer that rejects fields it does not declare."""

    def to_internal_value(self, data):
        if hasattr(data, 'keys'):
            unknown = sorted(set(data.keys()) - set(self.fields))
            if unknown:
                raise serializers.ValidationError(
                    {name: ['Unknown field.'] for name in unknown}
                )
        return super().to_internal_value(data)


class IssueVouchersInputSerializer(StrictInputSerializer):
    stay_id = serializers.UUIDField()
    quantity = serializers.IntegerField(min_value=1)
    valid_from = serializers.DateField()
    valid_until = serializers.DateField()


class VoucherReferenceInputSerializer(StrictInputSerializer):
    """Either a bare ``code`` (with optional ``signature``) or a scanned ``qr_payload``."""

    code = serializers.CharField(max_length=32, required=False)
    signature = serializers.CharField(max_length=128, required=False)
    qr_payload = serializers.CharField(max_length=512, required=False)

    def validate(self, attrs):
        if 'qr_payload' in attrs:
            if 'code' in attrs or 'signature' in attrs:
                raise serializers.ValidationError(
                    "Send either qr_payload or code/signature, not both."
                )
        elif 'code' not in attrs:
            raise serializers.ValidationError("code or qr_payload is required.")
        return attrs


class ValidateVoucherInputSerializer(VoucherReferenceInputSerializer):
    pass


class RedeemVoucherInputSerializer(VoucherReferenceInputSerializer):
    cafeteria_id = serializers.IntegerField(min_value=1)
    device_id = serializers.CharField(max_length=100)
    local_id = serializers.CharField(max_length=64)
    local_timestamp = serializers.DateTimeField(required=False)


class CancelVoucherInputSerializer(StrictInputSerializer):
    reason = serializers.CharField(max_length=500, required=False, allow_blank=True, default='')


class SyncIntentInputSerializer(StrictInputSerializer):
    local_id = serializers.CharField(max_length=64)
    voucher_code = serializers.CharField(max_length=32)
    cafeteria_id = serializers.IntegerField(min_value=1)
    local_timestamp = serializers.DateTimeField(required=False, allow_null=True)
    signature = serializers.CharField(max_length=128, required=False, allow_null=True)


class SyncBatchInputSerializer(StrictInputSerializer):
    """
    Batch envelope only. Each intent is checked with
    ``SyncIntentInputSerializer`` on its own, so a malformed item is reported
    in its result slot instead of rejecting the batch.
    """

    device_id = serializers.CharField(max_length=100)
    intents = serializers.ListField(child=serializers.JSONField(), allow_empty=False)

    def validate_intents(self, value):
        max_size = settings.SYNC_MAX_BATCH_SIZE
        if len(value) > max_size:
            raise serializers.ValidationError(f"At most {max_size} intents per batch.")
        return value


class SyncHistoryQuerySerializer(serializers.Serializer):
    device_id = serializers.CharField(max_length=100, required=False)
    limit = serializers.IntegerField(min_value=1, max_value=500, default=100)


class SyncStatsQuerySerializer(serializers.Serializer):
    device_id = serializers.CharField(max_length=100, required=False)
    date_from = serializers.DateField(required=False)
    date_to = serializers.DateField(required=False)

    def validate(self, attrs):
        date_from = attrs.get('date_from')
        date_to = attrs.get('date_to')
        if date_from and date_to and date_from > date_to:
            raise serializers.ValidationError("date_from must be before date_to.")
        return attrs


# =============================================================================
# Output serializers
# =============================================================================

class StayMinimalSerializer(serializers.ModelSerializer):
    """Minimal stay info for nested serialization."""

    class Meta:
        model = Stay
        fields = ['id', 'guest_name', 'room_number', 'check_in', 'check_out', 'status']
        read_only_fields = fields


class RedemptionSerializer(serializers.ModelSerializer):
    voucher_code = serializers.CharField(source='voucher.code', read_only=True)

    class Meta:
        model = Redemption
        fields = [
            'id',
            'voucher_code',
            'cafeteria_id',
            'device_id',
            'local_id',
            'local_timestamp',
            'timestamp',
        ]
        read_only_fields = fields


class VoucherSerializer(serializers.ModelSerializer):
    stay = StayMinimalSerializer(read_only=True)
    qr_payload = serializers.SerializerMethodField()
    redemption = serializers.SerializerMethodField()

    class Meta:
        model = Voucher
        fields = [
            'id',
            'code',
            'stay',
            'valid_from',
            'valid_until',
            'status',
            'signature',
            'qr_payload',
            'redeemed_at',
            'expired_at',
            'cancelled_at',
            'cancellation_reason',
            'redemption',
            'created_at',
        ]
        read_only_fields = fields

    def get_qr_payload(self, obj):
        return encode_qr_payload(obj)

    def get_redemption(self, obj):
        try:
            redemption = obj.redemption
        except Redemption.DoesNotExist:
            return None
        return {
            'cafeteria_id': redemption.cafeteria_id,
            'device_id': redemption.device_id,
            'timestamp': redemption.timestamp,
        }


class SyncLogEntrySerializer(serializers.ModelSerializer):

    class Meta:
        model = SyncLogEntry
        fields = ['id', 'device_id', 'local_id', 'voucher_code', 'result', 'reason', 'synced_at']
        read_only_fields = fields


class SyncStatsRowSerializer(serializers.Serializer):
    sync_date = serializers.DateField()
    result = serializers.CharField()
    count = serializers.IntegerField()


class ErrorSerializer(serializers.Serializer):
    error = serializers.CharField()
    code = serializers.CharField()
    details = serializers.DictField(required=False)
