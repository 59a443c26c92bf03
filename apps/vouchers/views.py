from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from drf_spectacular.utils import extend_schema, OpenApiParameter
from drf_spectacular.types import OpenApiTypes

from .permissions import IsCafeteria, IsReception
from .serializers import (
    # Input serializers
    IssueVouchersInputSerializer,
    ValidateVoucherInputSerializer,
    RedeemVoucherInputSerializer,
    CancelVoucherInputSerializer,
    SyncIntentInputSerializer,
    SyncBatchInputSerializer,
    SyncHistoryQuerySerializer,
    SyncStatsQuerySerializer,
    # Response serializers
    VoucherSerializer,
    RedemptionSerializer,
    SyncLogEntrySerializer,
    SyncStatsRowSerializer,
    ErrorSerializer,
)
from .services import (
    issue_vouchers,
    get_voucher_by_code,
    validate_voucher,
    redeem_voucher,
    cancel_voucher,
    decode_qr_payload,
    get_signer,
    sync_batch,
    get_sync_history,
    get_sync_stats,
    RedemptionIntent,
    RejectedIntent,
    # Exceptions
    VoucherServiceError,
)


def error_response(exc: VoucherServiceError) -> Response:
    return Response(exc.error_payload(), status=exc.status_code)


def _reference(validated_data):
    """Return (code, signature) from either a QR payload or a bare code."""
    if 'qr_payload' in validated_data:
        payload = decode_qr_payload(validated_data['qr_payload'])
        payload.verify(get_signer())
        return payload.code, payload.signature
    return validated_data['code'], validated_data.get('signature')


def _error_text(errors) -> str:
    parts = []
    for field, messages in errors.items():
        if isinstance(messages, dict):
            messages = [_error_text(messages)]
        parts.append(f"{field}: {' '.join(str(m) for m in messages)}")
    return '; '.join(parts)


def _parse_intent(item):
    """Turn one uploaded intent into a RedemptionIntent, or a RejectedIntent if invalid."""
    intent_serializer = SyncIntentInputSerializer(data=item)
    if intent_serializer.is_valid():
        data = intent_serializer.validated_data
        return RedemptionIntent(
            local_id=data['local_id'],
            voucher_code=data['voucher_code'],
            cafeteria_id=data['cafeteria_id'],
            local_timestamp=data.get('local_timestamp'),
            signature=data.get('signature'),
        )

    fields = item if isinstance(item, dict) else {}
    return RejectedIntent(
        local_id=str(fields.get('local_id') or ''),
        voucher_code=str(fields.get('voucher_code') or ''),
        message=_error_text(intent_serializer.errors),
        raw=fields or None,
    )


# =============================================================================
# Vouchers
# =============================================================================

@extend_schema(
    request=IssueVouchersInputSerializer,
    responses={
        201: VoucherSerializer(many=True),
        400: ErrorSerializer,
        404: ErrorSerializer,
        409: ErrorSerializer,
    },
    description="Issue a batch of signed vouchers for an active stay.",
    tags=['vouchers'],
)
@api_view(['POST'])
@permission_classes([IsAuthenticated, IsReception])
def issue(request):
    """Issue vouchers - thin HTTP handler."""
    serializer = IssueVouchersInputSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    try:
        vouchers = issue_vouchers(
            stay_id=serializer.validated_data['stay_id'],
            quantity=serializer.validated_data['quantity'],
            valid_from=serializer.validated_data['valid_from'],
            valid_until=serializer.validated_data['valid_until'],
            issued_by=request.user,
        )
    except VoucherServiceError as e:
        return error_response(e)

    return Response(
        {'vouchers': VoucherSerializer(vouchers, many=True).data},
        status=status.HTTP_201_CREATED
    )


@extend_schema(
    responses={200: VoucherSerializer, 404: ErrorSerializer},
    description="Look up a voucher by code.",
    tags=['vouchers'],
)
@api_view(['GET'])
@permission_classes([IsAuthenticated])
def voucher_detail(request, code):
    """Get a single voucher."""
    try:
        voucher = get_voucher_by_code(code=code)
    except VoucherServiceError as e:
        return error_response(e)

    return Response(VoucherSerializer(voucher).data)


@extend_schema(
    request=ValidateVoucherInputSerializer,
    responses={
        200: OpenApiTypes.OBJECT,
        400: ErrorSerializer,
        404: ErrorSerializer,
    },
    description="Check whether a voucher can be redeemed now. Never redeems.",
    tags=['vouchers'],
)
@api_view(['POST'])
@permission_classes([IsAuthenticated, IsCafeteria])
def validate(request):
    """Validate a voucher code or scanned QR payload."""
    serializer = ValidateVoucherInputSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    try:
        code, signature = _reference(serializer.validated_data)
        result = validate_voucher(code=code, signature=signature)
    except VoucherServiceError as e:
        return error_response(e)

    data = {
        'valid': result.valid,
        'voucher': VoucherSerializer(result.voucher).data,
    }
    if result.reason:
        data['reason'] = result.reason
    if result.details:
        data['details'] = result.details
    return Response(data)


@extend_schema(
    request=RedeemVoucherInputSerializer,
    responses={
        201: RedemptionSerializer,
        400: ErrorSerializer,
        404: ErrorSerializer,
        409: ErrorSerializer,
    },
    description="Redeem a voucher. Replaying the same local_id returns the original redemption.",
    tags=['vouchers'],
)
@api_view(['POST'])
@permission_classes([IsAuthenticated, IsCafeteria])
def redeem(request):
    """Redeem a voucher - thin HTTP handler."""
    serializer = RedeemVoucherInputSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    params = serializer.validated_data

    try:
        code, signature = _reference(params)
        redemption = redeem_voucher(
            code=code,
            signature=signature,
            cafeteria_id=params['cafeteria_id'],
            device_id=params['device_id'],
            local_id=params['local_id'],
            local_timestamp=params.get('local_timestamp'),
            user=request.user,
        )
    except VoucherServiceError as e:
        return error_response(e)

    return Response(
        {
            'success': True,
            'redemption': RedemptionSerializer(redemption).data,
        },
        status=status.HTTP_201_CREATED
    )


@extend_schema(
    request=CancelVoucherInputSerializer,
    responses={
        200: VoucherSerializer,
        404: ErrorSerializer,
        409: ErrorSerializer,
    },
    description="Cancel an active voucher.",
    tags=['vouchers'],
)
@api_view(['POST'])
@permission_classes([IsAuthenticated, IsReception])
def cancel(request, code):
    """Cancel a voucher."""
    serializer = CancelVoucherInputSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    try:
        voucher = cancel_voucher(
            code=code,
            reason=serializer.validated_data['reason'],
            user=request.user,
        )
    except VoucherServiceError as e:
        return error_response(e)

    return Response(VoucherSerializer(voucher).data)


# =============================================================================
# Sync
# =============================================================================

@extend_schema(
    request=SyncBatchInputSerializer,
    responses={
        200: OpenApiTypes.OBJECT,
        207: OpenApiTypes.OBJECT,
        400: ErrorSerializer,
    },
    description=(
        "Reconcile redemptions recorded offline. Each intent gets its own "
        "result; the response is 207 when at least one intent conflicted."
    ),
    tags=['sync'],
)
@api_view(['POST'])
@permission_classes([IsAuthenticated, IsCafeteria])
def sync_redemptions(request):
    """Upload a batch of offline redemption intents."""
    serializer = SyncBatchInputSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    intents = [_parse_intent(item) for item in serializer.validated_data['intents']]

    try:
        report = sync_batch(
            device_id=serializer.validated_data['device_id'],
            intents=intents,
            user=request.user,
        )
    except VoucherServiceError as e:
        return error_response(e)

    response_status = (
        status.HTTP_207_MULTI_STATUS if report.has_conflicts else status.HTTP_200_OK
    )
    return Response(report.as_dict(), status=response_status)


@extend_schema(
    parameters=[
        OpenApiParameter('device_id', OpenApiTypes.STR, description='Filter by terminal'),
        OpenApiParameter('limit', OpenApiTypes.INT, description='Maximum entries (default 100)'),
    ],
    responses={200: SyncLogEntrySerializer(many=True)},
    description="Recent sync log entries, newest first.",
    tags=['sync'],
)
@api_view(['GET'])
@permission_classes([IsAuthenticated, IsCafeteria])
def sync_history(request):
    """Sync history - thin HTTP handler."""
    query_serializer = SyncHistoryQuerySerializer(data=request.query_params)
    query_serializer.is_valid(raise_exception=True)
    params = query_serializer.validated_data

    entries = get_sync_history(device_id=params.get('device_id'), limit=params['limit'])
    return Response(SyncLogEntrySerializer(entries, many=True).data)


@extend_schema(
    parameters=[
        OpenApiParameter('device_id', OpenApiTypes.STR, description='Filter by terminal'),
        OpenApiParameter('date_from', OpenApiTypes.DATE, description='Start date (YYYY-MM-DD)'),
        OpenApiParameter('date_to', OpenApiTypes.DATE, description='End date (YYYY-MM-DD)'),
    ],
    responses={200: SyncStatsRowSerializer(many=True)},
    description="Sync results counted per day and outcome.",
    tags=['sync'],
)
@api_view(['GET'])
@permission_classes([IsAuthenticated, IsCafeteria])
def sync_stats(request):
    """Sync statistics - thin HTTP handler."""
    query_serializer = SyncStatsQuerySerializer(data=request.query_params)
    query_serializer.is_valid(raise_exception=True)
    params = query_serializer.validated_data

    rows = get_sync_stats(
        device_id=params.get('device_id'),
        date_from=params.get('date_from'),
        date_to=params.get('date_to'),
    )
    return Response(SyncStatsRowSerializer(rows, many=True).data)
