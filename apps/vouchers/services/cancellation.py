"""
Voucher cancellation service.
"""

import logging

from django.utils import timezone

from apps.accounts.models import User
from apps.vouchers.models import Voucher, VoucherStatus

from .exceptions import StateError, VoucherCancelledError
from .validation import get_voucher_by_code

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger('audit')

ALREADY_TERMINAL_MESSAGES = {
    VoucherStatus.REDEEMED: "Voucher ya está redimido",
    VoucherStatus.CANCELLED: "Voucher ya está cancelado",
    VoucherStatus.EXPIRED: "Voucher ya está expirado",
}


def cancel_voucher(*, code: str, reason: str = '', user: User = None) -> Voucher:
    """
    Cancel an active voucher.

    The transition is a single conditional UPDATE on ``status=active``, so a
    voucher redeemed concurrently can never end up cancelled.

    Args:
        code: Voucher code
        reason: Free-text cancellation reason
        user: Staff member cancelling the voucher

    Returns:
        The cancelled voucher

    Raises:
        VoucherNotFoundError: If the code is unknown
        StateError: If the voucher is redeemed, cancelled or expired
    """
    voucher = get_voucher_by_code(code=code)

    now = timezone.now()
    updated = (
        Voucher.objects
        .filter(pk=voucher.pk, status=VoucherStatus.ACTIVE)
        .update(
            status=VoucherStatus.CANCELLED,
            cancelled_at=now,
            cancelled_by=user,
            cancellation_reason=reason or '',
            updated_at=now,
        )
    )
    voucher.refresh_from_db()

    if not updated:
        message = ALREADY_TERMINAL_MESSAGES.get(voucher.status, "Voucher no está activo")
        if voucher.status == VoucherStatus.CANCELLED:
            raise VoucherCancelledError(message, voucher_code=code, status=voucher.status)
        raise StateError(message, voucher_code=code, status=voucher.status)

    audit_logger.info(
        "voucher_cancelled code=%s reason=%r user=%s",
        code, reason, user.id if user else None,
        extra={
            'event': 'voucher_cancelled',
            'voucher_code': code,
            'reason': reason,
            'user_id': str(user.id) if user else None,
        },
    )
    logger.info("Voucher %s cancelled", code)
    return voucher
