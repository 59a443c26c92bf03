"""
Voucher lookup, validation and lazy expiry.

Expiry is evaluated lazily: the first validation or redemption attempt after
``valid_until`` flips the stored status to ``expired`` (committed on its own)
and only then reports the voucher as expired. Later calls read the stored
status and no longer depend on the clock.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Optional

from django.utils import timezone

from apps.vouchers.models import Voucher, VoucherStatus

from .exceptions import VoucherNotFoundError
from .signing import get_signer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ValidationResult:
    """Answer to a validate request. ``reason`` is set whenever ``valid`` is False."""

    valid: bool
    reason: Optional[str] = None
    voucher: Optional[Voucher] = None
    details: dict = field(default_factory=dict)


def get_voucher_by_code(*, code: str) -> Voucher:
    """
    Fetch a voucher with its stay.

    Raises:
        VoucherNotFoundError: If no voucher has this code
    """
    try:
        return Voucher.objects.select_related('stay').get(code=code)
    except Voucher.DoesNotExist:
        raise VoucherNotFoundError(f"Voucher {code} no encontrado", voucher_code=code)


def expire_if_past(voucher: Voucher, *, today: Optional[date] = None) -> bool:
    """
    Flip an active voucher to expired when its window has passed.

    The update is a compare-and-swap on ``status=active`` so it never
    overwrites a concurrent redemption or cancellation. ``voucher`` is
    refreshed from the database afterwards.

    Returns:
        True if the voucher is expired after the call
    """
    today = today or timezone.localdate()
    if voucher.status != VoucherStatus.ACTIVE or not voucher.is_past(today):
        return voucher.status == VoucherStatus.EXPIRED

    now = timezone.now()
    updated = (
        Voucher.objects
        .filter(pk=voucher.pk, status=VoucherStatus.ACTIVE)
        .update(status=VoucherStatus.EXPIRED, expired_at=now, updated_at=now)
    )
    voucher.refresh_from_db(fields=['status', 'expired_at', 'updated_at'])

    if updated:
        logger.info(
            "Voucher %s expired (valid until %s)",
            voucher.code, voucher.valid_until,
        )
    return voucher.status == VoucherStatus.EXPIRED


def status_reason(status: str) -> str:
    return f"VOUCHER_{status.upper()}"


def validate_voucher(
    *,
    code: str,
    signature: Optional[str] = None,
    today: Optional[date] = None
) -> ValidationResult:
    """
    Check whether a voucher could be redeemed right now.

    Never mutates state except the lazy-expiry flip.

    Args:
        code: Voucher code
        signature: Signature presented with the code (optional)
        today: Local date to evaluate the window against (defaults to today)

    Returns:
        ValidationResult with ``reason`` one of VOUCHER_REDEEMED,
        VOUCHER_CANCELLED, VOUCHER_EXPIRED, VOUCHER_NOT_YET_VALID

    Raises:
        VoucherNotFoundError: If the code is unknown
        SignatureError: If a signature was presented and does not match
    """
    today = today or timezone.localdate()
    voucher = get_voucher_by_code(code=code)

    if signature is not None:
        get_signer().verify_voucher(voucher, signature)

    expire_if_past(voucher, today=today)

    if voucher.status == VoucherStatus.REDEEMED:
        redemption = voucher.redemption
        return ValidationResult(
            valid=False,
            reason=status_reason(voucher.status),
            voucher=voucher,
            details={
                'redeemed_at': redemption.timestamp,
                'cafeteria_id': redemption.cafeteria_id,
            },
        )

    if voucher.status != VoucherStatus.ACTIVE:
        return ValidationResult(
            valid=False,
            reason=status_reason(voucher.status),
            voucher=voucher,
        )

    if voucher.is_before_window(today):
        return ValidationResult(
            valid=False,
            reason='VOUCHER_NOT_YET_VALID',
            voucher=voucher,
            details={'valid_from': voucher.valid_from},
        )

    return ValidationResult(valid=True, voucher=voucher)
