"""
Voucher redemption service.

At most one Redemption row can exist per voucher. The database enforces this
with a unique constraint, and that constraint (not an earlier read) is what
decides the winner when two cafeterias redeem the same voucher at the same
moment. The loser is told who won.

Redemption is idempotent per ``local_id``: replaying the request that
produced a redemption returns that same redemption instead of a conflict.
"""

import logging
from datetime import date, datetime
from typing import Optional

from django.db import IntegrityError, transaction
from django.utils import timezone

from apps.accounts.models import User
from apps.vouchers.models import Redemption, Voucher, VoucherStatus

from .exceptions import (
    AlreadyRedeemedError,
    ExpiryError,
    LocalIdReuseError,
    NotYetValidError,
    StateError,
    VoucherCancelledError,
)
from .signing import get_signer
from .validation import expire_if_past, get_voucher_by_code

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger('audit')


class _VoucherNoLongerActive(Exception):
    """Rolls back the redemption insert when the status swap finds no active row."""


def _redeemed_conflict(voucher: Voucher, redemption: Redemption) -> AlreadyRedeemedError:
    return AlreadyRedeemedError(
        "Voucher ya redimido",
        voucher_code=voucher.code,
        redeemed_at=redemption.timestamp,
        cafeteria_id=redemption.cafeteria_id,
        device_id=redemption.device_id,
    )


def _replay_or_conflict(voucher: Voucher, *, device_id: str, local_id: str) -> Redemption:
    """
    Resolve a collision on one of the two unique constraints.

    Returns the existing redemption when it carries the same ``local_id``.
    """
    existing = Redemption.objects.filter(voucher=voucher).first()
    if existing is None:
        # Collided on (device_id, local_id) for some other voucher
        raise LocalIdReuseError(
            "local_id ya utilizado para otro voucher",
            voucher_code=voucher.code,
            device_id=device_id,
            local_id=local_id,
        )
    if existing.local_id == local_id:
        logger.info("Replayed redemption of %s (local_id %s)", voucher.code, local_id)
        return existing
    raise _redeemed_conflict(voucher, existing)


def _check_redeemable(voucher: Voucher, *, device_id: str, local_id: str, today: date) -> Optional[Redemption]:
    """
    Apply the state machine ahead of the insert.

    Returns a redemption only for an idempotent replay. The expiry flip is
    committed by ``expire_if_past`` before ExpiryError propagates.
    """
    if voucher.status == VoucherStatus.REDEEMED:
        return _replay_or_conflict(voucher, device_id=device_id, local_id=local_id)

    if voucher.status == VoucherStatus.CANCELLED:
        raise VoucherCancelledError("Voucher cancelado", voucher_code=voucher.code)

    if expire_if_past(voucher, today=today):
        raise ExpiryError(
            "Voucher expirado",
            voucher_code=voucher.code,
            valid_until=voucher.valid_until,
        )

    if voucher.status != VoucherStatus.ACTIVE:
        # Lost a race against cancellation or redemption during the flip check
        return _check_redeemable(voucher, device_id=device_id, local_id=local_id, today=today)

    if voucher.is_before_window(today):
        raise NotYetValidError(
            "Voucher aún no válido",
            voucher_code=voucher.code,
            valid_from=voucher.valid_from,
        )
    return None


def redeem_voucher(
    *,
    code: str,
    cafeteria_id: int,
    device_id: str,
    local_id: str,
    signature: Optional[str] = None,
    local_timestamp: Optional[datetime] = None,
    user: Optional[User] = None,
    today: Optional[date] = None
) -> Redemption:
    """
    Redeem a voucher exactly once.

    Args:
        code: Voucher code
        cafeteria_id: Cafeteria where the breakfast was served
        device_id: Terminal that scanned the voucher
        local_id: Idempotency key generated by the terminal
        signature: Signature presented with the code (optional)
        local_timestamp: When the terminal recorded the redemption
        user: Cafeteria operator
        today: Local date to evaluate the window against (defaults to today)

    Returns:
        The Redemption, newly created or replayed

    Raises:
        VoucherNotFoundError: If the code is unknown
        SignatureError: If a signature was presented and does not match
        VoucherCancelledError: If the voucher was cancelled
        ExpiryError: If the window has passed (status is now ``expired``)
        NotYetValidError: If the window has not started
        AlreadyRedeemedError: If another local_id already redeemed it
        LocalIdReuseError: If this device used local_id for another voucher
    """
    today = today or timezone.localdate()
    voucher = get_voucher_by_code(code=code)

    if signature is not None:
        get_signer().verify_voucher(voucher, signature)

    bound = (
        Redemption.objects
        .filter(device_id=device_id, local_id=local_id)
        .exclude(voucher=voucher)
        .exists()
    )
    if bound:
        raise LocalIdReuseError(
            "local_id ya utilizado para otro voucher",
            voucher_code=code,
            device_id=device_id,
            local_id=local_id,
        )

    replay = _check_redeemable(voucher, device_id=device_id, local_id=local_id, today=today)
    if replay is not None:
        return replay

    try:
        with transaction.atomic():
            redemption = Redemption.objects.create(
                voucher=voucher,
                cafeteria_id=cafeteria_id,
                device_id=device_id,
                local_id=local_id,
                local_timestamp=local_timestamp,
                redeemed_by=user,
            )
            swapped = (
                Voucher.objects
                .filter(pk=voucher.pk, status=VoucherStatus.ACTIVE)
                .update(
                    status=VoucherStatus.REDEEMED,
                    redeemed_at=redemption.timestamp,
                    updated_at=timezone.now(),
                )
            )
            if not swapped:
                raise _VoucherNoLongerActive()
    except IntegrityError:
        return _replay_or_conflict(voucher, device_id=device_id, local_id=local_id)
    except _VoucherNoLongerActive:
        voucher.refresh_from_db()
        replay = _check_redeemable(voucher, device_id=device_id, local_id=local_id, today=today)
        if replay is not None:
            return replay
        raise StateError("Voucher no está activo", voucher_code=code, status=voucher.status)

    voucher.status = VoucherStatus.REDEEMED
    voucher.redeemed_at = redemption.timestamp

    audit_logger.info(
        "voucher_redeemed code=%s cafeteria=%s device=%s local_id=%s user=%s",
        code, cafeteria_id, device_id, local_id, user.id if user else None,
        extra={
            'event': 'voucher_redeemed',
            'voucher_code': code,
            'cafeteria_id': cafeteria_id,
            'device_id': device_id,
            'local_id': local_id,
            'user_id': str(user.id) if user else None,
        },
    )
    logger.info("Voucher %s redeemed at cafeteria %s by %s", code, cafeteria_id, device_id)
    return redemption
