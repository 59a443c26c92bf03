"""
Voucher issuance service.

Issues a batch of signed vouchers for a guest stay. Code numbers come from
a per-prefix, per-year counter that is incremented once per batch.
"""

import logging
from datetime import date
from typing import List, Optional
from uuid import UUID

from django.conf import settings
from django.db import transaction
from django.db.models import F
from django.utils import timezone

from apps.accounts.models import User
from apps.stays.exceptions import StayDoesNotExistError
from apps.stays.services import get_stay
from apps.vouchers.models import Voucher, VoucherSequence

from .exceptions import (
    StayNotActiveError,
    StayNotFoundError,
    VoucherValidationError,
)
from .signing import get_signer

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger('audit')


def format_code(prefix: str, year: int, number: int) -> str:
    return f"{prefix}-{year}-{number:04d}"


def reserve_numbers(*, prefix: str, year: int, count: int) -> range:
    """
    Reserve ``count`` consecutive code numbers.

    Must run inside a transaction. The conditional UPDATE holds the counter
    row lock until commit, so concurrent batches never share a number.
    """
    VoucherSequence.objects.get_or_create(prefix=prefix, year=year)
    (
        VoucherSequence.objects
        .filter(prefix=prefix, year=year)
        .update(last_number=F('last_number') + count)
    )
    sequence = (
        VoucherSequence.objects
        .select_for_update()
        .get(prefix=prefix, year=year)
    )
    first = sequence.last_number - count + 1
    return range(first, sequence.last_number + 1)


@transaction.atomic
def issue_vouchers(
    *,
    stay_id: UUID,
    quantity: int,
    valid_from: date,
    valid_until: date,
    issued_by: Optional[User] = None
) -> List[Voucher]:
    """
    Issue ``quantity`` vouchers for an active stay.

    Args:
        stay_id: UUID of the stay
        quantity: Number of vouchers (1..VOUCHER_MAX_BATCH)
        valid_from: First day the vouchers may be redeemed
        valid_until: Last day the vouchers may be redeemed
        issued_by: Reception user issuing the batch

    Returns:
        List of created vouchers, ordered by code

    Raises:
        StayNotFoundError: If the stay doesn't exist
        StayNotActiveError: If the stay is not active
        VoucherValidationError: If the window or quantity is invalid
    """
    try:
        stay = get_stay(stay_id)
    except StayDoesNotExistError:
        raise StayNotFoundError(f"Estadía {stay_id} no encontrada", stay_id=str(stay_id))

    if not stay.is_active:
        raise StayNotActiveError("Estadía no activa", stay_id=str(stay.id), status=stay.status)

    if valid_from > valid_until:
        raise VoucherValidationError("La fecha de inicio debe ser anterior a la fecha de fin")

    if not stay.covers(valid_from, valid_until):
        raise VoucherValidationError(
            "Las fechas deben estar dentro del período de estadía",
            check_in=stay.check_in,
            check_out=stay.check_out,
        )

    max_batch = settings.VOUCHER_MAX_BATCH
    if not 1 <= quantity <= max_batch:
        raise VoucherValidationError(
            f"La cantidad debe estar entre 1 y {max_batch}",
            quantity=quantity,
        )

    prefix = settings.HOTEL_CODE
    year = timezone.localdate().year
    signer = get_signer()

    vouchers = []
    for number in reserve_numbers(prefix=prefix, year=year, count=quantity):
        voucher = Voucher(
            code=format_code(prefix, year, number),
            stay=stay,
            valid_from=valid_from,
            valid_until=valid_until,
            issued_by=issued_by,
        )
        voucher.signature = signer.sign_voucher(voucher)
        voucher.save()
        vouchers.append(voucher)

    audit_logger.info(
        "vouchers_issued stay=%s quantity=%d codes=%s user=%s",
        stay.id, quantity, ','.join(v.code for v in vouchers), issued_by.id if issued_by else None,
        extra={
            'event': 'vouchers_issued',
            'stay_id': str(stay.id),
            'quantity': quantity,
            'codes': [v.code for v in vouchers],
            'user_id': str(issued_by.id) if issued_by else None,
        },
    )
    logger.info(
        "Issued %d voucher(s) for stay %s: %s..%s",
        quantity, stay.id, vouchers[0].code, vouchers[-1].code,
    )
    return vouchers
