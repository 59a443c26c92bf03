"""
Server side of offline synchronization.

Terminals upload the redemptions they recorded while disconnected. Each
intent is replayed through ``redeem_voucher`` and answered with its own
outcome; one failing intent never aborts the rest of the batch.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable, List, Optional, Union

from django.conf import settings
from django.db.models import Count, QuerySet
from django.db.models.functions import TruncDate

from apps.accounts.models import User
from apps.vouchers.models import SyncLogEntry

from .exceptions import (
    AlreadyRedeemedError,
    VoucherServiceError,
    VoucherValidationError,
)
from .outcomes import Conflict, Failed, SyncBatchReport, SyncOutcome, Synced
from .redemption import redeem_voucher

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger('audit')


@dataclass(frozen=True)
class RedemptionIntent:
    """A redemption recorded by a terminal and not yet confirmed by the server."""

    local_id: str
    voucher_code: str
    cafeteria_id: int
    local_timestamp: Optional[datetime] = None
    signature: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            'local_id': self.local_id,
            'voucher_code': self.voucher_code,
            'cafeteria_id': self.cafeteria_id,
            'local_timestamp': self.local_timestamp.isoformat() if self.local_timestamp else None,
        }


@dataclass(frozen=True)
class RejectedIntent:
    """An uploaded intent whose fields did not pass input validation."""

    local_id: str
    voucher_code: str
    message: str
    raw: Optional[dict] = None

    def as_dict(self) -> dict:
        return self.raw if self.raw is not None else {
            'local_id': self.local_id,
            'voucher_code': self.voucher_code,
        }


UploadedIntent = Union[RedemptionIntent, RejectedIntent]


def _log_outcome(device_id: str, intent: UploadedIntent, outcome: SyncOutcome) -> None:
    SyncLogEntry.objects.create(
        device_id=device_id,
        local_id=intent.local_id[:64],
        voucher_code=intent.voucher_code[:32],
        result=outcome.status,
        reason=getattr(outcome, 'reason', ''),
        payload={'intent': intent.as_dict(), 'outcome': outcome.as_dict()},
    )


def _reject(device_id: str, intent: UploadedIntent, message: str) -> Failed:
    outcome = Failed(
        local_id=intent.local_id,
        voucher_code=intent.voucher_code,
        reason=VoucherValidationError.code,
        message=message,
    )
    _log_outcome(device_id, intent, outcome)
    return outcome


def reconcile_intent(
    *,
    device_id: str,
    intent: UploadedIntent,
    user: Optional[User] = None
) -> SyncOutcome:
    """Replay one intent and classify the result."""
    if isinstance(intent, RejectedIntent):
        return _reject(device_id, intent, intent.message)

    try:
        redemption = redeem_voucher(
            code=intent.voucher_code,
            cafeteria_id=intent.cafeteria_id,
            device_id=device_id,
            local_id=intent.local_id,
            signature=intent.signature,
            local_timestamp=intent.local_timestamp,
            user=user,
        )
    except AlreadyRedeemedError as exc:
        outcome = Conflict(
            local_id=intent.local_id,
            voucher_code=intent.voucher_code,
            reason=exc.code,
            server_timestamp=exc.details.get('redeemed_at'),
            cafeteria_id=exc.details.get('cafeteria_id'),
            device_id=exc.details.get('device_id'),
            local_timestamp=intent.local_timestamp,
        )
    except VoucherServiceError as exc:
        outcome = Failed(
            local_id=intent.local_id,
            voucher_code=intent.voucher_code,
            reason=exc.code,
            message=str(exc),
        )
    except Exception as exc:
        logger.exception("Unexpected error reconciling %s from %s", intent.local_id, device_id)
        outcome = Failed(
            local_id=intent.local_id,
            voucher_code=intent.voucher_code,
            reason='SERVER_ERROR',
            message=str(exc),
        )
    else:
        outcome = Synced(
            local_id=intent.local_id,
            voucher_code=intent.voucher_code,
            redemption_id=str(redemption.id),
            server_timestamp=redemption.timestamp,
        )

    _log_outcome(device_id, intent, outcome)
    return outcome


def sync_batch(
    *,
    device_id: str,
    intents: Iterable[UploadedIntent],
    user: Optional[User] = None
) -> SyncBatchReport:
    """
    Reconcile a batch of offline intents in order.

    Rejected intents and repeated local_ids are reported as ``Failed`` with
    reason VALIDATION_ERROR; the rest of the batch is still reconciled.

    Args:
        device_id: Terminal uploading the batch
        intents: Intents in the order they were recorded
        user: Authenticated uploader

    Returns:
        SyncBatchReport with one outcome per intent, in input order

    Raises:
        VoucherValidationError: If the batch is empty or too large
    """
    intents = list(intents)
    max_size = settings.SYNC_MAX_BATCH_SIZE
    if not intents:
        raise VoucherValidationError("El lote no contiene redenciones")
    if len(intents) > max_size:
        raise VoucherValidationError(
            f"Máximo {max_size} redenciones por lote",
            batch_size=len(intents),
        )

    report = SyncBatchReport(device_id=device_id)
    seen_local_ids = set()
    for intent in intents:
        if isinstance(intent, RedemptionIntent) and intent.local_id in seen_local_ids:
            outcome = _reject(device_id, intent, "local_id repetido en el lote")
        else:
            outcome = reconcile_intent(device_id=device_id, intent=intent, user=user)
        seen_local_ids.add(intent.local_id)
        report.results.append(outcome)

    summary = report.summary()
    audit_logger.info(
        "sync_completed device=%s total=%d synced=%d conflicts=%d errors=%d",
        device_id, summary['total'], summary['synced'], summary['conflicts'], summary['errors'],
        extra={'event': 'sync_completed', 'device_id': device_id, **summary},
    )
    logger.info(
        "Sync from %s: %d synced, %d conflicts, %d errors",
        device_id, summary['synced'], summary['conflicts'], summary['errors'],
    )
    return report


def get_sync_history(*, device_id: Optional[str] = None, limit: int = 100) -> QuerySet:
    """Most recent reconciled intents, newest first."""
    queryset = SyncLogEntry.objects.all()
    if device_id:
        queryset = queryset.filter(device_id=device_id)
    return queryset[:limit]


def get_sync_stats(
    *,
    device_id: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None
) -> List[dict]:
    """
    Count reconciled intents per day and result.

    Returns:
        List of ``{'sync_date', 'result', 'count'}`` dicts, newest day first
    """
    queryset = SyncLogEntry.objects.all()
    if device_id:
        queryset = queryset.filter(device_id=device_id)
    if date_from:
        queryset = queryset.filter(synced_at__date__gte=date_from)
    if date_to:
        queryset = queryset.filter(synced_at__date__lte=date_to)

    return list(
        queryset
        .annotate(sync_date=TruncDate('synced_at'))
        .values('sync_date', 'result')
        .annotate(count=Count('id'))
        .order_by('-sync_date', 'result')
    )
