"""
Durable local store of the cafeteria terminal.

Holds redemption intents waiting for the server, the conflicts the server
reported, and cached voucher lookups. The terminal is assumed to be the only
writer of its local database.
"""

import logging
import random
from datetime import datetime, timedelta
from typing import Optional
from uuid import uuid4

from django.conf import settings
from django.db import transaction
from django.db.models import Min, Q, QuerySet
from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime

from apps.terminal.models import (
    CachedVoucher,
    Conflict,
    IntentStatus,
    PendingRedemptionIntent,
)

from .exceptions import DuplicateScanError, VoucherRejectedError

logger = logging.getLogger(__name__)


def new_local_id() -> str:
    return uuid4().hex


def find_intent_for_voucher(voucher_code: str) -> Optional[PendingRedemptionIntent]:
    """Open intent (pending or failed) for this voucher, if any."""
    return PendingRedemptionIntent.objects.filter(voucher_code=voucher_code).first()


# =============================================================================
# Pending intents
# =============================================================================

def check_intent_fields(voucher_code: str, cafeteria_id: int) -> None:
    """
    Reject intents the server would refuse as malformed.

    Raises:
        VoucherRejectedError: If the code is empty or too long, or the
            cafeteria id is not positive
    """
    max_length = PendingRedemptionIntent._meta.get_field('voucher_code').max_length
    if not voucher_code or len(voucher_code) > max_length:
        raise VoucherRejectedError(
            'VALIDATION_ERROR',
            f"Código de voucher inválido (máximo {max_length} caracteres)",
            voucher_code=voucher_code,
        )
    if not isinstance(cafeteria_id, int) or cafeteria_id < 1:
        raise VoucherRejectedError(
            'VALIDATION_ERROR',
            "cafeteria_id debe ser un entero positivo",
            cafeteria_id=cafeteria_id,
        )


def enqueue_intent(
    *,
    voucher_code: str,
    cafeteria_id: int,
    signature: str = '',
    local_id: Optional[str] = None,
    local_timestamp: Optional[datetime] = None
) -> PendingRedemptionIntent:
    """
    Record a redemption to be synced later.

    Raises:
        VoucherRejectedError: If the code or cafeteria id is malformed
        DuplicateScanError: If the voucher already has an open intent
    """
    check_intent_fields(voucher_code, cafeteria_id)

    existing = find_intent_for_voucher(voucher_code)
    if existing is not None and existing.local_id != local_id:
        raise DuplicateScanError(voucher_code, existing.local_id)

    intent, _ = PendingRedemptionIntent.objects.get_or_create(
        local_id=local_id or new_local_id(),
        defaults={
            'voucher_code': voucher_code,
            'cafeteria_id': cafeteria_id,
            'signature': signature or '',
            'local_timestamp': local_timestamp or timezone.now(),
        },
    )
    logger.info("Queued offline redemption %s for %s", intent.local_id, voucher_code)
    return intent


def get_due_intents(*, now: Optional[datetime] = None, limit: Optional[int] = None) -> QuerySet:
    """Pending intents whose backoff has elapsed, oldest first."""
    now = now or timezone.now()
    queryset = (
        PendingRedemptionIntent.objects
        .filter(status=IntentStatus.PENDING)
        .filter(Q(next_attempt_at__isnull=True) | Q(next_attempt_at__lte=now))
        .order_by('local_timestamp', 'created_at')
    )
    if limit:
        queryset = queryset[:limit]
    return queryset


def mark_synced(intent: PendingRedemptionIntent) -> None:
    intent.delete()
    logger.info("Redemption %s synced", intent.local_id)


@transaction.atomic
def record_conflict(intent: PendingRedemptionIntent, result: dict) -> Conflict:
    """
    Replace an intent with a Conflict built from the server's result.

    Idempotent: an existing conflict for the same local_id is kept as is.
    """
    conflict, created = Conflict.objects.get_or_create(
        local_id=intent.local_id,
        defaults={
            'voucher_code': intent.voucher_code,
            'cafeteria_id': intent.cafeteria_id,
            'reason': result.get('reason') or 'ALREADY_REDEEMED',
            'local_timestamp': intent.local_timestamp,
            'server_timestamp': _as_datetime(result.get('server_timestamp')),
            'server_cafeteria_id': result.get('cafeteria_id'),
            'server_device_id': result.get('device_id') or '',
        },
    )
    intent.delete()
    if created:
        logger.warning(
            "Conflict for %s (local_id %s): %s",
            intent.voucher_code, intent.local_id, conflict.reason,
        )
    return conflict


def backoff_delay(attempts: int, *, base: float = None, cap: float = None, rng=random.random) -> float:
    """
    Seconds to wait before the next attempt, exponential with full jitter.

    The ceiling grows as base * 2**(attempts - 1) up to ``cap``; the actual
    delay is uniform in [0, ceiling].
    """
    base = settings.TERMINAL_RETRY_BASE_SECONDS if base is None else base
    cap = settings.TERMINAL_RETRY_MAX_SECONDS if cap is None else cap
    ceiling = min(cap, base * (2 ** max(attempts - 1, 0)))
    return ceiling * rng()


def record_failure(
    intent: PendingRedemptionIntent,
    *,
    error: str,
    now: Optional[datetime] = None
) -> PendingRedemptionIntent:
    """
    Count a failed sync attempt and schedule the next one.

    After TERMINAL_MAX_SYNC_ATTEMPTS the intent moves to ``error`` and is
    left for an operator.
    """
    now = now or timezone.now()
    intent.attempts += 1
    intent.last_error = (error or '')[:500]
    intent.last_attempt_at = now

    if intent.attempts >= settings.TERMINAL_MAX_SYNC_ATTEMPTS:
        intent.status = IntentStatus.ERROR
        intent.next_attempt_at = None
        logger.error(
            "Giving up on redemption %s for %s after %d attempts: %s",
            intent.local_id, intent.voucher_code, intent.attempts, error,
        )
    else:
        intent.next_attempt_at = now + timedelta(seconds=backoff_delay(intent.attempts))
        logger.warning(
            "Sync of %s failed (attempt %d): %s",
            intent.local_id, intent.attempts, error,
        )

    intent.save(update_fields=['attempts', 'last_error', 'last_attempt_at', 'next_attempt_at', 'status'])
    return intent


def retry_failed_intents() -> int:
    """Put intents that hit the attempts ceiling back in the queue."""
    count = (
        PendingRedemptionIntent.objects
        .filter(status=IntentStatus.ERROR)
        .update(status=IntentStatus.PENDING, attempts=0, next_attempt_at=None)
    )
    if count:
        logger.info("Re-queued %d failed redemption(s)", count)
    return count


# =============================================================================
# Voucher cache
# =============================================================================

def _as_datetime(value):
    if isinstance(value, str):
        return parse_datetime(value)
    return value


def _as_date(value):
    if isinstance(value, str):
        return parse_date(value)
    return value


def cache_voucher(data: dict) -> CachedVoucher:
    """Store a voucher as returned by the lookup or validate endpoints."""
    stay = data.get('stay') or {}
    cached, _ = CachedVoucher.objects.update_or_create(
        code=data['code'],
        defaults={
            'status': data['status'],
            'valid_from': _as_date(data['valid_from']),
            'valid_until': _as_date(data['valid_until']),
            'guest_name': stay.get('guest_name', ''),
            'room_number': stay.get('room_number', ''),
            'cached_at': timezone.now(),
        },
    )
    return cached


def update_cached_status(code: str, status: str) -> None:
    CachedVoucher.objects.filter(code=code).update(status=status, cached_at=timezone.now())


def remember_final_status(code: str, status: str, *, valid_from=None, valid_until=None) -> None:
    """Record a final state reported by the server, caching the voucher when its dates are known."""
    updated = CachedVoucher.objects.filter(code=code).update(status=status, cached_at=timezone.now())
    if not updated and valid_from and valid_until:
        CachedVoucher.objects.create(
            code=code,
            status=status,
            valid_from=valid_from,
            valid_until=valid_until,
        )



def _cache_cutoff(now=None):
    now = now or timezone.now()
    return now - timedelta(hours=settings.TERMINAL_VOUCHER_CACHE_HOURS)


def get_cached_voucher(code: str, *, now: Optional[datetime] = None) -> Optional[CachedVoucher]:
    """Return the cached voucher unless it is older than the cache lifetime."""
    return (
        CachedVoucher.objects
        .filter(code=code, cached_at__gte=_cache_cutoff(now))
        .first()
    )


def clear_expired_cache(*, now: Optional[datetime] = None) -> int:
    deleted, _ = CachedVoucher.objects.filter(cached_at__lt=_cache_cutoff(now)).delete()
    if deleted:
        logger.info("Purged %d cached voucher(s)", deleted)
    return deleted


# =============================================================================
# Stats
# =============================================================================

def get_queue_stats() -> dict:
    pending = PendingRedemptionIntent.objects.filter(status=IntentStatus.PENDING)
    return {
        'pending_redemptions': pending.count(),
        'failed_redemptions': PendingRedemptionIntent.objects.filter(status=IntentStatus.ERROR).count(),
        'oldest_pending': pending.aggregate(oldest=Min('local_timestamp'))['oldest'],
        'cached_vouchers': CachedVoucher.objects.count(),
        'unresolved_conflicts': Conflict.objects.filter(resolved=False).count(),
    }
