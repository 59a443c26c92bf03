"""
Redemption at the cafeteria terminal.

Online first: the server is asked to redeem right away. When it cannot be
reached (or the terminal is in offline mode) the redemption is queued and
the guest still gets breakfast. Scanned QR payloads are checked against the
public key before anything else, so a forged code is refused offline too.
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional

from django.utils import timezone

from apps.vouchers.models import TERMINAL_STATUSES, VoucherStatus
from apps.vouchers.services import decode_qr_payload, get_signer

from . import offline_queue
from .exceptions import (
    DuplicateScanError,
    RemoteRejectionError,
    TransportError,
    VoucherRejectedError,
)

logger = logging.getLogger(__name__)

REDEEMED = 'redeemed'
QUEUED = 'queued'

# Server rejection codes that reveal the voucher's final state
REJECTED_STATUSES = {
    'ALREADY_REDEEMED': VoucherStatus.REDEEMED,
    'VOUCHER_CANCELLED': VoucherStatus.CANCELLED,
    'VOUCHER_EXPIRED': VoucherStatus.EXPIRED,
}


@dataclass(frozen=True)
class TerminalRedemption:
    status: str
    local_id: str
    voucher_code: str
    redemption: Optional[dict] = None

    @property
    def queued(self) -> bool:
        return self.status == QUEUED


def _precheck_payload(qr_payload: str, today: date):
    """
    Verify a scanned payload offline.

    Raises:
        MalformedPayloadError: If the payload cannot be parsed
        SignatureError: If the signature does not match
        VoucherRejectedError: If today is outside the validity window
    """
    payload = decode_qr_payload(qr_payload)
    payload.verify(get_signer())

    if today > payload.valid_until:
        raise VoucherRejectedError('VOUCHER_EXPIRED', "Voucher expirado", voucher_code=payload.code)
    if today < payload.valid_from:
        raise VoucherRejectedError('VOUCHER_NOT_YET_VALID', "Voucher aún no válido", voucher_code=payload.code)
    return payload


def redeem_at_terminal(
    agent,
    *,
    cafeteria_id: int,
    voucher_code: Optional[str] = None,
    qr_payload: Optional[str] = None,
    offline: bool = False,
    today: Optional[date] = None
) -> TerminalRedemption:
    """
    Redeem a scanned or typed voucher.

    Args:
        agent: SyncAgent providing the transport and device id
        cafeteria_id: Cafeteria where the terminal stands
        voucher_code: Code typed by the operator
        qr_payload: Raw QR content (takes precedence over voucher_code)
        offline: Skip the server and queue directly

    Returns:
        TerminalRedemption with status ``redeemed`` or ``queued``

    Raises:
        SignatureError: If the QR payload is forged or malformed
        VoucherRejectedError: If the voucher is known to be unusable
        DuplicateScanError: If the voucher is already queued here
        RemoteRejectionError: If the server refused the redemption
    """
    today = today or timezone.localdate()
    signature = None
    payload = None

    if qr_payload:
        payload = _precheck_payload(qr_payload, today)
        voucher_code, signature = payload.code, payload.signature
    elif not voucher_code:
        raise ValueError("voucher_code or qr_payload is required")

    offline_queue.check_intent_fields(voucher_code, cafeteria_id)

    cached = offline_queue.get_cached_voucher(voucher_code)
    if cached is not None and cached.status in TERMINAL_STATUSES:
        raise VoucherRejectedError(
            f"VOUCHER_{cached.status.upper()}",
            f"Voucher {voucher_code} no disponible ({cached.status})",
            voucher_code=voucher_code,
        )

    queued = offline_queue.find_intent_for_voucher(voucher_code)
    if queued is not None:
        raise DuplicateScanError(voucher_code, queued.local_id)

    local_id = offline_queue.new_local_id()
    local_timestamp = timezone.now()

    if not offline:
        try:
            response = agent.transport.redeem(
                code=voucher_code,
                signature=signature,
                cafeteria_id=cafeteria_id,
                device_id=agent.device_id,
                local_id=local_id,
                local_timestamp=local_timestamp,
            )
        except TransportError as exc:
            logger.warning("Server unreachable, queueing %s: %s", voucher_code, exc)
        except RemoteRejectionError as exc:
            rejected_status = REJECTED_STATUSES.get(exc.code)
            if rejected_status:
                offline_queue.remember_final_status(
                    voucher_code,
                    rejected_status,
                    valid_from=payload.valid_from if payload else None,
                    valid_until=payload.valid_until if payload else None,
                )
            raise
        else:
            offline_queue.update_cached_status(voucher_code, VoucherStatus.REDEEMED)
            return TerminalRedemption(
                status=REDEEMED,
                local_id=local_id,
                voucher_code=voucher_code,
                redemption=response.get('redemption'),
            )

    intent = offline_queue.enqueue_intent(
        voucher_code=voucher_code,
        cafeteria_id=cafeteria_id,
        signature=signature or '',
        local_id=local_id,
        local_timestamp=local_timestamp,
    )
    offline_queue.update_cached_status(voucher_code, VoucherStatus.REDEEMED)
    return TerminalRedemption(status=QUEUED, local_id=intent.local_id, voucher_code=voucher_code)


def lookup_voucher(agent, code: str):
    """
    Fetch a voucher from the server and cache it; fall back to the cache offline.

    Returns:
        CachedVoucher, or None when offline with nothing cached
    """
    try:
        data = agent.transport.get_voucher(code)
    except TransportError:
        return offline_queue.get_cached_voucher(code)
    return offline_queue.cache_voucher(data)
