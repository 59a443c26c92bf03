"""
Terminal app services layer.

Everything the cafeteria terminal does locally: redeem online or queue,
sync queued redemptions, and resolve the conflicts the server reports.
"""

from .exceptions import (
    TerminalServiceError,
    TransportError,
    VoucherRejectedError,
    RemoteRejectionError,
    DuplicateScanError,
    ConflictNotFoundError,
    InvalidResolutionError,
)

from .device import (
    get_device,
    get_device_id,
)

from .offline_queue import (
    enqueue_intent,
    get_due_intents,
    backoff_delay,
    retry_failed_intents,
    cache_voucher,
    get_cached_voucher,
    clear_expired_cache,
    get_queue_stats,
)

from .transport import (
    SyncTransport,
    HttpSyncTransport,
    LocalSyncTransport,
)

from .sync_agent import (
    SyncAgent,
    SyncCycleReport,
)

from .conflict_resolution import (
    resolve_conflict,
    get_unresolved_conflicts,
)

from .redemption import (
    TerminalRedemption,
    redeem_at_terminal,
    lookup_voucher,
)


__all__ = [
    # Exceptions
    'TerminalServiceError',
    'TransportError',
    'VoucherRejectedError',
    'RemoteRejectionError',
    'DuplicateScanError',
    'ConflictNotFoundError',
    'InvalidResolutionError',

    # Device
    'get_device',
    'get_device_id',

    # Offline queue
    'enqueue_intent',
    'get_due_intents',
    'backoff_delay',
    'retry_failed_intents',
    'cache_voucher',
    'get_cached_voucher',
    'clear_expired_cache',
    'get_queue_stats',

    # Sync
    'SyncTransport',
    'HttpSyncTransport',
    'LocalSyncTransport',
    'SyncAgent',
    'SyncCycleReport',

    # Conflicts
    'resolve_conflict',
    'get_unresolved_conflicts',

    # Redemption
    'TerminalRedemption',
    'redeem_at_terminal',
    'lookup_voucher',
]
