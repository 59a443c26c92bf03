"""
Vouchers app services layer.

Services contain business logic and own every voucher state transition.
Transitions are conditional updates on the current status; the unique
constraint on Redemption.voucher settles concurrent redemptions.
"""

from .exceptions import (
    VoucherServiceError,
    VoucherValidationError,
    LocalIdReuseError,
    NotFoundError,
    StayNotFoundError,
    VoucherNotFoundError,
    SignatureError,
    MalformedPayloadError,
    StateError,
    StayNotActiveError,
    VoucherCancelledError,
    ExpiryError,
    NotYetValidError,
    ConflictError,
    AlreadyRedeemedError,
)

from .signing import (
    VoucherSigner,
    VoucherPayload,
    get_signer,
    encode_qr_payload,
    decode_qr_payload,
)

from .validation import (
    ValidationResult,
    get_voucher_by_code,
    expire_if_past,
    validate_voucher,
)

from .issuance import (
    issue_vouchers,
)

from .cancellation import (
    cancel_voucher,
)

from .redemption import (
    redeem_voucher,
)

from .outcomes import (
    Synced,
    Conflict,
    Failed,
    SyncOutcome,
    SyncBatchReport,
)

from .sync import (
    RedemptionIntent,
    RejectedIntent,
    reconcile_intent,
    sync_batch,
    get_sync_history,
    get_sync_stats,
)


__all__ = [
    # Exceptions
    'VoucherServiceError',
    'VoucherValidationError',
    'LocalIdReuseError',
    'NotFoundError',
    'StayNotFoundError',
    'VoucherNotFoundError',
    'SignatureError',
    'MalformedPayloadError',
    'StateError',
    'StayNotActiveError',
    'VoucherCancelledError',
    'ExpiryError',
    'NotYetValidError',
    'ConflictError',
    'AlreadyRedeemedError',

    # Signing
    'VoucherSigner',
    'VoucherPayload',
    'get_signer',
    'encode_qr_payload',
    'decode_qr_payload',

    # Validation
    'ValidationResult',
    'get_voucher_by_code',
    'expire_if_past',
    'validate_voucher',

    # Lifecycle
    'issue_vouchers',
    'cancel_voucher',
    'redeem_voucher',

    # Sync
    'Synced',
    'Conflict',
    'Failed',
    'SyncOutcome',
    'SyncBatchReport',
    'RedemptionIntent',
    'RejectedIntent',
    'reconcile_intent',
    'sync_batch',
    'get_sync_history',
    'get_sync_stats',
]
