"""
Domain exceptions for the voucher engine.

Every exception carries a machine-readable ``code`` and the HTTP
``status_code`` views should answer with. Views catch ``VoucherServiceError``
and convert it with ``error_payload()``.
"""


class VoucherServiceError(Exception):
    """Base exception for all voucher service errors."""

    code = 'VOUCHER_ERROR'
    status_code = 400

    def __init__(self, message=None, **details):
        super().__init__(message or self.__class__.__doc__)
        self.details = details

    def error_payload(self):
        payload = {'error': str(self), 'code': self.code}
        if self.details:
            payload['details'] = self.details
        return payload


# -----------------------------------------------------------------------------
# Validation
# -----------------------------------------------------------------------------

class VoucherValidationError(VoucherServiceError):
    """Malformed or out-of-range input."""

    code = 'VALIDATION_ERROR'


class LocalIdReuseError(VoucherValidationError):
    """The local_id was already used by this device for another voucher."""

    code = 'LOCAL_ID_MISMATCH'


# -----------------------------------------------------------------------------
# Lookup
# -----------------------------------------------------------------------------

class NotFoundError(VoucherServiceError):
    """Referenced object does not exist."""

    code = 'NOT_FOUND'
    status_code = 404


class StayNotFoundError(NotFoundError):
    """Stay does not exist."""

    code = 'STAY_NOT_FOUND'


class VoucherNotFoundError(NotFoundError):
    """Voucher does not exist."""

    code = 'VOUCHER_NOT_FOUND'


# -----------------------------------------------------------------------------
# Authenticity
# -----------------------------------------------------------------------------

class SignatureError(VoucherServiceError):
    """Voucher signature does not match its attributes."""

    code = 'INVALID_SIGNATURE'


class MalformedPayloadError(SignatureError):
    """QR payload cannot be parsed."""

    code = 'INVALID_QR_PAYLOAD'


# -----------------------------------------------------------------------------
# State machine
# -----------------------------------------------------------------------------

class StateError(VoucherServiceError):
    """Illegal state transition."""

    code = 'INVALID_STATE'
    status_code = 409


class StayNotActiveError(StateError):
    """Stay is not active."""

    code = 'STAY_NOT_ACTIVE'


class VoucherCancelledError(StateError):
    """Voucher was cancelled."""

    code = 'VOUCHER_CANCELLED'


class ExpiryError(VoucherServiceError):
    """Voucher validity window has passed."""

    code = 'VOUCHER_EXPIRED'
    status_code = 409


class NotYetValidError(VoucherServiceError):
    """Voucher validity window has not started."""

    code = 'VOUCHER_NOT_YET_VALID'


# -----------------------------------------------------------------------------
# Concurrency
# -----------------------------------------------------------------------------

class ConflictError(VoucherServiceError):
    """Concurrent or duplicate write detected."""

    code = 'CONFLICT'
    status_code = 409


class AlreadyRedeemedError(ConflictError):
    """Voucher was already redeemed under a different local_id."""

    code = 'ALREADY_REDEEMED'
