"""
Domain-specific exceptions for the terminal app.

These exceptions describe what the cafeteria terminal could not do: reach
the server, get a voucher accepted, or apply a conflict resolution.
"""


class TerminalServiceError(Exception):
    """Base exception for all terminal service errors."""
    pass


class TransportError(TerminalServiceError):
    """Raised when the server cannot be reached or answers with a server error."""
    pass


class VoucherRejectedError(TerminalServiceError):
    """Raised when a voucher cannot be redeemed; ``code`` says why."""

    def __init__(self, code, message=None, **details):
        super().__init__(message or code)
        self.code = code
        self.details = details


class RemoteRejectionError(VoucherRejectedError):
    """Raised when the server refused a request with a client error."""

    def __init__(self, code, message=None, status_code=None, **details):
        super().__init__(code, message, **details)
        self.status_code = status_code


class DuplicateScanError(VoucherRejectedError):
    """Raised when the voucher already has a pending redemption on this terminal."""

    def __init__(self, voucher_code, local_id):
        super().__init__(
            'DUPLICATE_SCAN',
            f"Voucher {voucher_code} ya tiene un canje pendiente",
            voucher_code=voucher_code,
            local_id=local_id,
        )


class ConflictNotFoundError(TerminalServiceError):
    """Raised when no conflict exists for a local_id."""
    pass


class InvalidResolutionError(TerminalServiceError):
    """Raised when a conflict resolution action is unknown."""
    pass
