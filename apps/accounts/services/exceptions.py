"""Exceptions raised by staff authentication."""


class AccountsServiceError(Exception):
    """Base exception for accounts services."""
    pass


class InvalidCredentialsError(AccountsServiceError):
    """Email/password pair does not match any staff member."""
    pass


class InactiveAccountError(AccountsServiceError):
    """Staff account was disabled by an administrator."""
    pass
