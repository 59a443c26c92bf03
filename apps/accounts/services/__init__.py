"""Staff authentication services."""

from .exceptions import (
    AccountsServiceError,
    InvalidCredentialsError,
    InactiveAccountError,
)
from .user_authentication import authenticate_user

__all__ = [
    'AccountsServiceError',
    'InvalidCredentialsError',
    'InactiveAccountError',
    'authenticate_user',
]
