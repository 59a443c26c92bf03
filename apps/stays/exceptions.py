"""
Domain exceptions for stays app.
"""


class StaysServiceError(Exception):
    """Base exception for stay lookups."""
    pass


class StayDoesNotExistError(StaysServiceError):
    """Raised when a stay ID is unknown."""
    pass
