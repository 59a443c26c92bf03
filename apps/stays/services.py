"""
Stay lookup used by voucher issuance.
"""

from uuid import UUID

from .exceptions import StayDoesNotExistError
from .models import Stay


def get_stay(stay_id: UUID) -> Stay:
    """
    Return the stay with its check-in/check-out window and status.

    Raises:
        StayDoesNotExistError: If no stay has this ID
    """
    try:
        return Stay.objects.get(id=stay_id)
    except (Stay.DoesNotExist, ValueError):
        raise StayDoesNotExistError(f"Stay with ID {stay_id} not found")
