"""Staff login."""

import logging

from django.contrib.auth import get_user_model
from django.db import transaction
from django.utils import timezone

from .exceptions import InvalidCredentialsError, InactiveAccountError

User = get_user_model()
logger = logging.getLogger(__name__)


@transaction.atomic
def authenticate_user(*, email: str, password: str) -> User:
    """
    Check a staff member's credentials and stamp ``last_login``.

    Unknown email and wrong password fail with the same message.

    Raises:
        InvalidCredentialsError: If the email/password pair does not match
        InactiveAccountError: If the staff account was disabled
    """
    email = User.objects.normalize_email(email.strip())
    staff = User.objects.select_for_update().filter(email__iexact=email).first()

    if staff is None or not staff.check_password(password):
        logger.warning("Failed login for %s", email)
        raise InvalidCredentialsError("Invalid email or password")

    if not staff.is_active:
        logger.warning("Login attempt on disabled account %s", email)
        raise InactiveAccountError("Account is deactivated")

    staff.last_login = timezone.now()
    staff.save(update_fields=['last_login'])
    logger.info("Staff %s (%s) logged in", staff.email, staff.role)
    return staff
