"""
Terminal identity.
"""

import logging
from uuid import uuid4

from django.conf import settings
from django.utils import timezone

from apps.terminal.models import TerminalDevice

logger = logging.getLogger(__name__)


def get_device() -> TerminalDevice:
    """
    Return this terminal's identity row, creating it on first use.

    TERMINAL_DEVICE_ID is used when set; otherwise a random id is generated
    once and persisted.
    """
    device, created = TerminalDevice.objects.get_or_create(
        id=1,
        defaults={'device_id': settings.TERMINAL_DEVICE_ID or f"terminal-{uuid4().hex[:12]}"},
    )
    if created:
        logger.info("Registered terminal device %s", device.device_id)
    return device


def get_device_id() -> str:
    return get_device().device_id


def record_sync(*, at=None) -> None:
    TerminalDevice.objects.filter(id=1).update(last_sync_at=at or timezone.now())
