"""
Conflict resolution service.

Applies an operator's decision to a conflict reported by the server.
"""

import logging

from django.db import transaction
from django.db.models import QuerySet
from django.utils import timezone

from apps.terminal.models import Conflict, ConflictResolution, PendingRedemptionIntent

from .exceptions import ConflictNotFoundError, InvalidResolutionError

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger('audit')

RESOLUTION_ACTIONS = {
    'accept_server': ConflictResolution.ACCEPTED_SERVER,
    'regenerate': ConflictResolution.MARKED_FOR_REGENERATION,
    'dismiss': ConflictResolution.DISMISSED,
}


@transaction.atomic
def resolve_conflict(*, local_id: str, action: str, user=None) -> Conflict:
    """
    Resolve a conflict.

    ``accept_server`` drops any local trace of the intent, ``regenerate``
    flags the voucher for manual reissue, ``dismiss`` only closes the
    conflict. Resolving an already resolved conflict changes nothing.

    Args:
        local_id: Conflict identifier (the intent's local_id)
        action: accept_server, regenerate or dismiss
        user: Operator applying the resolution

    Returns:
        The conflict

    Raises:
        InvalidResolutionError: If the action is unknown
        ConflictNotFoundError: If no conflict has this local_id
    """
    if action not in RESOLUTION_ACTIONS:
        raise InvalidResolutionError(
            f"Unknown action {action!r}, expected one of {', '.join(RESOLUTION_ACTIONS)}"
        )

    try:
        conflict = Conflict.objects.select_for_update().get(local_id=local_id)
    except Conflict.DoesNotExist:
        raise ConflictNotFoundError(f"Conflict {local_id} not found")

    if conflict.resolved:
        return conflict

    if action == 'accept_server':
        PendingRedemptionIntent.objects.filter(local_id=local_id).delete()

    conflict.resolved = True
    conflict.resolution = RESOLUTION_ACTIONS[action]
    conflict.resolved_at = timezone.now()
    conflict.save(update_fields=['resolved', 'resolution', 'resolved_at'])

    audit_logger.info(
        "conflict_resolved local_id=%s code=%s resolution=%s user=%s",
        local_id, conflict.voucher_code, conflict.resolution, user.id if user else None,
        extra={
            'event': 'conflict_resolved',
            'local_id': local_id,
            'voucher_code': conflict.voucher_code,
            'resolution': conflict.resolution,
            'user_id': str(user.id) if user else None,
        },
    )
    logger.info("Conflict %s resolved: %s", local_id, conflict.resolution)
    return conflict


def get_unresolved_conflicts() -> QuerySet:
    return Conflict.objects.filter(resolved=False).order_by('detected_at')
