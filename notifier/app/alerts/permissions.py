"""
permissions.py — Who may see an alert, and who may change it.

    operation            allowed for
    ──────────────────   ────────────────────────────────────────────────
    read                 admin · creator · recipient of any channel ·
                         anyone with collection read on the query
    write                admin · creator or recipient who can also read
                         the query's collection
    write channels       admin · recipient with the monitoring or
                         subscription capability

Denied reads and writes raise PermissionDenied with the generic message;
denied channel writes carry their own fixed wording.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Sequence, Tuple

from notifier.app.alerts.collaborators import CollectionPermissions
from notifier.app.alerts.models import Alert, Channel, User
from notifier.app.core.errors import PermissionDenied

logger = logging.getLogger(__name__)

CHANNEL_PERMISSION_MESSAGE = (
    "Non-admin users without monitoring or subscription permissions "
    "are not allowed to modify the channels for an alert"
)


def is_recipient(user: User, channels: Sequence[Channel]) -> bool:
    return any(user.id in c.recipients for c in channels)


class PermissionFilter:
    def __init__(self, collection_permissions: CollectionPermissions):
        self.collection_permissions = collection_permissions

    def _can_read_query(self, actor: User, alert: Alert) -> bool:
        return self.collection_permissions.can_read_query(actor, alert.query_id)

    def can_read(self, actor: User, alert: Alert, channels: Sequence[Channel]) -> bool:
        if actor.is_admin or actor.id == alert.creator_id:
            return True
        if is_recipient(actor, channels):
            return True
        return self._can_read_query(actor, alert)

    def can_write(self, actor: User, alert: Alert, channels: Sequence[Channel]) -> bool:
        if actor.is_admin:
            return True
        involved = actor.id == alert.creator_id or is_recipient(actor, channels)
        return involved and self._can_read_query(actor, alert)

    def can_write_channels(self, actor: User, alert: Alert, channels: Sequence[Channel]) -> bool:
        if actor.is_admin:
            return True
        return actor.can_manage_subscriptions and is_recipient(actor, channels)

    def check_read(self, actor: User, alert: Alert, channels: Sequence[Channel]) -> None:
        if not self.can_read(actor, alert, channels):
            logger.info("User %s denied read on alert %s", actor.id, alert.id)
            raise PermissionDenied()

    def check_write(self, actor: User, alert: Alert, channels: Sequence[Channel]) -> None:
        if not self.can_write(actor, alert, channels):
            logger.info("User %s denied write on alert %s", actor.id, alert.id)
            raise PermissionDenied()

    def check_write_channels(self, actor: User, alert: Alert, channels: Sequence[Channel]) -> None:
        if not self.can_write_channels(actor, alert, channels):
            logger.info("User %s denied channel write on alert %s", actor.id, alert.id)
            raise PermissionDenied(CHANNEL_PERMISSION_MESSAGE)

    def filter_readable(
        self,
        actor: User,
        alerts: Iterable[Tuple[Alert, List[Channel]]],
        include_archived: bool = False,
    ) -> List[Tuple[Alert, List[Channel]]]:
        """Pairs of (alert, channels) the actor may see, archived ones dropped by default."""
        return [
            (alert, channels)
            for alert, channels in alerts
            if (include_archived or not alert.archived)
            and self.can_read(actor, alert, channels)
        ]
