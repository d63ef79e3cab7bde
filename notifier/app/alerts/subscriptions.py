"""
subscriptions.py — Recipients, enable/disable and auto-archive.

Every change to an alert's channels goes through this module. Writes hold
one lock and replace the alert's full channel set in the store, so a
concurrent firing sees either the old set or the new one.

═══════════════════════════════════════════════════════════════════════════
NOTICES
═══════════════════════════════════════════════════════════════════════════

    change                                   notice
    ──────────────────────────────────────   ──────────────────────────
    alert created                            creator: confirmation
                                             other recipients: subscribed
    recipient added to an enabled channel    subscribed
    recipient removed                        unsubscribed
    channel disabled                         unsubscribed (all recipients)
    channel re-enabled                       subscribed (all recipients)

``replace_channels`` compares per-user membership of enabled channels
before and after the write and sends each affected user exactly one
notice: "subscribed" if they joined any enabled channel, otherwise
"unsubscribed" if they are left with none.

═══════════════════════════════════════════════════════════════════════════
AUTO-ARCHIVE
═══════════════════════════════════════════════════════════════════════════

Checked after any recipient removal. The alert is archived when neither
of these remains:

    • an enabled recipient-addressed channel with at least one recipient
    • an enabled endpoint-addressed channel (chat, http)
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, Iterable, List, Optional, Sequence, Set

from notifier.app.alerts.channels.registry import ChannelRegistry
from notifier.app.alerts.collaborators import AuditSink
from notifier.app.alerts.models import (
    Alert,
    AuditEvent,
    AuditTopic,
    Channel,
    NotificationKind,
    User,
    channel_audit_details,
)
from notifier.app.alerts.store import EntityStore
from notifier.app.core.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


class SubscriptionManager:
    def __init__(
        self,
        store: EntityStore,
        registry: ChannelRegistry,
        dispatcher,
        audit: AuditSink,
    ):
        self.store = store
        self.registry = registry
        self.dispatcher = dispatcher
        self.audit = audit
        self._lock = threading.RLock()

    # ── Helpers ──

    def _load_alert(self, alert_id: Optional[int]) -> Alert:
        alert = self.store.get_alert(alert_id) if alert_id is not None else None
        if alert is None:
            raise NotFoundError("Alert", id=alert_id)
        return alert

    def _load_channel(self, channel: Channel) -> Channel:
        current = self.store.get_channel(channel.id) if channel.id is not None else None
        if current is None:
            raise NotFoundError("Channel", id=channel.id)
        return current

    def _write_channel(self, channel: Channel) -> Channel:
        siblings = self.store.get_channels(channel.alert_id)
        updated = [channel if c.id == channel.id else c for c in siblings]
        saved = self.store.replace_channels(channel.alert_id, updated)
        return next(c for c in saved if c.id == channel.id)

    def _users(self, user_ids: Iterable[int]) -> List[User]:
        return [u for u in (self.store.get_user(uid) for uid in user_ids) if u is not None]

    def _notify(
        self,
        alert: Alert,
        kind: NotificationKind,
        user_ids: Iterable[int],
        actor: Optional[User],
        channels: Optional[Sequence[Channel]] = None,
    ) -> None:
        users = self._users(sorted(set(user_ids)))
        if not users:
            return
        result = self.dispatcher.notify_manual(alert, kind, users, actor=actor, channels=channels)
        if not result.success:
            logger.warning(
                "Alert %s: %s notice not fully delivered: %s",
                alert.id, kind.value, result.detail,
            )

    def _enabled_memberships(self, channels: Sequence[Channel]) -> Dict[int, Set[int]]:
        """user id → ids of enabled recipient-addressed channels they receive."""
        members: Dict[int, Set[int]] = {}
        for channel in channels:
            if not channel.enabled or channel.channel_type not in self.registry:
                continue
            if not self.registry.is_recipient_addressed(channel.channel_type):
                continue
            for uid in channel.recipients:
                members.setdefault(uid, set()).add(channel.id)
        return members

    def _require_recipient_addressed(self, channel: Channel) -> None:
        if not self.registry.is_recipient_addressed(channel.channel_type):
            raise ValidationError(
                f"{channel.channel_type} channels do not take recipients",
                field="recipients",
            )

    # ── Auto-archive ──

    def is_orphaned(self, channels: Sequence[Channel]) -> bool:
        for channel in channels:
            if not channel.enabled or channel.channel_type not in self.registry:
                continue
            if not self.registry.is_recipient_addressed(channel.channel_type):
                return False
            if channel.recipients:
                return False
        return True

    def archive_if_orphaned(self, alert_id: int, actor: Optional[User] = None) -> bool:
        """Archive the alert when nobody and nothing is left to deliver to."""
        newly_archived: List[int] = []

        def archive(row: Alert) -> None:
            if not row.archived:
                row.archived = True
                newly_archived.append(row.id)

        with self._lock:
            current = self.store.get_alert(alert_id)
            if current is None or current.archived:
                return False
            channels = self.store.get_channels(alert_id)
            if not self.is_orphaned(channels):
                return False
            alert = self.store.update_alert(alert_id, archive)
        if alert is None or not newly_archived:
            return False

        self.audit.record(AuditEvent(
            topic=AuditTopic.ALERT_UPDATE,
            actor_id=actor.id if actor else None,
            alert_id=alert.id,
            details=channel_audit_details(alert, channels),
        ))
        logger.info("Alert %s archived: no remaining recipients or endpoints", alert.id)
        return True

    # ── Single-channel operations ──

    def add_recipient(self, channel: Channel, user: User, actor: Optional[User] = None) -> Channel:
        with self._lock:
            current = self._load_channel(channel)
            self._require_recipient_addressed(current)
            if user.id in current.recipients:
                return current
            current.recipients = current.recipients + (user.id,)
            saved = self._write_channel(current)
            alert = self._load_alert(saved.alert_id)

        logger.info("User %s added to channel %s of alert %s", user.id, saved.id, alert.id)
        if saved.enabled:
            self._notify(alert, NotificationKind.SUBSCRIBED, [user.id], actor, [saved])
        return saved

    def remove_recipient(self, channel: Channel, user: User, actor: Optional[User] = None) -> Channel:
        with self._lock:
            current = self._load_channel(channel)
            if user.id not in current.recipients:
                return current
            current.recipients = tuple(uid for uid in current.recipients if uid != user.id)
            saved = self._write_channel(current)
            alert = self._load_alert(saved.alert_id)

        logger.info("User %s removed from channel %s of alert %s", user.id, saved.id, alert.id)
        self._notify(alert, NotificationKind.UNSUBSCRIBED, [user.id], actor, [saved])
        self.archive_if_orphaned(alert.id, actor)
        return saved

    def set_channel_enabled(self, channel: Channel, enabled: bool, actor: Optional[User] = None) -> Channel:
        with self._lock:
            current = self._load_channel(channel)
            if current.enabled == enabled:
                return current
            current.enabled = enabled
            saved = self._write_channel(current)
            alert = self._load_alert(saved.alert_id)

        logger.info("Channel %s of alert %s %s", saved.id, alert.id,
                    "enabled" if enabled else "disabled")
        if self.registry.is_recipient_addressed(saved.channel_type):
            kind = NotificationKind.SUBSCRIBED if enabled else NotificationKind.UNSUBSCRIBED
            self._notify(alert, kind, saved.recipients, actor, [saved])
        return saved

    # ── Whole-alert operations ──

    def create_channels(
        self,
        alert: Alert,
        channels: Sequence[Channel],
        actor: Optional[User] = None,
    ) -> List[Channel]:
        """First channel set of a new alert; confirms to the creator, subscribes the rest."""
        with self._lock:
            saved = self.store.replace_channels(alert.id, channels)

        members = self._enabled_memberships(saved)
        self._notify(alert, NotificationKind.CONFIRMATION, [alert.creator_id], actor, saved)
        self._notify(
            alert, NotificationKind.SUBSCRIBED,
            [uid for uid in members if uid != alert.creator_id], actor, saved,
        )
        return saved

    def replace_channels(
        self,
        alert: Alert,
        new_channels: Sequence[Channel],
        actor: Optional[User] = None,
    ) -> List[Channel]:
        """
        Make ``new_channels`` the alert's channel set.

        Channels with an ``id`` replace the stored channel of that id; the
        rest are created; stored channels not listed are deleted.
        """
        with self._lock:
            before = self.store.get_channels(alert.id)
            saved = self.store.replace_channels(alert.id, new_channels)

        before_members = self._enabled_memberships(before)
        after_members = self._enabled_memberships(saved)

        subscribed = [
            uid for uid, cids in after_members.items()
            if cids - before_members.get(uid, set())
        ]
        unsubscribed = [
            uid for uid in before_members
            if uid not in after_members
        ]

        after_recipients = {c.id: set(c.recipients) for c in saved}
        removed_any = any(
            set(c.recipients) - after_recipients.get(c.id, set())
            for c in before
        )

        self._notify(alert, NotificationKind.SUBSCRIBED, subscribed, actor, saved)
        self._notify(alert, NotificationKind.UNSUBSCRIBED, unsubscribed, actor, saved)
        if removed_any:
            self.archive_if_orphaned(alert.id, actor)
        return saved

    def unsubscribe(self, alert: Alert, user: User) -> bool:
        """Remove ``user`` from every channel of ``alert``; one notice at most."""
        with self._lock:
            channels = self.store.get_channels(alert.id)
            was_member = user.id in self._enabled_memberships(channels)
            changed = False
            for channel in channels:
                if user.id in channel.recipients:
                    channel.recipients = tuple(uid for uid in channel.recipients if uid != user.id)
                    changed = True
            if changed:
                self.store.replace_channels(alert.id, channels)

        if was_member:
            self._notify(alert, NotificationKind.UNSUBSCRIBED, [user.id], user, channels)
        if changed:
            self.archive_if_orphaned(alert.id, user)
        return changed
