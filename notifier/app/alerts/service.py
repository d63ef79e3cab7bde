"""
service.py — Alert operations behind the HTTP surface.

    create_alert               validate → persist alert + channels → notices → audit
    update_alert               404 / 403 checks → validate → persist → notices → audit
    get_alert                  404 / 403
    list_alerts                visibility-filtered, optional user filter
    list_alerts_for_query      visibility-filtered
    unsubscribe                drop the actor from every channel → audit
    archive_alerts_for_query   the query behind the alerts was deleted

Validation happens before anything is written: a rejected create or update
leaves the store untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from notifier.app.alerts.channels.registry import ChannelRegistry
from notifier.app.alerts.collaborators import AuditSink, CollectionPermissions
from notifier.app.alerts.conditions import validate_condition
from notifier.app.alerts.models import (
    Alert,
    AlertCondition,
    AuditEvent,
    AuditTopic,
    Channel,
    User,
    channel_audit_details,
)
from notifier.app.alerts.permissions import PermissionFilter, is_recipient
from notifier.app.alerts.schedule import normalize_schedule
from notifier.app.alerts.store import EntityStore
from notifier.app.alerts.subscriptions import SubscriptionManager
from notifier.app.core.errors import (
    NotFoundError,
    PermissionDenied,
    ValidationError,
)

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = (
    "name", "condition", "alert_first_only", "alert_above_goal",
    "skip_if_empty", "archived",
)


@dataclass
class AlertView:
    """An alert with its channels, as returned to callers."""
    alert: Alert
    channels: List[Channel] = field(default_factory=list)


class AlertService:
    def __init__(
        self,
        store: EntityStore,
        registry: ChannelRegistry,
        permissions: PermissionFilter,
        subscriptions: SubscriptionManager,
        collection_permissions: CollectionPermissions,
        audit: AuditSink,
    ):
        self.store = store
        self.registry = registry
        self.permissions = permissions
        self.subscriptions = subscriptions
        self.collection_permissions = collection_permissions
        self.audit = audit

    # ── Validation ──

    def _prepare_channels(self, channels: Sequence[Channel]) -> List[Channel]:
        """Normalise schedules and validate details; collect every field error."""
        errors: Dict[str, str] = {}
        prepared: List[Channel] = []

        for i, channel in enumerate(channels):
            prefix = f"channels.{i}"
            try:
                stype, hour, day = normalize_schedule(
                    channel.schedule_type, channel.schedule_hour, channel.schedule_day,
                )
                capability = self.registry.get(channel.channel_type)
            except ValidationError as exc:
                errors.update({f"{prefix}.{k}": v for k, v in exc.errors.items()})
                continue

            if channel.recipients and not capability.recipient_addressed:
                errors[f"{prefix}.recipients"] = (
                    f"{channel.channel_type} channels do not take recipients"
                )
            unknown = [uid for uid in channel.recipients if self.store.get_user(uid) is None]
            if unknown:
                errors[f"{prefix}.recipients"] = f"unknown users: {unknown}"

            try:
                capability.validate(channel.details)
            except ValidationError as exc:
                errors.update({f"{prefix}.{k}": v for k, v in exc.errors.items()})
                continue

            prepared.append(Channel(
                channel_type=channel.channel_type,
                schedule_type=stype,
                schedule_hour=hour,
                schedule_day=day,
                enabled=channel.enabled,
                details=dict(channel.details),
                recipients=tuple(dict.fromkeys(channel.recipients)),
                id=channel.id,
            ))

        if errors:
            raise ValidationError("invalid channels", errors=errors)
        return prepared

    @staticmethod
    def _channels_changed(before: Sequence[Channel], after: Sequence[Channel]) -> bool:
        """Anything but schedule fields differing counts as a channel change."""
        def shape(channels: Sequence[Channel]):
            return sorted(
                (
                    c.id or 0, c.channel_type, c.enabled,
                    tuple(sorted(set(c.recipients))), repr(sorted(c.details.items())),
                )
                for c in channels
            )
        return shape(before) != shape(after)

    def _require_user(self, user_id: int) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User", id=user_id)
        return user

    def _load(self, alert_id: int) -> Tuple[Alert, List[Channel]]:
        alert = self.store.get_alert(alert_id)
        if alert is None:
            raise NotFoundError("Alert", id=alert_id)
        return alert, self.store.get_channels(alert_id)

    def _audit(self, topic: AuditTopic, actor: Optional[User], alert: Alert,
               channels: Sequence[Channel]) -> None:
        self.audit.record(AuditEvent(
            topic=topic,
            actor_id=actor.id if actor else None,
            alert_id=alert.id,
            details=channel_audit_details(alert, channels),
        ))

    # ── Operations ──

    def create_alert(self, actor: User, alert: Alert, channels: Sequence[Channel]) -> AlertView:
        validate_condition(alert.condition, alert.alert_above_goal)
        if not channels:
            raise ValidationError("an alert needs at least one channel", field="channels")
        prepared = self._prepare_channels(channels)

        if not actor.is_admin and not self.collection_permissions.can_read_query(actor, alert.query_id):
            raise PermissionDenied()

        new_alert = Alert(
            query_id=alert.query_id,
            creator_id=actor.id,
            condition=alert.condition,
            alert_first_only=alert.alert_first_only,
            alert_above_goal=alert.alert_above_goal,
            skip_if_empty=alert.skip_if_empty,
            name=alert.name,
        )
        saved = self.store.save_alert(new_alert)
        for channel in prepared:
            channel.id = None
        saved_channels = self.subscriptions.create_channels(saved, prepared, actor)

        self._audit(AuditTopic.ALERT_CREATE, actor, saved, saved_channels)
        logger.info(
            "Alert %s created by user %s on query %s (%d channels)",
            saved.id, actor.id, saved.query_id, len(saved_channels),
            extra={"alert_id": saved.id},
        )
        return AlertView(saved, saved_channels)

    def update_alert(
        self,
        actor: User,
        alert_id: int,
        changes: Mapping[str, Any],
        channels: Optional[Sequence[Channel]] = None,
    ) -> AlertView:
        alert, current_channels = self._load(alert_id)
        if channels is not None and self._channels_changed(current_channels, channels):
            self.permissions.check_write_channels(actor, alert, current_channels)
        self.permissions.check_write(actor, alert, current_channels)

        unknown = set(changes) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(
                "unknown fields", errors={f: "cannot be updated" for f in sorted(unknown)},
            )

        prepared: Optional[List[Channel]] = None
        if channels is not None:
            if not channels:
                raise ValidationError("an alert needs at least one channel", field="channels")
            own_ids = {c.id for c in current_channels}
            foreign = [c.id for c in channels if c.id is not None and c.id not in own_ids]
            if foreign:
                raise ValidationError(
                    f"channels {foreign} do not belong to alert {alert_id}", field="channels",
                )
            prepared = self._prepare_channels(channels)

        # Applied to the row as stored at write time: fields the request
        # does not name (archived in particular) keep their latest value.
        def apply(row: Alert) -> None:
            for name in UPDATABLE_FIELDS:
                if name in changes and changes[name] is not None:
                    value = changes[name]
                    setattr(row, name, AlertCondition(value) if name == "condition" else value)
            if "alert_above_goal" in changes and changes["alert_above_goal"] is None:
                row.alert_above_goal = None
            if row.condition != AlertCondition.GOAL and "alert_above_goal" not in changes:
                row.alert_above_goal = None
            validate_condition(row.condition, row.alert_above_goal)

        saved = self.store.update_alert(alert_id, apply)
        if saved is None:
            raise NotFoundError("Alert", id=alert_id)
        saved_channels = current_channels
        if prepared is not None:
            saved_channels = self.subscriptions.replace_channels(saved, prepared, actor)
            saved = self.store.get_alert(alert_id) or saved

        self._audit(AuditTopic.ALERT_UPDATE, actor, saved, saved_channels)
        logger.info("Alert %s updated by user %s", alert_id, actor.id, extra={"alert_id": alert_id})
        return AlertView(saved, saved_channels)

    def get_alert(self, actor: User, alert_id: int) -> AlertView:
        alert, channels = self._load(alert_id)
        self.permissions.check_read(actor, alert, channels)
        return AlertView(alert, channels)

    def _visible(
        self,
        actor: User,
        alerts: Sequence[Alert],
        archived: bool,
    ) -> List[AlertView]:
        pairs = [
            (a, self.store.get_channels(a.id)) for a in alerts if a.archived == archived
        ]
        return [
            AlertView(a, c)
            for a, c in self.permissions.filter_readable(actor, pairs, include_archived=archived)
        ]

    def list_alerts(
        self,
        actor: User,
        archived: bool = False,
        user_id: Optional[int] = None,
    ) -> List[AlertView]:
        """
        Alerts the actor may see. ``archived`` selects archived alerts
        instead of active ones; ``user_id`` keeps alerts created by or
        delivered to that user.
        """
        views = self._visible(actor, self.store.list_alerts(), archived)
        if user_id is not None:
            target = self._require_user(user_id)
            views = [
                v for v in views
                if v.alert.creator_id == target.id or is_recipient(target, v.channels)
            ]
        return views

    def list_alerts_for_query(self, actor: User, query_id: int, archived: bool = False) -> List[AlertView]:
        return self._visible(actor, self.store.list_alerts_for_query(query_id), archived)

    def unsubscribe(self, actor: User, alert_id: int) -> None:
        alert, channels = self._load(alert_id)
        self.permissions.check_read(actor, alert, channels)

        self.subscriptions.unsubscribe(alert, actor)
        self.audit.record(AuditEvent(
            topic=AuditTopic.ALERT_UNSUBSCRIBE,
            actor_id=actor.id,
            alert_id=alert.id,
            details={"email": actor.email},
        ))
        logger.info("User %s unsubscribed from alert %s", actor.id, alert_id,
                    extra={"alert_id": alert_id})

    def archive_alerts_for_query(self, query_id: int, actor: Optional[User] = None) -> List[int]:
        """Archive every alert on a query that is being deleted. Returns the archived ids."""
        def archive(row: Alert) -> None:
            row.archived = True

        archived: List[int] = []
        for alert in self.store.list_alerts_for_query(query_id):
            if alert.archived:
                continue
            saved = self.store.update_alert(alert.id, archive)
            if saved is None:
                continue
            self._audit(AuditTopic.ALERT_UPDATE, actor, saved, self.store.get_channels(saved.id))
            archived.append(saved.id)
        if archived:
            logger.info("Query %s deleted: archived alerts %s", query_id, archived)
        return archived
