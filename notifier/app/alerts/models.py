"""
models.py — Shared data structures for the alert notification engine.

Defines:
    • AlertCondition   — when an alert fires
    • ChannelType      — built-in delivery channel tags
    • ScheduleType     — hourly / daily / weekly
    • DeliveryStatus   — outcome of one channel send
    • NotificationKind — firing vs. subscription notices
    • User, Alert, Channel — plain value structs the core operates on
    • QueryResult      — what the query collaborator hands back
    • NotificationPayload, DeliveryResult, ChannelDelivery, FiringReport
    • AuditEvent

═══════════════════════════════════════════════════════════════════════════
SCHEDULE FIELDS
═══════════════════════════════════════════════════════════════════════════

    schedule_type    schedule_hour    schedule_day
    ─────────────    ─────────────    ────────────
    hourly           absent           absent
    daily            0–23             absent
    weekly           0–23             mon … sun

═══════════════════════════════════════════════════════════════════════════
ADDRESSING
═══════════════════════════════════════════════════════════════════════════

Channels are either recipient-addressed (email: one message per subscribed
user) or endpoint-addressed (chat / http: one post to the endpoint recorded
in ``details``). Only recipient-addressed channels carry recipients.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Sequence, Tuple


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class AlertCondition(str, Enum):
    """Firing condition of an alert."""
    ROWS = "rows"   # any result rows
    GOAL = "goal"   # metric crosses the goal line


class ChannelType(str, Enum):
    """Channel types registered by default."""
    EMAIL = "email"
    CHAT  = "chat"    # chat webhook (one post per firing)
    HTTP  = "http"    # generic HTTP webhook


class ScheduleType(str, Enum):
    HOURLY = "hourly"
    DAILY  = "daily"
    WEEKLY = "weekly"


class ScheduleDay(str, Enum):
    MON = "mon"
    TUE = "tue"
    WED = "wed"
    THU = "thu"
    FRI = "fri"
    SAT = "sat"
    SUN = "sun"

    @property
    def weekday(self) -> int:
        """Python weekday number (Monday == 0)."""
        return list(ScheduleDay).index(self)


class DeliveryStatus(str, Enum):
    """Outcome of one channel send."""
    DELIVERED = "delivered"
    FAILED    = "failed"      # transport error or timeout
    CANCELLED = "cancelled"   # alert archived before the send ran


class NotificationKind(str, Enum):
    FIRING       = "firing"        # scheduled condition hit
    CONFIRMATION = "confirmation"  # creator: "you set up an alert"
    SUBSCRIBED   = "subscribed"
    UNSUBSCRIBED = "unsubscribed"


class AuditTopic(str, Enum):
    ALERT_CREATE      = "alert-create"
    ALERT_UPDATE      = "alert-update"
    ALERT_UNSUBSCRIBE = "alert-unsubscribe"
    ALERT_SEND        = "alert-send"


MONITORING_CAPABILITIES: FrozenSet[str] = frozenset({"monitoring", "subscription"})


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
# Entities
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class User:
    """An actor and potential recipient."""
    id: int
    email: str
    first_name: str = ""
    last_name: str = ""
    is_admin: bool = False
    capabilities: FrozenSet[str] = frozenset()

    @property
    def common_name(self) -> str:
        name = f"{self.first_name} {self.last_name}".strip()
        return name or self.email

    @property
    def can_manage_subscriptions(self) -> bool:
        return bool(self.capabilities & MONITORING_CAPABILITIES)

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "common_name": self.common_name,
        }


@dataclass
class Alert:
    """
    A saved query bound to a firing condition.

    ``alert_above_goal`` is only meaningful (and only non-None) for
    ``condition == goal``.
    """
    query_id: int
    creator_id: int
    condition: AlertCondition = AlertCondition.ROWS
    alert_first_only: bool = False
    alert_above_goal: Optional[bool] = None
    archived: bool = False
    skip_if_empty: bool = True
    name: Optional[str] = None
    id: Optional[int] = None
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    @property
    def display_name(self) -> str:
        return self.name or f"Query {self.query_id}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "query_id": self.query_id,
            "creator_id": self.creator_id,
            "condition": self.condition.value,
            "alert_first_only": self.alert_first_only,
            "alert_above_goal": self.alert_above_goal,
            "archived": self.archived,
            "skip_if_empty": self.skip_if_empty,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class Channel:
    """A delivery mechanism attached to exactly one alert."""
    channel_type: str
    schedule_type: ScheduleType
    schedule_hour: Optional[int] = None
    schedule_day: Optional[ScheduleDay] = None
    enabled: bool = True
    details: Dict[str, Any] = field(default_factory=dict)
    recipients: Tuple[int, ...] = ()
    alert_id: Optional[int] = None
    id: Optional[int] = None

    def describe_schedule(self) -> str:
        """Human wording used in subscription notices."""
        if self.schedule_type == ScheduleType.HOURLY:
            return "hourly"
        at = f"{self.schedule_hour:02d}:00"
        if self.schedule_type == ScheduleType.DAILY:
            return f"daily at {at}"
        return f"weekly on {self.schedule_day.value} at {at}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "alert_id": self.alert_id,
            "channel_type": self.channel_type,
            "enabled": self.enabled,
            "schedule_type": self.schedule_type.value,
            "schedule_hour": self.schedule_hour,
            "schedule_day": self.schedule_day.value if self.schedule_day else None,
            "details": dict(self.details),
            "recipients": list(self.recipients),
        }


# ═══════════════════════════════════════════════════════════════════════════
# Query results
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class QueryResult:
    """
    Result handed back by the query collaborator.

    ``goal`` is the goal line configured on the query's visualisation;
    the metric is the last value of the last row.
    """
    rows: Sequence[Sequence[Any]] = ()
    goal: Optional[float] = None
    query_name: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return len(self.rows) == 0

    @property
    def metric(self) -> Optional[float]:
        if self.is_empty or not self.rows[-1]:
            return None
        value = self.rows[-1][-1]
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return float(value)


# ═══════════════════════════════════════════════════════════════════════════
# Delivery
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class NotificationPayload:
    """Channel-agnostic message: subject line, summary and link."""
    alert_id: Optional[int]
    kind: NotificationKind
    subject: str
    summary: str
    link: str
    created_at: datetime = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "kind": self.kind.value,
            "subject": self.subject,
            "summary": self.summary,
            "link": self.link,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class DeliveryResult:
    """Outcome of one ``send`` call; ``per_recipient`` maps address → ok."""
    status: DeliveryStatus
    detail: str = ""
    per_recipient: Dict[str, bool] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status == DeliveryStatus.DELIVERED

    @classmethod
    def delivered(cls, detail: str = "", per_recipient: Optional[Dict[str, bool]] = None) -> "DeliveryResult":
        return cls(DeliveryStatus.DELIVERED, detail, dict(per_recipient or {}))

    @classmethod
    def failed(cls, detail: str, per_recipient: Optional[Dict[str, bool]] = None) -> "DeliveryResult":
        return cls(DeliveryStatus.FAILED, detail, dict(per_recipient or {}))

    @classmethod
    def cancelled(cls, detail: str = "alert archived") -> "DeliveryResult":
        return cls(DeliveryStatus.CANCELLED, detail)


@dataclass
class ChannelDelivery:
    """Per-channel record within one firing."""
    channel_id: Optional[int]
    channel_type: str
    schedule_type: ScheduleType
    recipient_count: int
    result: DeliveryResult
    duration_ms: float = 0.0

    @property
    def attempted(self) -> bool:
        return self.result.status != DeliveryStatus.CANCELLED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel_id": self.channel_id,
            "channel_type": self.channel_type,
            "schedule_type": self.schedule_type.value,
            "recipient_count": self.recipient_count,
            "status": self.result.status.value,
            "detail": self.result.detail,
            "duration_ms": round(self.duration_ms, 1),
        }


@dataclass
class FiringReport:
    """Summary of one evaluation-and-possible-delivery cycle."""
    alert_id: Optional[int]
    fired: bool = False
    reason: str = ""
    deliveries: List[ChannelDelivery] = field(default_factory=list)
    started_at: datetime = field(default_factory=_now)
    completed_at: Optional[datetime] = None

    @property
    def attempted(self) -> bool:
        """Overall success: at least one channel call was attempted."""
        return any(d.attempted for d in self.deliveries)

    @property
    def delivered_count(self) -> int:
        return sum(1 for d in self.deliveries if d.result.success)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "fired": self.fired,
            "reason": self.reason,
            "attempted": self.attempted,
            "delivered_channels": self.delivered_count,
            "deliveries": [d.to_dict() for d in self.deliveries],
            "started_at": self.started_at.isoformat(),
            "completed_at": (
                self.completed_at.isoformat() if self.completed_at else None
            ),
        }


# ═══════════════════════════════════════════════════════════════════════════
# Audit
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class AuditEvent:
    topic: AuditTopic
    actor_id: Optional[int]
    alert_id: Optional[int]
    details: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=_now)


def channel_audit_details(alert: Alert, channels: Sequence[Channel]) -> Dict[str, Any]:
    """Details map shared by create/update/send audit events."""
    return {
        "archived": alert.archived,
        "name": alert.display_name,
        "query_id": alert.query_id,
        "channel": [c.channel_type for c in channels],
        "schedule": [c.schedule_type.value for c in channels],
        "recipients": [len(c.recipients) for c in channels],
    }
