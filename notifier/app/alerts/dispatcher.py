"""
dispatcher.py — Evaluate, render, fan out, audit.

This is the central coordinator that:
    1. Re-reads the alert and takes one snapshot of its enabled channels
    2. Runs the saved query and asks the ConditionEvaluator
    3. Renders a channel-agnostic payload (subject, summary, link)
    4. Sends to every channel concurrently, each with its own timeout
    5. Emits one ``alert-send`` audit event after all attempts finish
    6. Archives first-only alerts after a firing that attempted delivery

It also carries the on-demand path used for subscription notices, which
bypasses schedule and condition.

═══════════════════════════════════════════════════════════════════════════
FIRING FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  Scheduler claims   │
    │  (alert, channels)  │
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  1. Fresh read      │  archived / missing → skip
    │     + snapshot      │  enabled channels, recipients resolved once
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  2. Query +         │  query failure → QueryExecutionError (raised)
    │     condition       │  no fire → report, no audit
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  3. Fan-out         │  one pool task per channel
    │                     │  each task re-reads ``archived`` → cancelled
    │                     │  timeout / error → failed, siblings unaffected
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  4. Audit           │  channel types, schedule types, recipient
    │                     │  counts, per-channel status
    └─────────────────────┘

Overall success of a firing is "at least one channel call was attempted";
cancelled sends are not attempts.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from notifier.app.alerts.channels.base import Target
from notifier.app.alerts.channels.registry import ChannelRegistry
from notifier.app.alerts.collaborators import AuditSink, QueryRunner
from notifier.app.alerts.conditions import ConditionEvaluator, describe_condition
from notifier.app.alerts.models import (
    Alert,
    AlertCondition,
    AuditEvent,
    AuditTopic,
    Channel,
    ChannelDelivery,
    DeliveryResult,
    DeliveryStatus,
    FiringReport,
    NotificationKind,
    NotificationPayload,
    QueryResult,
    User,
    channel_audit_details,
)
from notifier.app.alerts.store import EntityStore
from notifier.app.core.errors import DeliveryError, NotifierError, QueryExecutionError

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
# Rendering
# ═══════════════════════════════════════════════════════════════════════════

def _fired_wording(alert: Alert) -> str:
    if alert.condition == AlertCondition.ROWS:
        return "has results"
    return "has reached its goal" if alert.alert_above_goal else "has gone below its goal"


def _describe_schedules(channels: Optional[Sequence[Channel]]) -> str:
    enabled = [c for c in channels or () if c.enabled]
    if not enabled:
        return "on its schedule"
    return " and ".join(sorted({c.describe_schedule() for c in enabled}))


def render_firing_payload(alert: Alert, result: QueryResult, site_url: str) -> NotificationPayload:
    """Subject, summary and link for a scheduled firing."""
    name = result.query_name or alert.display_name
    summary = f"{name} {_fired_wording(alert)}: {len(result.rows)} row(s)."
    if alert.condition == AlertCondition.GOAL and result.metric is not None:
        summary += f" Latest value {result.metric:g}, goal {result.goal:g}."
    return NotificationPayload(
        alert_id=alert.id,
        kind=NotificationKind.FIRING,
        subject=f"Alert: {name} {_fired_wording(alert)}",
        summary=summary,
        link=f"{site_url.rstrip('/')}/question/{alert.query_id}",
    )


def render_subscription_payload(
    alert: Alert,
    kind: NotificationKind,
    *,
    recipient: Optional[User] = None,
    actor: Optional[User] = None,
    channels: Optional[Sequence[Channel]] = None,
    site_url: str = "",
) -> NotificationPayload:
    """
    Wording of subscription notices.

    ``recipient`` is compared to ``actor`` so a user who removes themselves
    reads "You unsubscribed" rather than "X unsubscribed you".
    """
    name = alert.display_name
    schedule = _describe_schedules(channels)
    condition = describe_condition(alert)
    self_action = actor is None or (recipient is not None and recipient.id == actor.id)

    if kind == NotificationKind.CONFIRMATION:
        subject = "You set up an alert"
        summary = (
            f"You set up an alert on {name}. "
            f"You'll get notified {schedule} when it {condition}."
        )
    elif kind == NotificationKind.SUBSCRIBED:
        subject = (
            "You're now getting alerts" if self_action
            else f"{actor.common_name} added you to an alert"
        )
        summary = f"You're now getting alerts about {name} {schedule}, when it {condition}."
    elif kind == NotificationKind.UNSUBSCRIBED:
        if self_action and actor is not None:
            subject = "You unsubscribed from an alert"
            summary = f"You'll no longer receive alerts about {name}."
        else:
            subject = "You've been unsubscribed from an alert"
            by_whom = f"{actor.common_name} unsubscribed you" if actor else "you were unsubscribed"
            summary = f"Just letting you know that {by_whom} from alerts about {name}."
    else:
        raise ValueError(f"{kind.value} is not a subscription notice")

    return NotificationPayload(
        alert_id=alert.id,
        kind=kind,
        subject=subject,
        summary=summary,
        link=f"{site_url.rstrip('/')}/question/{alert.query_id}",
    )


# ═══════════════════════════════════════════════════════════════════════════
# Dispatcher
# ═══════════════════════════════════════════════════════════════════════════

class NotificationDispatcher:
    """
    Runs scheduled firings and on-demand notices.

    Parameters
    ----------
    store : EntityStore
    registry : ChannelRegistry
    evaluator : ConditionEvaluator
    query_runner : QueryRunner
    audit : AuditSink
    site_url : str
        Base of the links placed in notifications.
    notification_channel_type : str
        Recipient-addressed channel type used for subscription notices.
    max_workers : int
        Size of the channel-send pool.
    send_timeout : float
        Seconds a single channel send may take before it counts as failed.
    """

    def __init__(
        self,
        store: EntityStore,
        registry: ChannelRegistry,
        evaluator: ConditionEvaluator,
        query_runner: QueryRunner,
        audit: AuditSink,
        *,
        site_url: str = "http://localhost:3000",
        notification_channel_type: str = "email",
        max_workers: int = 8,
        send_timeout: float = 30.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.registry = registry
        self.evaluator = evaluator
        self.query_runner = query_runner
        self.audit = audit
        self.site_url = site_url
        self.notification_channel_type = notification_channel_type
        self.send_timeout = send_timeout
        self.clock = clock
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="channel-send",
        )

    # ── Scheduled path ──

    def run_scheduled_firing(
        self,
        alert: Alert,
        channel_ids: Optional[Iterable[int]] = None,
    ) -> FiringReport:
        """
        Evaluate ``alert`` and deliver to its enabled channels.

        ``channel_ids`` restricts delivery to the channels the scheduler
        claimed; None means every enabled channel.

        Raises
        ------
        QueryExecutionError
            The query could not be run. Nothing was sent.
        """
        report = FiringReport(alert_id=alert.id, started_at=self.clock())

        current = self.store.get_alert(alert.id)
        if current is None or current.archived:
            report.reason = "alert missing" if current is None else "alert archived"
            report.completed_at = self.clock()
            logger.info("Alert %s: skipped (%s)", alert.id, report.reason)
            return report

        wanted = set(channel_ids) if channel_ids is not None else None
        channels = [
            c for c in self.store.get_channels(current.id)
            if c.enabled and (wanted is None or c.id in wanted)
        ]
        if not channels:
            report.reason = "no enabled channels"
            report.completed_at = self.clock()
            return report

        try:
            result = self.query_runner.run(current.query_id)
        except NotifierError:
            raise
        except Exception as exc:
            raise QueryExecutionError(current.query_id, str(exc)) from exc

        decision = self.evaluator.evaluate(current, result)
        report.reason = decision.reason
        if not decision.fire:
            report.completed_at = self.clock()
            logger.info("Alert %s: not firing (%s)", current.id, decision.reason)
            return report

        report.fired = True
        payload = render_firing_payload(current, result, self.site_url)
        report.deliveries = self._fan_out(current, channels, payload)
        report.completed_at = self.clock()

        if current.alert_first_only and report.attempted:
            current = self._archive_first_only(current)

        self.audit.record(AuditEvent(
            topic=AuditTopic.ALERT_SEND,
            actor_id=None,
            alert_id=current.id,
            details={
                **channel_audit_details(current, channels),
                "status": [d.result.status.value for d in report.deliveries],
                "attempted": report.attempted,
            },
        ))
        logger.info(
            "Alert %s fired: %d/%d channels delivered",
            current.id, report.delivered_count, len(report.deliveries),
            extra={"alert_id": current.id},
        )
        return report

    def _resolve_target(self, channel: Channel) -> Tuple[Target, int]:
        capability = self.registry.get(channel.channel_type)
        if not capability.recipient_addressed:
            return dict(channel.details), 0
        users = [u for u in (self.store.get_user(uid) for uid in channel.recipients) if u]
        return users, len(users)

    def _send_one(self, alert_id: int, channel: Channel, target: Target,
                  payload: NotificationPayload) -> DeliveryResult:
        latest = self.store.get_alert(alert_id)
        if latest is None or latest.archived:
            logger.info("Alert %s archived before send on channel %s", alert_id, channel.id)
            return DeliveryResult.cancelled()
        return self.registry.get(channel.channel_type).send(target, payload)

    def _fan_out(
        self,
        alert: Alert,
        channels: Sequence[Channel],
        payload: NotificationPayload,
    ) -> List[ChannelDelivery]:
        pending: List[Tuple[Channel, int, Optional[Future], float, Optional[DeliveryResult]]] = []
        for channel in channels:
            started = time.monotonic()
            try:
                target, count = self._resolve_target(channel)
            except NotifierError as exc:
                pending.append((channel, 0, None, started, DeliveryResult.failed(exc.message)))
                continue
            future = self._pool.submit(self._send_one, alert.id, channel, target, payload)
            pending.append((channel, count, future, started, None))

        deliveries: List[ChannelDelivery] = []
        for channel, count, future, started, result in pending:
            if future is not None:
                result = self._collect(alert, channel, future, started)
            deliveries.append(ChannelDelivery(
                channel_id=channel.id,
                channel_type=channel.channel_type,
                schedule_type=channel.schedule_type,
                recipient_count=count,
                result=result,
                duration_ms=(time.monotonic() - started) * 1000,
            ))
        return deliveries

    def _collect(self, alert: Alert, channel: Channel, future: Future,
                 started: float) -> DeliveryResult:
        remaining = max(0.0, self.send_timeout - (time.monotonic() - started))
        try:
            result = future.result(timeout=remaining)
        except FutureTimeout:
            future.cancel()
            logger.error(
                "Alert %s: %s channel %s timed out after %.1fs",
                alert.id, channel.channel_type, channel.id, self.send_timeout,
                extra={"alert_id": alert.id, "channel_id": channel.id},
            )
            return DeliveryResult.failed(f"timed out after {self.send_timeout:g}s")
        except DeliveryError as exc:
            logger.error("Alert %s: %s", alert.id, exc.message)
            return DeliveryResult.failed(exc.message)
        except Exception as exc:
            logger.error(
                "Alert %s: %s channel %s raised: %s",
                alert.id, channel.channel_type, channel.id, exc, exc_info=True,
            )
            return DeliveryResult.failed(str(exc))

        level = logging.INFO if result.status != DeliveryStatus.FAILED else logging.WARNING
        logger.log(
            level, "Alert %s: %s channel %s → %s",
            alert.id, channel.channel_type, channel.id, result.status.value,
            extra={"alert_id": alert.id, "channel_id": channel.id,
                   "channel_type": channel.channel_type},
        )
        return result

    def _archive_first_only(self, alert: Alert) -> Alert:
        def archive(row: Alert) -> None:
            row.archived = True

        logger.info("Alert %s: first-only alert archived after delivery", alert.id)
        return self.store.update_alert(alert.id, archive) or alert

    # ── On-demand path ──

    def notify_manual(
        self,
        alert: Alert,
        kind: NotificationKind,
        recipients: Sequence[User],
        actor: Optional[User] = None,
        channels: Optional[Sequence[Channel]] = None,
    ) -> DeliveryResult:
        """
        Send a subscription notice to ``recipients``, skipping schedule and
        condition. Failures are returned, never raised.
        """
        if not recipients:
            return DeliveryResult.delivered("no recipients")

        if channels is None and alert.id is not None:
            channels = self.store.get_channels(alert.id)

        capability = self.registry.get(self.notification_channel_type)
        futures: List[Tuple[User, Future]] = []
        for user in recipients:
            payload = render_subscription_payload(
                alert, kind, recipient=user, actor=actor,
                channels=channels, site_url=self.site_url,
            )
            futures.append((user, self._pool.submit(capability.send, [user], payload)))

        outcomes: Dict[str, bool] = {}
        errors: List[str] = []
        deadline = time.monotonic() + self.send_timeout
        for user, future in futures:
            try:
                result = future.result(timeout=max(0.0, deadline - time.monotonic()))
            except FutureTimeout:
                future.cancel()
                result = DeliveryResult.failed(f"timed out after {self.send_timeout:g}s")
            except DeliveryError as exc:
                logger.warning("%s notice to %s failed: %s", kind.value, user.email, exc.message)
                result = DeliveryResult.failed(exc.message)
            except Exception as exc:
                logger.error("%s notice to %s failed: %s", kind.value, user.email, exc, exc_info=True)
                result = DeliveryResult.failed(str(exc))
            outcomes[user.email] = result.success
            if not result.success:
                errors.append(f"{user.email}: {result.detail}")

        logger.info(
            "Alert %s: %s notice to %d user(s)",
            alert.id, kind.value, len(recipients),
            extra={"alert_id": alert.id, "recipient_count": len(recipients)},
        )
        if errors:
            return DeliveryResult.failed("; ".join(errors), outcomes)
        return DeliveryResult.delivered(f"sent to {len(recipients)} recipients", outcomes)

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)
