"""
test_dispatcher.py — Scheduled firings and subscription notices.

Covers:
    • fan-out with one failing channel (others still delivered, audited once)
    • per-channel timeout does not hold up sibling channels
    • archiving between snapshot and send cancels the sends
    • no audit when the condition does not fire; archived alerts skipped
    • query errors surface as QueryExecutionError
    • subscription notice wording

Run with:
    pytest tests/test_dispatcher.py -v
"""

from __future__ import annotations

import threading

import pytest

from conftest import ADMIN, LUCKY, QUERY_ID, RASTA
from notifier.app.alerts.channels.base import ChannelCapability
from notifier.app.alerts.channels.email_alert import EmailChannel
from notifier.app.alerts.channels.http_webhook import HttpWebhookChannel
from notifier.app.alerts.channels.registry import ChannelRegistry
from notifier.app.alerts.conditions import ConditionEvaluator
from notifier.app.alerts.dispatcher import NotificationDispatcher, render_subscription_payload
from notifier.app.alerts.models import (
    Alert,
    AuditTopic,
    Channel,
    DeliveryResult,
    DeliveryStatus,
    NotificationKind,
    QueryResult,
    ScheduleType,
)
from notifier.app.core.errors import QueryExecutionError

WEBHOOK = {"url": "https://hooks.example.com/alerts"}


class _SlowChannel(ChannelCapability):
    channel_type = "slow"
    recipient_addressed = False

    def __init__(self, seconds: float):
        self.seconds = seconds
        self.release = threading.Event()

    def validate(self, details):
        pass

    def send(self, target, payload):
        self.release.wait(self.seconds)
        return DeliveryResult.delivered("eventually")


class _ArchivingQueryRunner:
    """Archives the alert while the query runs, i.e. after the channel snapshot."""

    def __init__(self, store, alert_id):
        self.store = store
        self.alert_id = alert_id

    def run(self, query_id):
        alert = self.store.get_alert(self.alert_id)
        alert.archived = True
        self.store.save_alert(alert)
        return QueryResult(rows=[["x", 1]])


def _seed(store, *channels, first_only=False) -> Alert:
    alert = store.save_alert(Alert(
        query_id=QUERY_ID, creator_id=RASTA.id, alert_first_only=first_only, name="Orders",
    ))
    store.replace_channels(alert.id, list(channels))
    return alert


def _email(*users, enabled=True) -> Channel:
    return Channel(channel_type="email", schedule_type=ScheduleType.HOURLY,
                   recipients=tuple(u.id for u in users), enabled=enabled)


def _http() -> Channel:
    return Channel(channel_type="http", schedule_type=ScheduleType.DAILY,
                   schedule_hour=9, details=dict(WEBHOOK))


@pytest.fixture
def slow():
    channel = _SlowChannel(seconds=5.0)
    yield channel
    channel.release.set()


@pytest.fixture
def dispatcher(store, mailer, http_client, query_runner, audit, slow):
    registry = ChannelRegistry([EmailChannel(mailer), HttpWebhookChannel(http_client), slow])
    d = NotificationDispatcher(
        store, registry, ConditionEvaluator(), query_runner, audit,
        site_url="https://notifier.example.com", send_timeout=0.3,
    )
    yield d
    slow.release.set()
    d.shutdown()


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Scheduled firing
# ═══════════════════════════════════════════════════════════════════════════

class TestRunScheduledFiring:

    def test_one_failing_channel_does_not_block_others(
        self, store, dispatcher, query_runner, webhook, mailer, audit,
    ):
        query_runner.set_result(QUERY_ID, QueryResult(rows=[["x", 1]]))
        webhook.status_code = 503
        alert = _seed(store, _email(RASTA, LUCKY), _http())

        report = dispatcher.run_scheduled_firing(alert)

        statuses = {d.channel_type: d.result.status for d in report.deliveries}
        assert statuses == {"email": DeliveryStatus.DELIVERED, "http": DeliveryStatus.FAILED}
        http = next(d for d in report.deliveries if d.channel_type == "http")
        assert http.result.detail.startswith("Delivery via 'http' failed")
        assert report.attempted is True
        assert len(mailer.outbox) == 2

        events = audit.of_topic(AuditTopic.ALERT_SEND)
        assert len(events) == 1
        assert events[0].details["channel"] == ["email", "http"]
        assert events[0].details["schedule"] == ["hourly", "daily"]
        assert events[0].details["recipients"] == [2, 0]
        assert events[0].details["status"] == ["delivered", "failed"]
        assert events[0].details["attempted"] is True

    def test_timed_out_channel_is_failed_and_siblings_delivered(
        self, store, dispatcher, query_runner, mailer,
    ):
        query_runner.set_result(QUERY_ID, QueryResult(rows=[["x", 1]]))
        slow_channel = Channel(channel_type="slow", schedule_type=ScheduleType.HOURLY)
        alert = _seed(store, slow_channel, _email(RASTA))

        report = dispatcher.run_scheduled_firing(alert)

        by_type = {d.channel_type: d.result for d in report.deliveries}
        assert by_type["slow"].status == DeliveryStatus.FAILED
        assert "timed out" in by_type["slow"].detail
        assert by_type["email"].success
        assert len(mailer.messages_to(RASTA.email)) == 1

    def test_archived_mid_firing_cancels_sends(
        self, store, mailer, http_client, audit,
    ):
        alert = _seed(store, _email(RASTA), first_only=True)
        registry = ChannelRegistry([EmailChannel(mailer), HttpWebhookChannel(http_client)])
        d = NotificationDispatcher(
            store, registry, ConditionEvaluator(),
            _ArchivingQueryRunner(store, alert.id), audit,
        )
        try:
            report = d.run_scheduled_firing(alert)
        finally:
            d.shutdown()

        assert report.fired is True
        assert [x.result.status for x in report.deliveries] == [DeliveryStatus.CANCELLED]
        assert report.attempted is False
        assert mailer.outbox == []

    def test_no_fire_means_no_send_and_no_audit(self, store, dispatcher, query_runner, mailer, audit):
        query_runner.set_result(QUERY_ID, QueryResult(rows=[]))
        alert = _seed(store, _email(RASTA))

        report = dispatcher.run_scheduled_firing(alert)

        assert report.fired is False
        assert report.deliveries == []
        assert mailer.outbox == []
        assert audit.events == []

    def test_archived_alert_skipped_without_query(self, store, dispatcher, query_runner):
        alert = _seed(store, _email(RASTA))
        alert.archived = True
        store.save_alert(alert)

        report = dispatcher.run_scheduled_firing(alert)

        assert report.reason == "alert archived"
        assert query_runner.calls == []

    def test_disabled_channels_not_sent(self, store, dispatcher, query_runner, mailer):
        query_runner.set_result(QUERY_ID, QueryResult(rows=[["x", 1]]))
        alert = _seed(store, _email(RASTA, enabled=False), _email(LUCKY))

        dispatcher.run_scheduled_firing(alert)

        assert [m.to for m in mailer.outbox] == [LUCKY.email]

    def test_query_error_wrapped(self, store, dispatcher, query_runner):
        query_runner.set_result(QUERY_ID, ConnectionError("warehouse down"))
        alert = _seed(store, _email(RASTA))

        with pytest.raises(QueryExecutionError):
            dispatcher.run_scheduled_firing(alert)

    def test_first_only_archives_after_attempt(self, store, dispatcher, query_runner, audit):
        query_runner.set_result(QUERY_ID, QueryResult(rows=[["x", 1]]))
        alert = _seed(store, _email(RASTA), first_only=True)

        dispatcher.run_scheduled_firing(alert)

        assert store.get_alert(alert.id).archived is True
        assert audit.latest(AuditTopic.ALERT_SEND).details["archived"] is True


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Subscription notices
# ═══════════════════════════════════════════════════════════════════════════

class TestNotifyManual:

    def test_added_by_someone_else(self, store, dispatcher, mailer):
        alert = _seed(store, _email(LUCKY))
        result = dispatcher.notify_manual(alert, NotificationKind.SUBSCRIBED, [LUCKY], actor=ADMIN)

        assert result.success
        message = mailer.messages_to(LUCKY.email)[0]
        assert message.subject == "Crowberto Corv added you to an alert"
        assert "now getting alerts about Orders" in message.body

    def test_self_unsubscribe_wording(self, store, dispatcher, mailer):
        alert = _seed(store, _email(LUCKY))
        dispatcher.notify_manual(alert, NotificationKind.UNSUBSCRIBED, [LUCKY], actor=LUCKY)
        assert mailer.messages_to(LUCKY.email)[0].subject == "You unsubscribed from an alert"

    def test_removed_by_other_wording(self, store, dispatcher, mailer):
        alert = _seed(store, _email(LUCKY))
        dispatcher.notify_manual(alert, NotificationKind.UNSUBSCRIBED, [LUCKY], actor=ADMIN)
        message = mailer.messages_to(LUCKY.email)[0]
        assert message.subject == "You've been unsubscribed from an alert"
        assert "letting you know that Crowberto Corv" in message.body

    def test_no_recipients_is_noop(self, store, dispatcher, mailer):
        alert = _seed(store, _email())
        assert dispatcher.notify_manual(alert, NotificationKind.SUBSCRIBED, []).success
        assert mailer.outbox == []

    def test_confirmation_mentions_schedule(self, store):
        alert = _seed(store, _email(RASTA))
        payload = render_subscription_payload(
            alert, NotificationKind.CONFIRMATION, recipient=RASTA, actor=RASTA,
            channels=store.get_channels(alert.id),
        )
        assert payload.subject == "You set up an alert"
        assert "hourly" in payload.summary

    def test_firing_kind_rejected(self, store):
        alert = _seed(store, _email(RASTA))
        with pytest.raises(ValueError):
            render_subscription_payload(alert, NotificationKind.FIRING)
