"""
test_subscriptions.py — Recipient lifecycle and auto-archive.

Covers:
    • add / remove recipient notices
    • recipients only on recipient-addressed channels
    • auto-archive after the last recipient leaves, unless an endpoint
      channel is still enabled
    • disable / re-enable notices
    • replace_channels sends exactly one notice per affected user
    • unsubscribe from every channel at once
    • creation: confirmation to the creator, subscribed to the rest

Run with:
    pytest tests/test_subscriptions.py -v
"""

from __future__ import annotations

import pytest

from conftest import ADMIN, LUCKY, QUERY_ID, RASTA, TRASHBIRD
from notifier.app.alerts.models import Alert, AuditTopic, Channel, ScheduleType
from notifier.app.core.errors import ValidationError


def _email(*users, enabled=True, cid=None) -> Channel:
    return Channel(channel_type="email", schedule_type=ScheduleType.HOURLY,
                   recipients=tuple(u.id for u in users), enabled=enabled, id=cid)


def _chat(enabled=True) -> Channel:
    return Channel(channel_type="chat", schedule_type=ScheduleType.HOURLY,
                   details={"channel": "#ops"}, enabled=enabled)


def _seed(store, *channels):
    alert = store.save_alert(Alert(query_id=QUERY_ID, creator_id=RASTA.id, name="Orders"))
    saved = store.replace_channels(alert.id, list(channels))
    return alert, saved


@pytest.fixture
def subs(engine):
    return engine.subscriptions


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Single-channel operations
# ═══════════════════════════════════════════════════════════════════════════

class TestAddRemoveRecipient:

    def test_add_sends_subscribed(self, store, subs, mailer):
        _, (channel,) = _seed(store, _email(RASTA))
        saved = subs.add_recipient(channel, LUCKY, actor=ADMIN)

        assert saved.recipients == (RASTA.id, LUCKY.id)
        (message,) = mailer.messages_to(LUCKY.email)
        assert message.subject == "Crowberto Corv added you to an alert"

    def test_add_to_disabled_channel_is_quiet(self, store, subs, mailer):
        _, (channel,) = _seed(store, _email(RASTA, enabled=False))
        subs.add_recipient(channel, LUCKY, actor=ADMIN)
        assert mailer.outbox == []

    def test_endpoint_channel_takes_no_recipients(self, store, subs):
        _, (channel,) = _seed(store, _chat())
        with pytest.raises(ValidationError):
            subs.add_recipient(channel, LUCKY, actor=ADMIN)

    def test_remove_sends_unsubscribed(self, store, subs, mailer):
        alert, (channel,) = _seed(store, _email(RASTA, LUCKY))
        subs.remove_recipient(channel, LUCKY, actor=ADMIN)

        (message,) = mailer.messages_to(LUCKY.email)
        assert message.subject == "You've been unsubscribed from an alert"
        assert store.get_alert(alert.id).archived is False

    def test_remove_from_disabled_channel_still_notifies(self, store, subs, mailer):
        _, (channel, _) = _seed(store, _email(RASTA, LUCKY, enabled=False), _chat())
        subs.remove_recipient(channel, LUCKY, actor=ADMIN)

        (message,) = mailer.messages_to(LUCKY.email)
        assert message.subject == "You've been unsubscribed from an alert"


class TestAutoArchive:

    def test_last_recipient_removed_archives(self, store, subs, audit):
        alert, (channel,) = _seed(store, _email(LUCKY))
        subs.remove_recipient(channel, LUCKY, actor=ADMIN)

        assert store.get_alert(alert.id).archived is True
        event = audit.latest(AuditTopic.ALERT_UPDATE, alert.id)
        assert event is not None
        assert event.details["archived"] is True
        assert event.actor_id == ADMIN.id

    def test_enabled_chat_channel_keeps_alert_alive(self, store, subs):
        alert, (channel, _) = _seed(store, _email(LUCKY), _chat())
        subs.remove_recipient(channel, LUCKY, actor=ADMIN)
        assert store.get_alert(alert.id).archived is False

    def test_disabled_chat_channel_does_not_count(self, store, subs):
        alert, (channel, _) = _seed(store, _email(LUCKY), _chat(enabled=False))
        subs.remove_recipient(channel, LUCKY, actor=ADMIN)
        assert store.get_alert(alert.id).archived is True


class TestEnableDisable:

    def test_disable_unsubscribes_everyone(self, store, subs, mailer):
        alert, (channel, _) = _seed(store, _email(LUCKY, TRASHBIRD), _chat())
        subs.set_channel_enabled(channel, False, actor=ADMIN)

        for user in (LUCKY, TRASHBIRD):
            (message,) = mailer.messages_to(user.email)
            assert message.subject == "You've been unsubscribed from an alert"
            assert "letting you know that Crowberto Corv" in message.body
        assert store.get_alert(alert.id).archived is False

    def test_re_enable_resubscribes(self, store, subs, mailer):
        _, (channel, _) = _seed(store, _email(LUCKY, enabled=False), _chat())
        subs.set_channel_enabled(channel, True, actor=ADMIN)

        (message,) = mailer.messages_to(LUCKY.email)
        assert message.subject == "Crowberto Corv added you to an alert"
        assert "now getting alerts about Orders" in message.body

    def test_no_change_no_notice(self, store, subs, mailer):
        _, (channel,) = _seed(store, _email(LUCKY))
        subs.set_channel_enabled(channel, True, actor=ADMIN)
        assert mailer.outbox == []


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Whole-alert operations
# ═══════════════════════════════════════════════════════════════════════════

class TestReplaceChannels:

    def test_one_notice_per_user_across_channels(self, store, subs, mailer):
        alert, (a, b) = _seed(store, _email(LUCKY, RASTA), _email(LUCKY))
        subs.replace_channels(alert, [_email(RASTA, cid=a.id)], actor=ADMIN)

        (message,) = mailer.messages_to(LUCKY.email)
        assert "unsubscribed" in message.subject
        assert mailer.messages_to(RASTA.email) == []

    def test_moving_between_channels_is_a_single_subscribed(self, store, subs, mailer):
        alert, (a,) = _seed(store, _email(LUCKY, RASTA))
        subs.replace_channels(
            alert,
            [_email(RASTA, cid=a.id), Channel(
                channel_type="email", schedule_type=ScheduleType.DAILY,
                schedule_hour=8, recipients=(LUCKY.id,),
            )],
            actor=ADMIN,
        )
        (message,) = mailer.messages_to(LUCKY.email)
        assert message.subject == "Crowberto Corv added you to an alert"

    def test_new_recipients_subscribed(self, store, subs, mailer):
        alert, (a,) = _seed(store, _email(RASTA))
        subs.replace_channels(alert, [_email(RASTA, LUCKY, TRASHBIRD, cid=a.id)], actor=ADMIN)
        assert len(mailer.messages_to(LUCKY.email)) == 1
        assert len(mailer.messages_to(TRASHBIRD.email)) == 1
        assert mailer.messages_to(RASTA.email) == []

    def test_removing_everyone_archives(self, store, subs):
        alert, (a,) = _seed(store, _email(LUCKY))
        subs.replace_channels(alert, [_email(cid=a.id)], actor=ADMIN)
        assert store.get_alert(alert.id).archived is True

    def test_channel_set_replaced_atomically(self, store, subs):
        alert, (a, b) = _seed(store, _email(RASTA), _chat())
        saved = subs.replace_channels(alert, [_email(RASTA, cid=a.id)], actor=ADMIN)
        assert [c.id for c in saved] == [a.id]
        assert [c.id for c in store.get_channels(alert.id)] == [a.id]


class TestUnsubscribe:

    def test_removed_from_all_channels_with_one_notice(self, store, subs, mailer):
        alert, _ = _seed(store, _email(LUCKY, RASTA), _email(LUCKY))
        assert subs.unsubscribe(alert, LUCKY) is True

        assert all(LUCKY.id not in c.recipients for c in store.get_channels(alert.id))
        (message,) = mailer.messages_to(LUCKY.email)
        assert message.subject == "You unsubscribed from an alert"
        assert store.get_alert(alert.id).archived is False

    def test_last_recipient_unsubscribing_archives(self, store, subs):
        alert, _ = _seed(store, _email(LUCKY))
        subs.unsubscribe(alert, LUCKY)
        assert store.get_alert(alert.id).archived is True

    def test_not_a_recipient(self, store, subs, mailer):
        alert, _ = _seed(store, _email(RASTA))
        assert subs.unsubscribe(alert, LUCKY) is False
        assert mailer.outbox == []


class TestCreateChannels:

    def test_creator_confirmed_others_subscribed(self, store, subs, mailer):
        alert = store.save_alert(Alert(query_id=QUERY_ID, creator_id=RASTA.id, name="Orders"))
        subs.create_channels(alert, [_email(RASTA, LUCKY)], actor=RASTA)

        (confirmation,) = mailer.messages_to(RASTA.email)
        assert confirmation.subject == "You set up an alert"
        (notice,) = mailer.messages_to(LUCKY.email)
        assert notice.subject == "Rasta Toucan added you to an alert"
