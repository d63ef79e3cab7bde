"""
test_channels.py — Channel registry and built-in capabilities.

Covers:
    • registry lookup, duplicate registration, unknown types
    • email: per-recipient outcomes through the simulated mailer
    • chat: directory validation, webhook post, DeliveryError on failure
    • http: URL / auth validation, bearer header, DeliveryError on non-2xx

Run with:
    pytest tests/test_channels.py -v
"""

from __future__ import annotations

import json
import smtplib

import httpx
import pytest

from conftest import LUCKY, RASTA
from notifier.app.alerts.channels.chat_webhook import ChatWebhookChannel
from notifier.app.alerts.channels.email_alert import EmailChannel, SimulatedMailer
from notifier.app.alerts.channels.http_webhook import HttpWebhookChannel
from notifier.app.alerts.channels.registry import ChannelRegistry, build_default_registry
from notifier.app.alerts.models import DeliveryStatus, NotificationKind, NotificationPayload
from notifier.app.core.errors import ConfigurationError, DeliveryError, ValidationError


def _make_payload() -> NotificationPayload:
    return NotificationPayload(
        alert_id=5,
        kind=NotificationKind.FIRING,
        subject="Alert: Orders has results",
        summary="Orders has results: 3 row(s).",
        link="https://notifier.example.com/question/17",
    )


class _FlakyMailer(SimulatedMailer):
    """Refuses one address."""

    def __init__(self, refused: str):
        super().__init__()
        self.refused = refused

    def send_message(self, to, subject, body):
        if to == self.refused:
            raise smtplib.SMTPRecipientsRefused({to: (550, b"no such user")})
        super().send_message(to, subject, body)


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Registry
# ═══════════════════════════════════════════════════════════════════════════

class TestChannelRegistry:

    def test_default_types(self, settings, http_client):
        registry = build_default_registry(settings, http_client=http_client)
        assert registry.types() == ["chat", "email", "http"]
        assert registry.is_recipient_addressed("email")
        assert not registry.is_recipient_addressed("chat")

    def test_unknown_type_is_validation_error(self):
        with pytest.raises(ValidationError) as exc:
            ChannelRegistry().get("pager")
        assert "channel_type" in exc.value.errors

    def test_duplicate_registration_rejected(self):
        registry = ChannelRegistry([EmailChannel(SimulatedMailer())])
        with pytest.raises(ValueError):
            registry.register(EmailChannel(SimulatedMailer()))
        registry.register(EmailChannel(SimulatedMailer()), replace=True)

    def test_validate_delegates(self, http_client):
        registry = ChannelRegistry([HttpWebhookChannel(http_client)])
        with pytest.raises(ValidationError):
            registry.validate("http", {})


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Email
# ═══════════════════════════════════════════════════════════════════════════

class TestEmailChannel:

    def test_one_message_per_recipient(self):
        mailer = SimulatedMailer()
        result = EmailChannel(mailer).send([RASTA, LUCKY], _make_payload())
        assert result.success
        assert result.per_recipient == {RASTA.email: True, LUCKY.email: True}
        assert [m.to for m in mailer.outbox] == [RASTA.email, LUCKY.email]
        assert mailer.outbox[0].subject == "Alert: Orders has results"
        assert "question/17" in mailer.outbox[0].body

    def test_partial_failure_reported_per_recipient(self):
        mailer = _FlakyMailer(refused=LUCKY.email)
        result = EmailChannel(mailer).send([RASTA, LUCKY], _make_payload())
        assert result.status == DeliveryStatus.FAILED
        assert result.per_recipient == {RASTA.email: True, LUCKY.email: False}
        assert len(mailer.outbox) == 1

    def test_details_must_be_mapping(self):
        with pytest.raises(ValidationError):
            EmailChannel(SimulatedMailer()).validate(["not", "a", "dict"])


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Chat webhook
# ═══════════════════════════════════════════════════════════════════════════

class TestChatWebhookChannel:

    def _make_channel(self, client, url="https://chat.example.com/hook"):
        return ChatWebhookChannel(client, webhook_url=url, channel_directory=lambda: ["ops", "#General"])

    def test_known_channel_validates(self, http_client):
        self._make_channel(http_client).validate({"channel": "#general"})

    def test_unknown_channel_is_configuration_error(self, http_client):
        with pytest.raises(ConfigurationError) as exc:
            self._make_channel(http_client).validate({"channel": "#random"})
        assert exc.value.message == "Chat channel not found."

    def test_missing_channel_name(self, http_client):
        with pytest.raises(ValidationError):
            self._make_channel(http_client).validate({})

    def test_posts_to_webhook(self, http_client, webhook):
        result = self._make_channel(http_client).send({"channel": "ops"}, _make_payload())
        assert result.success
        body = json.loads(webhook.requests[0].content)
        assert body["channel"] == "#ops"
        assert body["text"].startswith("Alert: Orders has results")

    def test_http_error_raises_delivery_error(self, http_client, webhook):
        webhook.status_code = 500
        with pytest.raises(DeliveryError) as exc:
            self._make_channel(http_client).send({"channel": "ops"}, _make_payload())
        assert exc.value.details["channel_type"] == "chat"
        assert exc.value.details["channel"] == "#ops"

    def test_no_webhook_configured(self, http_client):
        with pytest.raises(DeliveryError):
            self._make_channel(http_client, url=None).send({"channel": "ops"}, _make_payload())


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: HTTP webhook
# ═══════════════════════════════════════════════════════════════════════════

class TestHttpWebhookChannel:

    def test_valid_details(self, http_client):
        HttpWebhookChannel(http_client).validate({"url": "https://hooks.example.com/a"})

    @pytest.mark.parametrize("details, field", [
        ({}, "details.url"),
        ({"url": "ftp://example.com"}, "details.url"),
        ({"url": "/relative"}, "details.url"),
        ({"url": "https://x.example.com", "auth_method": "basic"}, "details.auth_method"),
        ({"url": "https://x.example.com", "auth_method": "bearer"}, "details.token"),
    ])
    def test_invalid_details(self, http_client, details, field):
        with pytest.raises(ValidationError) as exc:
            HttpWebhookChannel(http_client).validate(details)
        assert field in exc.value.errors

    def test_bearer_token_sent(self, http_client, webhook):
        target = {"url": "https://hooks.example.com/a", "auth_method": "bearer", "token": "s3cret"}
        result = HttpWebhookChannel(http_client).send(target, _make_payload())
        assert result.success
        request = webhook.requests[0]
        assert request.headers["Authorization"] == "Bearer s3cret"
        assert json.loads(request.content)["alert_id"] == 5

    def test_non_2xx_raises_delivery_error(self, http_client, webhook):
        webhook.status_code = 404
        with pytest.raises(DeliveryError) as exc:
            HttpWebhookChannel(http_client).send(
                {"url": "https://hooks.example.com/a"}, _make_payload(),
            )
        assert "404" in exc.value.message
        assert exc.value.details["url"] == "https://hooks.example.com/a"
