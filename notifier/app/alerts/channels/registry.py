"""
registry.py — Channel-type tag → capability.

The registry is the only place channel types are known; the dispatcher and
subscription manager look capabilities up here and never branch on the tag.
New channel types register without touching either.

Usage:
    registry = ChannelRegistry()
    registry.register(EmailChannel(SimulatedMailer()))
    registry.get("email").send(users, payload)
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

import httpx

from notifier.app.alerts.channels.base import ChannelCapability
from notifier.app.alerts.channels.chat_webhook import ChatWebhookChannel
from notifier.app.alerts.channels.email_alert import (
    EmailChannel,
    Mailer,
    SimulatedMailer,
    SmtpMailer,
)
from notifier.app.alerts.channels.http_webhook import HttpWebhookChannel
from notifier.app.core.config import Settings
from notifier.app.core.errors import ValidationError

logger = logging.getLogger(__name__)


class ChannelRegistry:
    """Maps channel-type tags to capability implementations."""

    def __init__(self, capabilities: Iterable[ChannelCapability] = ()):
        self._capabilities: Dict[str, ChannelCapability] = {}
        for capability in capabilities:
            self.register(capability)

    def register(self, capability: ChannelCapability, *, replace: bool = False) -> None:
        tag = capability.channel_type
        if not tag:
            raise ValueError(f"{type(capability).__name__} has no channel_type")
        if tag in self._capabilities and not replace:
            raise ValueError(f"Channel type '{tag}' already registered")
        self._capabilities[tag] = capability
        logger.debug("Registered channel type %s (%s)", tag, type(capability).__name__)

    def get(self, channel_type: str) -> ChannelCapability:
        capability = self._capabilities.get(channel_type)
        if capability is None:
            raise ValidationError(
                f"Unknown channel type '{channel_type}'. Must be one of: {self.types()}",
                field="channel_type",
            )
        return capability

    def __contains__(self, channel_type: object) -> bool:
        return channel_type in self._capabilities

    def types(self) -> List[str]:
        return sorted(self._capabilities)

    def is_recipient_addressed(self, channel_type: str) -> bool:
        return self.get(channel_type).recipient_addressed

    def validate(self, channel_type: str, details: Mapping[str, Any]) -> None:
        self.get(channel_type).validate(details)


def build_default_registry(
    settings: Settings,
    *,
    http_client: Optional[httpx.Client] = None,
    mailer: Optional[Mailer] = None,
) -> ChannelRegistry:
    """Registry with the built-in email, chat and http channel types."""
    if mailer is None:
        if settings.EMAIL_PROVIDER == "smtp":
            mailer = SmtpMailer(
                host=settings.SMTP_HOST or "localhost",
                port=settings.SMTP_PORT,
                username=settings.SMTP_USER,
                password=settings.SMTP_PASSWORD,
                use_tls=settings.SMTP_USE_TLS,
                from_address=settings.EMAIL_FROM,
            )
        else:
            mailer = SimulatedMailer()

    client = http_client or httpx.Client(timeout=settings.HTTP_WEBHOOK_TIMEOUT)
    known_chat_channels = list(settings.CHAT_CHANNELS)

    return ChannelRegistry([
        EmailChannel(mailer),
        ChatWebhookChannel(
            client,
            webhook_url=settings.CHAT_WEBHOOK_URL,
            channel_directory=lambda: known_chat_channels,
        ),
        HttpWebhookChannel(client),
    ])
