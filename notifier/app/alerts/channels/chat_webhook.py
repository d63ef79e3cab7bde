"""
chat_webhook.py — Chat channel delivery via an incoming-webhook URL.

Endpoint-addressed: ``details.channel`` names the chat channel to post to.
The name must exist in the injected channel directory when the channel is
saved; an unknown name is a ConfigurationError (the whole mutation is
rejected before anything is stored).

Request:
    POST {webhook_url}
    {"channel": "#ops", "text": "<subject>\\n<summary>\\n<link>"}
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, Mapping, Optional

import httpx

from notifier.app.alerts.channels.base import ChannelCapability
from notifier.app.alerts.models import ChannelType, DeliveryResult, NotificationPayload
from notifier.app.core.errors import ConfigurationError, DeliveryError, ValidationError

logger = logging.getLogger(__name__)


def normalise_channel_name(name: str) -> str:
    """``"#Ops "`` → ``"ops"``."""
    return name.strip().lstrip("#").lower()


class ChatWebhookChannel(ChannelCapability):
    channel_type = ChannelType.CHAT.value
    recipient_addressed = False

    def __init__(
        self,
        client: httpx.Client,
        *,
        webhook_url: Optional[str],
        channel_directory: Callable[[], Iterable[str]],
    ):
        self.client = client
        self.webhook_url = webhook_url
        self.channel_directory = channel_directory

    def validate(self, details: Mapping[str, Any]) -> None:
        details = self._require_mapping(details)
        name = details.get("channel")
        if not isinstance(name, str) or not normalise_channel_name(name):
            raise ValidationError(
                "chat channel name is required", field="details.channel",
            )
        known = {normalise_channel_name(c) for c in self.channel_directory()}
        if normalise_channel_name(name) not in known:
            raise ConfigurationError("Chat channel not found.", field="details.channel")

    def send(self, target: Mapping[str, Any], payload: NotificationPayload) -> DeliveryResult:
        if not self.webhook_url:
            raise DeliveryError(self.channel_type, "chat webhook URL not configured")

        channel = "#" + normalise_channel_name(str(target.get("channel", "")))
        body = {
            "channel": channel,
            "text": f"{payload.subject}\n{payload.summary}\n{payload.link}",
        }
        try:
            response = self.client.post(self.webhook_url, json=body)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("[CHAT] Post to %s failed: %s", channel, exc)
            raise DeliveryError(self.channel_type, str(exc), channel=channel) from exc

        logger.info("[CHAT] Alert %s → %s", payload.alert_id, channel)
        return DeliveryResult.delivered(f"posted to {channel}")
