"""
http_webhook.py — Generic HTTP webhook channel.

Endpoint-addressed. Details:

    url          http(s) URL, required
    auth_method  "none" (default) | "bearer"
    token        required when auth_method == "bearer"

The notification payload is POSTed as JSON; any non-2xx status raises
DeliveryError.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping

import httpx

from notifier.app.alerts.channels.base import ChannelCapability
from notifier.app.alerts.models import ChannelType, DeliveryResult, NotificationPayload
from notifier.app.core.errors import DeliveryError, ValidationError

logger = logging.getLogger(__name__)

AUTH_METHODS = ("none", "bearer")


class HttpWebhookChannel(ChannelCapability):
    channel_type = ChannelType.HTTP.value
    recipient_addressed = False

    def __init__(self, client: httpx.Client):
        self.client = client

    def validate(self, details: Mapping[str, Any]) -> None:
        details = self._require_mapping(details)
        errors: Dict[str, str] = {}

        url = details.get("url")
        if not isinstance(url, str) or not url:
            errors["details.url"] = "url is required"
        else:
            try:
                parsed = httpx.URL(url)
            except httpx.InvalidURL:
                parsed = None
            if parsed is None or parsed.scheme not in ("http", "https") or not parsed.host:
                errors["details.url"] = "url must be an absolute http(s) URL"

        auth_method = details.get("auth_method", "none")
        if auth_method not in AUTH_METHODS:
            errors["details.auth_method"] = f"must be one of {list(AUTH_METHODS)}"
        elif auth_method == "bearer" and not details.get("token"):
            errors["details.token"] = "token is required for bearer auth"

        if errors:
            raise ValidationError("invalid http channel details", errors=errors)

    def send(self, target: Mapping[str, Any], payload: NotificationPayload) -> DeliveryResult:
        headers = {}
        if target.get("auth_method") == "bearer":
            headers["Authorization"] = f"Bearer {target.get('token')}"

        url = str(target.get("url"))
        try:
            response = self.client.post(url, json=payload.to_dict(), headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("[HTTP] Webhook %s failed: %s", url, exc)
            raise DeliveryError(self.channel_type, str(exc), url=url) from exc

        logger.info("[HTTP] Alert %s → %s (%d)", payload.alert_id, url, response.status_code)
        return DeliveryResult.delivered(f"HTTP {response.status_code}")
