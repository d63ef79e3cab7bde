"""
email_alert.py — Email delivery channel.

The only recipient-addressed channel type: one message per subscribed user,
with a per-recipient outcome. The transport is an injected ``Mailer``:

    SimulatedMailer   logs and keeps an outbox (development, tests)
    SmtpMailer        smtplib with optional STARTTLS

Message layout (plain text):

    Subject: {payload.subject}
    Body:
        {payload.summary}

        {payload.link}
"""

from __future__ import annotations

import logging
import smtplib
import ssl
import threading
from dataclasses import dataclass
from email.mime.text import MIMEText
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

from notifier.app.alerts.channels.base import ChannelCapability
from notifier.app.alerts.models import (
    ChannelType,
    DeliveryResult,
    NotificationPayload,
    User,
)

logger = logging.getLogger(__name__)


class Mailer(Protocol):
    def send_message(self, to: str, subject: str, body: str) -> None: ...


@dataclass(frozen=True)
class SentMessage:
    to: str
    subject: str
    body: str


class SimulatedMailer:
    """Logs messages instead of sending them; keeps them in ``outbox``."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.outbox: List[SentMessage] = []

    def send_message(self, to: str, subject: str, body: str) -> None:
        logger.info("[EMAIL] → %s: Subject='%s'", to, subject)
        with self._lock:
            self.outbox.append(SentMessage(to, subject, body))

    def messages_to(self, address: str) -> List[SentMessage]:
        with self._lock:
            return [m for m in self.outbox if m.to == address]

    def clear(self) -> None:
        with self._lock:
            self.outbox.clear()


class SmtpMailer:
    """Plain-text mail over SMTP."""

    def __init__(
        self,
        host: str,
        port: int = 587,
        *,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        from_address: str = "alerts@notifier.local",
        timeout_seconds: float = 30.0,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.from_address = from_address
        self.timeout_seconds = timeout_seconds

    def send_message(self, to: str, subject: str, body: str) -> None:
        msg = MIMEText(body, "plain")
        msg["Subject"] = subject
        msg["From"] = self.from_address
        msg["To"] = to

        with smtplib.SMTP(self.host, self.port, timeout=self.timeout_seconds) as server:
            if self.use_tls:
                server.starttls(context=ssl.create_default_context())
            if self.username and self.password:
                server.login(self.username, self.password)
            server.sendmail(self.from_address, [to], msg.as_string())


def _build_body(payload: NotificationPayload) -> str:
    return f"{payload.summary}\n\n{payload.link}\n"


class EmailChannel(ChannelCapability):
    """Recipient-addressed email channel."""

    channel_type = ChannelType.EMAIL.value
    recipient_addressed = True

    def __init__(self, mailer: Mailer):
        self.mailer = mailer

    def validate(self, details: Mapping[str, Any]) -> None:
        # Recipients live on the channel, not in details.
        self._require_mapping(details)

    def send(self, target: Sequence[User], payload: NotificationPayload) -> DeliveryResult:
        if not target:
            return DeliveryResult.delivered("no recipients")

        body = _build_body(payload)
        outcomes: Dict[str, bool] = {}
        errors: List[str] = []

        for user in target:
            try:
                self.mailer.send_message(user.email, payload.subject, body)
                outcomes[user.email] = True
            except (smtplib.SMTPException, OSError) as exc:
                logger.error("[EMAIL] Failed for %s: %s", user.email, exc)
                outcomes[user.email] = False
                errors.append(f"{user.email}: {exc}")

        if errors:
            return DeliveryResult.failed(
                f"{len(errors)}/{len(target)} recipients failed: " + "; ".join(errors),
                outcomes,
            )
        return DeliveryResult.delivered(f"sent to {len(target)} recipients", outcomes)
