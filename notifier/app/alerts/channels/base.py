"""
base.py — The capability interface every channel type implements.
"""

from __future__ import annotations

import abc
from typing import Any, Mapping, Sequence, Union

from notifier.app.alerts.models import DeliveryResult, NotificationPayload, User
from notifier.app.core.errors import ValidationError

# Recipient-addressed channels receive resolved users,
# endpoint-addressed channels receive their ``details``.
Target = Union[Sequence[User], Mapping[str, Any]]


class ChannelCapability(abc.ABC):
    """A channel type: how to validate its details and how to send."""

    channel_type: str = ""
    recipient_addressed: bool = False

    @abc.abstractmethod
    def validate(self, details: Mapping[str, Any]) -> None:
        """Raise ValidationError / ConfigurationError for unusable details."""

    @abc.abstractmethod
    def send(self, target: Target, payload: NotificationPayload) -> DeliveryResult:
        """Deliver ``payload``; transport failures raise DeliveryError."""

    def _require_mapping(self, details: Any) -> Mapping[str, Any]:
        if not isinstance(details, Mapping):
            raise ValidationError(
                f"{self.channel_type} channel details must be an object",
                field="details",
            )
        return details
