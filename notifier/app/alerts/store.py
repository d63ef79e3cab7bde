"""
store.py — Entity store interface and the in-memory implementation.

The relational store is an external collaborator; the core only depends on
the ``EntityStore`` protocol below. ``InMemoryEntityStore`` is the reference
implementation used by tests and single-process deployments.

Alert edits that depend on the current row go through ``update_alert`` so
they cannot overwrite a concurrent archive with a stale copy.

Reads return copies, so a caller holding a list of channels holds a
snapshot that later writes cannot change underneath it.
"""

from __future__ import annotations

import copy
import itertools
import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Sequence

from notifier.app.alerts.models import Alert, Channel, User

logger = logging.getLogger(__name__)


class EntityStore(Protocol):
    """Persistence contract consumed by the engine."""

    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_alert(self, alert_id: int) -> Optional[Alert]: ...

    def list_alerts(self) -> List[Alert]: ...

    def list_alerts_for_query(self, query_id: int) -> List[Alert]: ...

    def save_alert(self, alert: Alert) -> Alert: ...

    def update_alert(self, alert_id: int, mutate: Callable[[Alert], None]) -> Optional[Alert]: ...

    def get_channel(self, channel_id: int) -> Optional[Channel]: ...

    def get_channels(self, alert_id: int) -> List[Channel]: ...

    def replace_channels(self, alert_id: int, channels: Sequence[Channel]) -> List[Channel]: ...


class InMemoryEntityStore:
    """Thread-safe dict-backed store (production: relational database)."""

    def __init__(self, users: Iterable[User] = ()):
        self._lock = threading.RLock()
        self._users: Dict[int, User] = {u.id: u for u in users}
        self._alerts: Dict[int, Alert] = {}
        self._channels: Dict[int, Channel] = {}
        self._alert_ids = itertools.count(1)
        self._channel_ids = itertools.count(1)

    # ── Users ──

    def add_user(self, user: User) -> User:
        with self._lock:
            self._users[user.id] = user
        return user

    def get_user(self, user_id: int) -> Optional[User]:
        with self._lock:
            return self._users.get(user_id)

    # ── Alerts ──

    def get_alert(self, alert_id: int) -> Optional[Alert]:
        with self._lock:
            alert = self._alerts.get(alert_id)
            return copy.deepcopy(alert) if alert else None

    def list_alerts(self) -> List[Alert]:
        with self._lock:
            return [copy.deepcopy(a) for _, a in sorted(self._alerts.items())]

    def list_alerts_for_query(self, query_id: int) -> List[Alert]:
        return [a for a in self.list_alerts() if a.query_id == query_id]

    def save_alert(self, alert: Alert) -> Alert:
        with self._lock:
            stored = copy.deepcopy(alert)
            if stored.id is None:
                stored.id = next(self._alert_ids)
            else:
                stored.updated_at = datetime.now(timezone.utc)
            self._alerts[stored.id] = stored
            return copy.deepcopy(stored)

    def update_alert(self, alert_id: int, mutate: Callable[[Alert], None]) -> Optional[Alert]:
        """
        Read-modify-write under the store lock. ``mutate`` edits a copy of
        the current row; if it raises, nothing is written.
        """
        with self._lock:
            current = self._alerts.get(alert_id)
            if current is None:
                return None
            draft = copy.deepcopy(current)
            mutate(draft)
            draft.id = alert_id
            draft.updated_at = datetime.now(timezone.utc)
            self._alerts[alert_id] = draft
            return copy.deepcopy(draft)

    # ── Channels ──

    def get_channel(self, channel_id: int) -> Optional[Channel]:
        with self._lock:
            channel = self._channels.get(channel_id)
            return copy.deepcopy(channel) if channel else None

    def get_channels(self, alert_id: int) -> List[Channel]:
        with self._lock:
            return [
                copy.deepcopy(c)
                for _, c in sorted(self._channels.items())
                if c.alert_id == alert_id
            ]

    def replace_channels(self, alert_id: int, channels: Sequence[Channel]) -> List[Channel]:
        """Atomically make ``channels`` the complete channel set of an alert."""
        with self._lock:
            keep = {c.id for c in channels if c.id is not None}
            for cid in [cid for cid, c in self._channels.items()
                        if c.alert_id == alert_id and cid not in keep]:
                del self._channels[cid]

            saved: List[Channel] = []
            for channel in channels:
                stored = copy.deepcopy(channel)
                stored.alert_id = alert_id
                if stored.id is None:
                    stored.id = next(self._channel_ids)
                self._channels[stored.id] = stored
                saved.append(copy.deepcopy(stored))
            return saved
