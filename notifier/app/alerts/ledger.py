"""
ledger.py — Per-channel record of fired slots and in-flight claims.

The scheduler consults the ledger before dispatching so that a channel
fires at most once per slot, even with overlapping ticks or several
processes ticking at once.

Per channel the ledger keeps:

    fired    start of the last slot that completed
    claim    slot currently being dispatched (expires after a TTL so a
             crashed worker does not block the slot forever)
    failed   slot whose firing failed and may be retried within the slot

Backends:
    InMemoryFiringLedger   single process (default)
    RedisFiringLedger      shared across processes, survives restarts

Usage:
    ledger = build_ledger(settings)
    if ledger.try_claim(channel_id, slot):
        ...
        ledger.complete(channel_id, slot)   # or ledger.fail(channel_id, slot)
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Dict, Optional, Protocol

import redis

from notifier.app.core.config import Settings

logger = logging.getLogger(__name__)


class FiringLedger(Protocol):
    def last_fired(self, channel_id: int) -> Optional[datetime]: ...

    def try_claim(self, channel_id: int, slot: datetime) -> bool: ...

    def complete(self, channel_id: int, slot: datetime) -> None: ...

    def fail(self, channel_id: int, slot: datetime) -> None: ...

    def failed_slot(self, channel_id: int) -> Optional[datetime]: ...

    def clear_failure(self, channel_id: int) -> None: ...

    def ping(self) -> bool: ...


class InMemoryFiringLedger:
    """Lock-guarded dicts; claims are atomic within the process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._fired: Dict[int, datetime] = {}
        self._claims: Dict[int, datetime] = {}
        self._failed: Dict[int, datetime] = {}

    def last_fired(self, channel_id: int) -> Optional[datetime]:
        with self._lock:
            return self._fired.get(channel_id)

    def try_claim(self, channel_id: int, slot: datetime) -> bool:
        with self._lock:
            fired = self._fired.get(channel_id)
            if fired is not None and fired >= slot:
                return False
            if channel_id in self._claims:
                return False
            self._claims[channel_id] = slot
            return True

    def complete(self, channel_id: int, slot: datetime) -> None:
        with self._lock:
            self._fired[channel_id] = slot
            self._claims.pop(channel_id, None)
            self._failed.pop(channel_id, None)

    def fail(self, channel_id: int, slot: datetime) -> None:
        with self._lock:
            self._claims.pop(channel_id, None)
            self._failed[channel_id] = slot

    def failed_slot(self, channel_id: int) -> Optional[datetime]:
        with self._lock:
            return self._failed.get(channel_id)

    def clear_failure(self, channel_id: int) -> None:
        with self._lock:
            self._failed.pop(channel_id, None)

    def ping(self) -> bool:
        return True


class RedisFiringLedger:
    """
    Ledger in Redis. Claims use ``SET NX EX`` so only one ticker wins a
    slot; slot timestamps are stored as ISO-8601 strings.
    """

    def __init__(
        self,
        client: redis.Redis,
        *,
        prefix: str = "notifier:ledger",
        claim_ttl_seconds: int = 3600,
    ):
        self.client = client
        self.prefix = prefix
        self.claim_ttl_seconds = claim_ttl_seconds

    def _key(self, kind: str, channel_id: int) -> str:
        return f"{self.prefix}:{kind}:{channel_id}"

    def _read(self, kind: str, channel_id: int) -> Optional[datetime]:
        raw = self.client.get(self._key(kind, channel_id))
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return datetime.fromisoformat(raw)

    def last_fired(self, channel_id: int) -> Optional[datetime]:
        return self._read("fired", channel_id)

    def try_claim(self, channel_id: int, slot: datetime) -> bool:
        fired = self.last_fired(channel_id)
        if fired is not None and fired >= slot:
            return False
        claim_key = self._key("claim", channel_id)
        if not self.client.set(claim_key, slot.isoformat(), nx=True, ex=self.claim_ttl_seconds):
            return False
        # Another worker may have completed the slot between the read above
        # and our SET NX; its complete() deleted the claim we just took.
        fired = self.last_fired(channel_id)
        if fired is not None and fired >= slot:
            self.client.delete(claim_key)
            logger.debug("Channel %s: slot %s fired concurrently, claim released",
                         channel_id, slot.isoformat())
            return False
        return True

    def complete(self, channel_id: int, slot: datetime) -> None:
        pipe = self.client.pipeline()
        pipe.set(self._key("fired", channel_id), slot.isoformat())
        pipe.delete(self._key("claim", channel_id))
        pipe.delete(self._key("failed", channel_id))
        pipe.execute()

    def fail(self, channel_id: int, slot: datetime) -> None:
        pipe = self.client.pipeline()
        pipe.delete(self._key("claim", channel_id))
        pipe.set(self._key("failed", channel_id), slot.isoformat(), ex=self.claim_ttl_seconds * 2)
        pipe.execute()

    def failed_slot(self, channel_id: int) -> Optional[datetime]:
        return self._read("failed", channel_id)

    def clear_failure(self, channel_id: int) -> None:
        self.client.delete(self._key("failed", channel_id))

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError as exc:
            logger.warning("Redis ledger unreachable: %s", exc)
            return False


def build_ledger(settings: Settings) -> FiringLedger:
    """Ledger backend selected by ``FIRING_LEDGER_BACKEND``."""
    backend = settings.FIRING_LEDGER_BACKEND.lower()
    if backend == "redis":
        client = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)
        logger.info("Firing ledger: redis (%s)", settings.REDIS_URL.split("@")[-1])
        return RedisFiringLedger(
            client,
            prefix=settings.LEDGER_KEY_PREFIX,
            claim_ttl_seconds=settings.LEDGER_CLAIM_TTL_SECONDS,
        )
    if backend != "memory":
        raise ValueError(f"Unknown FIRING_LEDGER_BACKEND '{settings.FIRING_LEDGER_BACKEND}'")
    return InMemoryFiringLedger()
