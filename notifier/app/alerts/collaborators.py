"""
collaborators.py — Interfaces to the systems around the engine.

    QueryRunner            runs the saved query behind an alert
    CollectionPermissions  answers "may this user read that query's collection?"
    AuditSink              receives audit events

Each comes with a small static / in-memory implementation for tests and
local runs.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional, Protocol, Set, Union

from notifier.app.alerts.models import AuditEvent, AuditTopic, QueryResult, User
from notifier.app.core.errors import QueryExecutionError

logger = logging.getLogger(__name__)


class QueryRunner(Protocol):
    def run(self, query_id: int) -> QueryResult: ...


class CollectionPermissions(Protocol):
    def can_read_query(self, user: User, query_id: int) -> bool: ...


class AuditSink(Protocol):
    def record(self, event: AuditEvent) -> None: ...


class StaticQueryRunner:
    """Returns canned results; an ``Exception`` value is raised instead."""

    def __init__(self, results: Optional[Dict[int, Union[QueryResult, Exception]]] = None):
        self._results: Dict[int, Union[QueryResult, Exception]] = dict(results or {})
        self._lock = threading.Lock()
        self.calls: List[int] = []

    def set_result(self, query_id: int, result: Union[QueryResult, Exception]) -> None:
        with self._lock:
            self._results[query_id] = result

    def run(self, query_id: int) -> QueryResult:
        with self._lock:
            self.calls.append(query_id)
            result = self._results.get(query_id)
        if result is None:
            raise QueryExecutionError(query_id, "no result configured")
        if isinstance(result, Exception):
            raise result
        return result


class StaticCollectionPermissions:
    """Explicit per-user grants of read access to queries."""

    def __init__(self, grants: Optional[Dict[int, Set[int]]] = None):
        self._grants: Dict[int, Set[int]] = {
            user_id: set(query_ids) for user_id, query_ids in (grants or {}).items()
        }

    def grant(self, user_id: int, query_id: int) -> None:
        self._grants.setdefault(user_id, set()).add(query_id)

    def revoke(self, user_id: int, query_id: int) -> None:
        self._grants.get(user_id, set()).discard(query_id)

    def can_read_query(self, user: User, query_id: int) -> bool:
        return query_id in self._grants.get(user.id, set())


class InMemoryAuditLog:
    """Collects audit events in order (production: audit-log table)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.events: List[AuditEvent] = []

    def record(self, event: AuditEvent) -> None:
        with self._lock:
            self.events.append(event)
        logger.info(
            "Audit %s: actor=%s alert=%s",
            event.topic.value, event.actor_id, event.alert_id,
            extra={"topic": event.topic.value, "alert_id": event.alert_id},
        )

    def latest(self, topic: AuditTopic, alert_id: Optional[int] = None) -> Optional[AuditEvent]:
        with self._lock:
            for event in reversed(self.events):
                if event.topic == topic and (alert_id is None or event.alert_id == alert_id):
                    return event
        return None

    def of_topic(self, topic: AuditTopic) -> List[AuditEvent]:
        with self._lock:
            return [e for e in self.events if e.topic == topic]
