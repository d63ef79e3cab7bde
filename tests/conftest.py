"""
Shared fixtures: an engine built around in-memory collaborators, a
simulated mailer and an httpx mock transport.

Users:
    1  crowberto   admin
    2  rasta       creator in most tests, holds the subscription capability
    3  lucky       plain user
    4  trashbird   plain user, no collection access
"""

from __future__ import annotations

from typing import List

import httpx
import pytest

from notifier.app.alerts.channels.email_alert import SimulatedMailer
from notifier.app.alerts.collaborators import (
    InMemoryAuditLog,
    StaticCollectionPermissions,
    StaticQueryRunner,
)
from notifier.app.alerts.engine import build_engine
from notifier.app.alerts.ledger import InMemoryFiringLedger
from notifier.app.alerts.models import User
from notifier.app.alerts.store import InMemoryEntityStore
from notifier.app.core.config import Settings

QUERY_ID = 17

ADMIN = User(1, "crowberto@example.com", "Crowberto", "Corv", is_admin=True)
RASTA = User(2, "rasta@example.com", "Rasta", "Toucan", capabilities=frozenset({"subscription"}))
LUCKY = User(3, "lucky@example.com", "Lucky", "Pigeon")
TRASHBIRD = User(4, "trashbird@example.com", "Trash", "Bird")
ALL_USERS = (ADMIN, RASTA, LUCKY, TRASHBIRD)


class WebhookRecorder:
    """httpx MockTransport handler that records requests."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.status_code = 200

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json={"ok": self.status_code < 400})


@pytest.fixture
def settings() -> Settings:
    return Settings(
        ENVIRONMENT="test",
        SCHEDULER_ENABLED=False,
        SITE_URL="https://notifier.example.com",
        CHAT_WEBHOOK_URL="https://chat.example.com/hook",
        CHAT_CHANNELS=["ops", "general"],
        CHANNEL_SEND_TIMEOUT_SECONDS=2.0,
        FIRING_LEDGER_BACKEND="memory",
    )


@pytest.fixture
def store() -> InMemoryEntityStore:
    return InMemoryEntityStore(ALL_USERS)


@pytest.fixture
def query_runner() -> StaticQueryRunner:
    return StaticQueryRunner()


@pytest.fixture
def collection_permissions() -> StaticCollectionPermissions:
    # rasta and lucky can read the query's collection, trashbird cannot
    return StaticCollectionPermissions({RASTA.id: {QUERY_ID}, LUCKY.id: {QUERY_ID}})


@pytest.fixture
def audit() -> InMemoryAuditLog:
    return InMemoryAuditLog()


@pytest.fixture
def mailer() -> SimulatedMailer:
    return SimulatedMailer()


@pytest.fixture
def webhook() -> WebhookRecorder:
    return WebhookRecorder()


@pytest.fixture
def http_client(webhook):
    client = httpx.Client(transport=httpx.MockTransport(webhook))
    yield client
    client.close()


@pytest.fixture
def ledger() -> InMemoryFiringLedger:
    return InMemoryFiringLedger()


@pytest.fixture
def engine(settings, store, query_runner, collection_permissions, audit,
           mailer, http_client, ledger):
    eng = build_engine(
        settings,
        store=store,
        query_runner=query_runner,
        collection_permissions=collection_permissions,
        audit=audit,
        http_client=http_client,
        mailer=mailer,
        ledger=ledger,
    )
    yield eng
    eng.shutdown()
