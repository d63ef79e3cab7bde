"""
engine.py — Wires the alert components together.

Everything the engine needs is passed in or built from settings here; no
module keeps its own global instance. Tests build an engine around
in-memory collaborators and a fixed clock.

Usage:
    engine = build_engine(settings)
    engine.start()        # periodic ticks
    ...
    engine.shutdown()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import httpx

from notifier.app.alerts.channels.email_alert import Mailer
from notifier.app.alerts.channels.registry import ChannelRegistry, build_default_registry
from notifier.app.alerts.collaborators import (
    AuditSink,
    CollectionPermissions,
    InMemoryAuditLog,
    QueryRunner,
    StaticCollectionPermissions,
    StaticQueryRunner,
)
from notifier.app.alerts.conditions import ConditionEvaluator
from notifier.app.alerts.dispatcher import NotificationDispatcher
from notifier.app.alerts.ledger import FiringLedger, build_ledger
from notifier.app.alerts.permissions import PermissionFilter
from notifier.app.alerts.schedule import Scheduler, resolve_timezone
from notifier.app.alerts.service import AlertService
from notifier.app.alerts.store import EntityStore, InMemoryEntityStore
from notifier.app.alerts.subscriptions import SubscriptionManager
from notifier.app.core.config import Settings

logger = logging.getLogger(__name__)


@dataclass
class AlertEngine:
    settings: Settings
    store: EntityStore
    registry: ChannelRegistry
    ledger: FiringLedger
    audit: AuditSink
    permissions: PermissionFilter
    dispatcher: NotificationDispatcher
    subscriptions: SubscriptionManager
    scheduler: Scheduler
    service: AlertService

    def start(self) -> None:
        if self.settings.SCHEDULER_ENABLED:
            self.scheduler.start()
        else:
            logger.info("Scheduler disabled (SCHEDULER_ENABLED=False)")

    def shutdown(self) -> None:
        self.scheduler.stop()
        self.dispatcher.shutdown()
        logger.info("Alert engine stopped")


def build_engine(
    settings: Settings,
    *,
    store: Optional[EntityStore] = None,
    query_runner: Optional[QueryRunner] = None,
    collection_permissions: Optional[CollectionPermissions] = None,
    audit: Optional[AuditSink] = None,
    registry: Optional[ChannelRegistry] = None,
    ledger: Optional[FiringLedger] = None,
    http_client: Optional[httpx.Client] = None,
    mailer: Optional[Mailer] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> AlertEngine:
    """Build an engine; unspecified collaborators get in-memory defaults."""
    store = store if store is not None else InMemoryEntityStore()
    query_runner = query_runner if query_runner is not None else StaticQueryRunner()
    collection_permissions = (
        collection_permissions if collection_permissions is not None
        else StaticCollectionPermissions()
    )
    audit = audit if audit is not None else InMemoryAuditLog()
    if registry is None:
        registry = build_default_registry(settings, http_client=http_client, mailer=mailer)
    ledger = ledger if ledger is not None else build_ledger(settings)

    dispatcher_kwargs = {"clock": clock} if clock else {}
    dispatcher = NotificationDispatcher(
        store, registry, ConditionEvaluator(), query_runner, audit,
        site_url=settings.SITE_URL,
        notification_channel_type=settings.NOTIFICATION_CHANNEL_TYPE,
        max_workers=settings.DISPATCH_MAX_WORKERS,
        send_timeout=settings.CHANNEL_SEND_TIMEOUT_SECONDS,
        **dispatcher_kwargs,
    )
    permissions = PermissionFilter(collection_permissions)
    subscriptions = SubscriptionManager(store, registry, dispatcher, audit)
    scheduler = Scheduler(
        store, dispatcher, ledger,
        anchor_minute=settings.SCHEDULER_ANCHOR_MINUTE,
        tz=resolve_timezone(settings.SCHEDULER_TIMEZONE),
        tick_seconds=settings.SCHEDULER_TICK_SECONDS,
        firing_workers=settings.FIRING_WORKERS,
        clock=clock,
    )
    service = AlertService(
        store, registry, permissions, subscriptions, collection_permissions, audit,
    )

    logger.info(
        "Alert engine built: channels=%s ledger=%s",
        registry.types(), type(ledger).__name__,
    )
    return AlertEngine(
        settings=settings,
        store=store,
        registry=registry,
        ledger=ledger,
        audit=audit,
        permissions=permissions,
        dispatcher=dispatcher,
        subscriptions=subscriptions,
        scheduler=scheduler,
        service=service,
    )
