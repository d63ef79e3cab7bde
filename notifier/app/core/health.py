"""
Health check aggregation — deep health probe for the alert engine.

Checks:
    • Scheduler (periodic driver running when enabled)
    • Firing ledger backend reachability (Redis when configured)
    • Channel registry (registered types, webhook configuration)

Returns a structured health report suitable for:
    - Kubernetes liveness/readiness probes
    - Load balancer health checks
    - Monitoring dashboards
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List

from notifier.app.core.config import settings

if TYPE_CHECKING:
    from notifier.app.alerts.engine import AlertEngine

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # partial functionality
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    status: HealthStatus = HealthStatus.HEALTHY
    version: str = settings.APP_VERSION
    environment: str = settings.ENVIRONMENT
    timestamp: str = ""
    uptime_seconds: float = 0.0
    components: List[ComponentHealth] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "environment": self.environment,
            "timestamp": self.timestamp or datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "components": [c.to_dict() for c in self.components],
        }


# Track application start time
_start_time = time.monotonic()


def check_scheduler(engine: "AlertEngine") -> ComponentHealth:
    comp = ComponentHealth(name="scheduler")
    scheduler = engine.scheduler
    comp.details = {
        "enabled": engine.settings.SCHEDULER_ENABLED,
        "tick_seconds": scheduler.tick_seconds,
        "anchor_minute": scheduler.anchor_minute,
        "timezone": str(scheduler.tz),
    }
    if not engine.settings.SCHEDULER_ENABLED:
        comp.message = "Disabled by configuration"
    elif scheduler.running:
        comp.message = "Ticking"
    else:
        comp.status = HealthStatus.DEGRADED
        comp.message = "Enabled but not running"
    return comp


def check_ledger(engine: "AlertEngine") -> ComponentHealth:
    """Firing ledger reachability; an unreachable Redis blocks all firings."""
    comp = ComponentHealth(name="firing_ledger")
    start = time.monotonic()
    comp.details = {"backend": type(engine.ledger).__name__}
    if engine.ledger.ping():
        comp.message = "Ledger available"
    else:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = "Ledger unreachable"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


def check_channels(engine: "AlertEngine") -> ComponentHealth:
    comp = ComponentHealth(name="channels")
    types = engine.registry.types()
    comp.details = {
        "types": types,
        "notification_channel": engine.settings.NOTIFICATION_CHANNEL_TYPE,
        "chat_webhook_configured": bool(engine.settings.CHAT_WEBHOOK_URL),
    }
    if engine.settings.NOTIFICATION_CHANNEL_TYPE not in engine.registry:
        comp.status = HealthStatus.DEGRADED
        comp.message = "Subscription notices have no channel"
    else:
        comp.message = f"{len(types)} channel types registered"
    return comp


def run_health_check(engine: "AlertEngine") -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    for check in (check_scheduler, check_ledger, check_channels):
        report.components.append(check(engine))

    # Aggregate status
    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    return report
