"""
schedule.py — Due-ness, slots and the periodic tick.

═══════════════════════════════════════════════════════════════════════════
WHEN IS A CHANNEL DUE?
═══════════════════════════════════════════════════════════════════════════

All times are read in SCHEDULER_TIMEZONE. ``anchor`` is the minute of the
hour at which slots open (SCHEDULER_ANCHOR_MINUTE, default 0).

    schedule_type   due when
    ─────────────   ─────────────────────────────────────────────
    hourly          minute == anchor
    daily           hour == schedule_hour  and minute == anchor
    weekly          weekday == schedule_day and hour == schedule_hour
                    and minute == anchor

A *slot* is the hour beginning at the due instant. A channel fires at most
once per slot; the ``FiringLedger`` keeps the bookkeeping.

═══════════════════════════════════════════════════════════════════════════
TICK
═══════════════════════════════════════════════════════════════════════════

    for every enabled channel of every non-archived alert:
        slot = current_slot(channel, now)          # None outside its window
        drop a pending retry whose slot has passed (logged)
        eligible if due now, or a retry is pending for this very slot
        claim (channel, slot) in the ledger        # losers skip
    group claimed channels by alert → one firing per alert in the pool
    firing ok     → ledger.complete(...)
    firing raised → ledger.fail(...)               # retried next tick in-slot

The tick only submits work; it never waits on a firing. APScheduler runs
it with ``max_instances=1`` so ticks do not pile up behind each other.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Callable, Dict, List, Optional, Tuple, Union
from zoneinfo import ZoneInfo

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from notifier.app.alerts.ledger import FiringLedger
from notifier.app.alerts.models import Alert, Channel, FiringReport, ScheduleDay, ScheduleType
from notifier.app.alerts.store import EntityStore
from notifier.app.core.errors import ValidationError
from notifier.app.core.logging_config import log_context

logger = logging.getLogger(__name__)

SLOT_LENGTH = timedelta(hours=1)


# ═══════════════════════════════════════════════════════════════════════════
# Schedule validation
# ═══════════════════════════════════════════════════════════════════════════

def normalize_schedule(
    schedule_type: Union[ScheduleType, str, None],
    schedule_hour: Optional[int],
    schedule_day: Union[ScheduleDay, str, None],
) -> Tuple[ScheduleType, Optional[int], Optional[ScheduleDay]]:
    """
    Check the schedule fields and drop the ones the type does not use.

    An hourly channel submitted with an hour is stored without it; a daily
    channel without an hour is rejected.

    Raises
    ------
    ValidationError
        With one entry per offending field.
    """
    try:
        stype = ScheduleType(schedule_type)
    except ValueError:
        raise ValidationError(
            f"schedule_type must be one of {[t.value for t in ScheduleType]}",
            field="schedule_type",
        ) from None

    if stype == ScheduleType.HOURLY:
        return stype, None, None

    errors: Dict[str, str] = {}
    if schedule_hour is None:
        errors["schedule_hour"] = f"schedule_hour is required for {stype.value} schedules"
    elif isinstance(schedule_hour, bool) or not isinstance(schedule_hour, int) \
            or not 0 <= schedule_hour <= 23:
        errors["schedule_hour"] = "schedule_hour must be an integer between 0 and 23"

    day: Optional[ScheduleDay] = None
    if stype == ScheduleType.WEEKLY:
        if schedule_day is None:
            errors["schedule_day"] = "schedule_day is required for weekly schedules"
        else:
            try:
                day = ScheduleDay(schedule_day)
            except ValueError:
                errors["schedule_day"] = (
                    f"schedule_day must be one of {[d.value for d in ScheduleDay]}"
                )

    if errors:
        raise ValidationError("invalid schedule", errors=errors)
    return stype, schedule_hour, day


def resolve_timezone(name: str) -> tzinfo:
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


# ═══════════════════════════════════════════════════════════════════════════
# Scheduler
# ═══════════════════════════════════════════════════════════════════════════

class Scheduler:
    """
    Periodic driver for scheduled firings.

    ``dispatcher`` needs a single method,
    ``run_scheduled_firing(alert, channel_ids) -> FiringReport``.
    """

    def __init__(
        self,
        store: EntityStore,
        dispatcher,
        ledger: FiringLedger,
        *,
        anchor_minute: int = 0,
        tz: tzinfo = timezone.utc,
        tick_seconds: int = 60,
        firing_workers: int = 4,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if not 0 <= anchor_minute <= 59:
            raise ValueError("anchor_minute must be between 0 and 59")
        self.store = store
        self.dispatcher = dispatcher
        self.ledger = ledger
        self.anchor_minute = anchor_minute
        self.tz = tz
        self.tick_seconds = tick_seconds
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._pool = ThreadPoolExecutor(
            max_workers=firing_workers, thread_name_prefix="alert-firing",
        )
        self._scheduler: Optional[BackgroundScheduler] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    # ── Time arithmetic ──

    def _local(self, now: datetime) -> datetime:
        if now.tzinfo is None:
            return now.replace(tzinfo=self.tz)
        return now.astimezone(self.tz)

    def current_slot(self, channel: Channel, now: datetime) -> Optional[datetime]:
        """Start of the slot ``now`` falls in, or None outside the channel's window."""
        local = self._local(now)
        start = local.replace(minute=self.anchor_minute, second=0, microsecond=0)
        if local < start:
            start -= SLOT_LENGTH

        if channel.schedule_type == ScheduleType.HOURLY:
            return start
        if start.hour != channel.schedule_hour:
            return None
        if channel.schedule_type == ScheduleType.WEEKLY:
            if channel.schedule_day is None or start.weekday() != channel.schedule_day.weekday:
                return None
        return start

    def is_due(self, channel: Channel, now: datetime) -> bool:
        local = self._local(now)
        if local.minute != self.anchor_minute:
            return False
        return self.current_slot(channel, now) is not None

    # ── Tick ──

    def tick(self, now: Optional[datetime] = None) -> List[Future]:
        """Claim due channels and submit one firing per alert. Returns the futures."""
        now = now or self.clock()
        futures: List[Future] = []

        for alert in self.store.list_alerts():
            if alert.archived:
                continue
            claims: Dict[int, datetime] = {}
            for channel in self.store.get_channels(alert.id):
                if not channel.enabled:
                    continue
                slot = self._eligible_slot(alert, channel, now)
                if slot is None:
                    continue
                if self.ledger.try_claim(channel.id, slot):
                    claims[channel.id] = slot
                else:
                    logger.debug("Channel %s slot %s already claimed", channel.id, slot)

            if claims:
                futures.append(self._pool.submit(self._fire, alert, claims))

        if futures:
            logger.info("Tick %s: %d alert firings submitted", now.isoformat(), len(futures))
        return futures

    def _eligible_slot(self, alert: Alert, channel: Channel, now: datetime) -> Optional[datetime]:
        slot = self.current_slot(channel, now)
        pending = self.ledger.failed_slot(channel.id)

        if pending is not None and (slot is None or pending < slot):
            logger.warning(
                "Alert %s channel %s: abandoning retry of slot %s",
                alert.id, channel.id, pending.isoformat(),
                extra={"alert_id": alert.id, "channel_id": channel.id},
            )
            self.ledger.clear_failure(channel.id)
            pending = None

        if slot is None:
            return None
        if self.is_due(channel, now) or pending == slot:
            return slot
        return None

    def _fire(self, alert: Alert, claims: Dict[int, datetime]) -> Optional[FiringReport]:
        with log_context(alert_id=alert.id):
            try:
                report = self.dispatcher.run_scheduled_firing(alert, list(claims))
            except Exception as exc:
                logger.error(
                    "Alert %s firing failed, will retry within slot: %s",
                    alert.id, exc, exc_info=True,
                    extra={"alert_id": alert.id},
                )
                for channel_id, slot in claims.items():
                    self.ledger.fail(channel_id, slot)
                return None

            for channel_id, slot in claims.items():
                self.ledger.complete(channel_id, slot)
            return report

    # ── Lifecycle ──

    def start(self) -> None:
        if self.running:
            return
        self._scheduler = BackgroundScheduler(timezone=self.tz)
        self._scheduler.add_job(
            self.tick,
            trigger=IntervalTrigger(seconds=self.tick_seconds),
            id="alert_tick",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=self.tick_seconds,
        )
        self._scheduler.start()
        logger.info(
            "Scheduler started (tick=%ss, anchor=:%02d, tz=%s)",
            self.tick_seconds, self.anchor_minute, self.tz,
        )

    def stop(self, wait: bool = True) -> None:
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
        self._scheduler = None
        self._pool.shutdown(wait=wait)
