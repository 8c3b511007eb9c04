"""Periodic runner for the billing sweeps.

This is the only place that reads the wall clock. Each tick turns "now" into
a timezone-aware reference time in the business timezone and hands it to the
sweeps that are due; everything below receives time as a parameter.
"""

import asyncio
import inspect
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog

from billing_workflow.automation import AutomationScheduler
from billing_workflow.config import get_settings
from billing_workflow.errors import ValidationError
from billing_workflow.invoicing import BillingService
from billing_workflow.reminders import ReminderDispatcher

logger = structlog.get_logger(__name__)


@dataclass
class ScheduledSweep:
    """A sweep run every ``interval``; the handler receives the reference time."""

    name: str
    interval: timedelta
    handler: Callable[[datetime], Any]
    enabled: bool = True
    last_run: datetime | None = None
    runs: int = 0
    failures: int = 0


def business_timezone(name: str | None = None) -> ZoneInfo:
    name = name or get_settings().business_timezone
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValidationError(f"unknown timezone '{name}'", details={"timezone": name}) from e


class SweepScheduler:
    """Runs registered sweeps when their interval has elapsed.

    The scheduler:
    1. Reads the wall clock once per tick, in the business timezone
    2. Runs every enabled sweep whose interval has elapsed
    3. Logs sweep failures without stopping the loop
    """

    def __init__(
        self,
        timezone: str | None = None,
        tick_seconds: float = 30.0,
        clock: Callable[[], datetime] | None = None,
    ):
        self._tz = business_timezone(timezone)
        self._tick_seconds = tick_seconds
        self._clock = clock
        self._sweeps: list[ScheduledSweep] = []
        self._is_running = False
        self._is_paused = False
        self._ticks = 0
        self._logger = logger.bind(component="sweep_scheduler")

    @property
    def is_running(self) -> bool:
        return self._is_running

    @property
    def is_paused(self) -> bool:
        return self._is_paused

    @property
    def sweeps(self) -> list[ScheduledSweep]:
        return list(self._sweeps)

    def now(self) -> datetime:
        """Current time in the business timezone."""
        current = self._clock() if self._clock else datetime.now(self._tz)
        if current.tzinfo is None:
            current = current.replace(tzinfo=self._tz)
        return current.astimezone(self._tz)

    def schedule(self, sweep: ScheduledSweep) -> None:
        if any(s.name == sweep.name for s in self._sweeps):
            raise ValidationError(f"sweep '{sweep.name}' is already scheduled")
        self._sweeps.append(sweep)
        self._logger.debug("sweep_scheduled", sweep=sweep.name, interval=str(sweep.interval))

    def remove(self, name: str) -> bool:
        """Remove a sweep by name; True if it was scheduled."""
        original_len = len(self._sweeps)
        self._sweeps = [s for s in self._sweeps if s.name != name]
        return len(self._sweeps) < original_len

    def is_due(self, sweep: ScheduledSweep, now: datetime) -> bool:
        if not sweep.enabled:
            return False
        return sweep.last_run is None or now - sweep.last_run >= sweep.interval

    async def run_sweep(self, sweep: ScheduledSweep, now: datetime) -> Any:
        """Run one sweep; failures are logged and counted, never raised."""
        sweep.last_run = now
        sweep.runs += 1
        with structlog.contextvars.bound_contextvars(sweep=sweep.name):
            self._logger.info("sweep_starting", reference_time=now.isoformat())
            try:
                result = sweep.handler(now)
                if inspect.isawaitable(result):
                    result = await result
            except Exception as e:
                sweep.failures += 1
                self._logger.error("sweep_failed", error=str(e))
                return None
            self._logger.info("sweep_finished")
        return result

    async def run_pending(self, now: datetime | None = None) -> dict[str, Any]:
        """Run every sweep that is due at ``now``.

        Returns:
            Mapping of sweep name to its result for the sweeps that ran.
        """
        now = now or self.now()
        results = {}
        for sweep in self._sweeps:
            if self.is_due(sweep, now):
                results[sweep.name] = await self.run_sweep(sweep, now)
        return results

    async def run_continuous(self, max_ticks: int | None = None) -> None:
        """Tick until stopped (or for ``max_ticks`` ticks)."""
        self._is_running = True
        ticks = 0
        self._logger.info("continuous_run_starting", max_ticks=max_ticks, sweeps=len(self._sweeps))

        while self._is_running:
            if max_ticks is not None and ticks >= max_ticks:
                break
            while self._is_paused and self._is_running:
                await asyncio.sleep(0.1)
            if not self._is_running:
                break

            await self.run_pending()
            ticks += 1
            self._ticks += 1
            if max_ticks is None or ticks < max_ticks:
                await asyncio.sleep(self._tick_seconds)

        self._is_running = False
        self._logger.info("continuous_run_ended", ticks=ticks)

    def pause(self) -> None:
        self._is_paused = True
        self._logger.info("scheduler_paused")

    def resume(self) -> None:
        self._is_paused = False
        self._logger.info("scheduler_resumed")

    def stop(self) -> None:
        self._is_running = False
        self._is_paused = False
        self._logger.info("scheduler_stopped")

    def get_status(self) -> dict[str, Any]:
        return {
            "is_running": self._is_running,
            "is_paused": self._is_paused,
            "timezone": str(self._tz),
            "ticks": self._ticks,
            "sweeps": [
                {
                    "name": s.name,
                    "interval_seconds": int(s.interval.total_seconds()),
                    "enabled": s.enabled,
                    "last_run": s.last_run.isoformat() if s.last_run else None,
                    "runs": s.runs,
                    "failures": s.failures,
                }
                for s in self._sweeps
            ],
        }


def register_default_sweeps(
    scheduler: SweepScheduler,
    automation: AutomationScheduler,
    reminders: ReminderDispatcher,
    billing: BillingService,
) -> None:
    """Register the automation, reminder and reconciliation sweeps at the
    configured cadences."""
    settings = get_settings()

    async def automation_sweep(now: datetime) -> dict[str, Any]:
        result = await automation.run_automation_sweep(now.date(), reference_time=now)
        return result.to_dict()

    async def reminder_sweep(now: datetime) -> dict[str, Any]:
        result = await reminders.run_reminder_sweep(now)
        return result.to_dict()

    async def reconciliation_sweep(now: datetime) -> dict[str, Any]:
        result = await billing.reconcile_totals(now)
        return result.to_dict()

    scheduler.schedule(
        ScheduledSweep(
            "automation", timedelta(minutes=settings.automation_interval_minutes), automation_sweep
        )
    )
    scheduler.schedule(
        ScheduledSweep(
            "reminders", timedelta(minutes=settings.reminder_interval_minutes), reminder_sweep
        )
    )
    scheduler.schedule(
        ScheduledSweep(
            "reconciliation",
            timedelta(minutes=settings.reconciliation_interval_minutes),
            reconciliation_sweep,
        )
    )
