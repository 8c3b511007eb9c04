"""Tests for the SweepScheduler."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
import structlog
from factories import NOW, make_quote, seed_invoice

from billing_workflow.automation import AutomationScheduler
from billing_workflow.errors import ValidationError
from billing_workflow.models import InvoiceStatus
from billing_workflow.reminders import ReminderDispatcher
from billing_workflow.scheduler import (
    ScheduledSweep,
    SweepScheduler,
    business_timezone,
    register_default_sweeps,
)


@pytest.fixture
def scheduler():
    """Scheduler pinned to a fixed clock."""
    return SweepScheduler(timezone="UTC", tick_seconds=0, clock=lambda: NOW)


class TestBusinessTime:
    """Tests for timezone handling."""

    def test_now_is_in_business_timezone(self):
        scheduler = SweepScheduler(timezone="America/Chicago", clock=lambda: NOW)

        now = scheduler.now()

        assert str(now.tzinfo) == "America/Chicago"
        assert now == NOW
        assert now.hour == 4

    def test_naive_clock_is_taken_as_business_time(self):
        scheduler = SweepScheduler(timezone="UTC", clock=lambda: datetime(2026, 6, 1, 9, 0))

        assert scheduler.now() == NOW

    def test_unknown_timezone(self):
        with pytest.raises(ValidationError):
            business_timezone("Mars/Olympus_Mons")


class TestScheduling:
    """Tests for registration and due checks."""

    def test_duplicate_name_rejected(self, scheduler):
        scheduler.schedule(ScheduledSweep("reminders", timedelta(hours=1), MagicMock()))

        with pytest.raises(ValidationError):
            scheduler.schedule(ScheduledSweep("reminders", timedelta(hours=2), MagicMock()))

    def test_remove(self, scheduler):
        scheduler.schedule(ScheduledSweep("reminders", timedelta(hours=1), MagicMock()))

        assert scheduler.remove("reminders") is True
        assert scheduler.remove("reminders") is False
        assert scheduler.sweeps == []

    def test_is_due(self, scheduler):
        sweep = ScheduledSweep("reminders", timedelta(hours=1), MagicMock())

        assert scheduler.is_due(sweep, NOW) is True
        sweep.last_run = NOW
        assert scheduler.is_due(sweep, NOW + timedelta(minutes=59)) is False
        assert scheduler.is_due(sweep, NOW + timedelta(hours=1)) is True
        sweep.enabled = False
        assert scheduler.is_due(sweep, NOW + timedelta(hours=2)) is False


class TestRunPending:
    """Tests for running due sweeps."""

    @pytest.mark.asyncio
    async def test_runs_due_sweeps_with_reference_time(self, scheduler):
        handler = AsyncMock(return_value={"sent": 2})
        scheduler.schedule(ScheduledSweep("reminders", timedelta(hours=1), handler))

        results = await scheduler.run_pending()

        assert results == {"reminders": {"sent": 2}}
        handler.assert_awaited_once_with(NOW)

    @pytest.mark.asyncio
    async def test_respects_interval(self, scheduler):
        handler = AsyncMock()
        scheduler.schedule(ScheduledSweep("reminders", timedelta(hours=1), handler))

        await scheduler.run_pending(NOW)
        await scheduler.run_pending(NOW + timedelta(minutes=30))
        await scheduler.run_pending(NOW + timedelta(hours=1))

        assert handler.await_count == 2

    @pytest.mark.asyncio
    async def test_sweep_name_bound_to_log_context(self, scheduler):
        seen = []

        def handler(now):
            seen.append(structlog.contextvars.get_contextvars().get("sweep"))

        scheduler.schedule(ScheduledSweep("reminders", timedelta(hours=1), handler))

        await scheduler.run_pending()

        assert seen == ["reminders"]
        assert "sweep" not in structlog.contextvars.get_contextvars()

    @pytest.mark.asyncio
    async def test_sync_handler(self, scheduler):
        handler = MagicMock(return_value="done")
        scheduler.schedule(ScheduledSweep("report", timedelta(hours=1), handler))

        assert await scheduler.run_pending() == {"report": "done"}

    @pytest.mark.asyncio
    async def test_failure_counted_and_other_sweeps_run(self, scheduler):
        healthy = AsyncMock(return_value="ok")
        scheduler.schedule(ScheduledSweep("broken", timedelta(hours=1), AsyncMock(side_effect=RuntimeError("x"))))
        scheduler.schedule(ScheduledSweep("healthy", timedelta(hours=1), healthy))

        results = await scheduler.run_pending()

        assert results == {"broken": None, "healthy": "ok"}
        status = scheduler.get_status()
        assert status["sweeps"][0]["failures"] == 1
        assert status["sweeps"][0]["runs"] == 1
        assert status["sweeps"][1]["failures"] == 0


class TestContinuousRun:
    """Tests for the tick loop."""

    @pytest.mark.asyncio
    async def test_max_ticks(self, scheduler):
        handler = AsyncMock()
        scheduler.schedule(ScheduledSweep("automation", timedelta(0), handler))

        await scheduler.run_continuous(max_ticks=3)

        assert handler.await_count == 3
        assert scheduler.is_running is False
        assert scheduler.get_status()["ticks"] == 3

    @pytest.mark.asyncio
    async def test_stop_from_handler(self, scheduler):
        def stop_after_first(now):
            scheduler.stop()

        scheduler.schedule(ScheduledSweep("automation", timedelta(0), stop_after_first))

        await scheduler.run_continuous()

        assert scheduler.sweeps[0].runs == 1

    def test_pause_resume(self, scheduler):
        scheduler.pause()
        assert scheduler.is_paused is True

        scheduler.resume()
        assert scheduler.is_paused is False


class TestDefaultSweeps:
    """Tests for register_default_sweeps."""

    @pytest.mark.asyncio
    async def test_registers_and_runs_all_sweeps(self, scheduler, repo, workflow, billing, notifier, limits):
        await seed_invoice(repo, make_quote(), status=InvoiceStatus.SENT, due_in_days=-1)
        register_default_sweeps(
            scheduler,
            AutomationScheduler(repo, workflow=workflow, limits=limits),
            ReminderDispatcher(repo, notifier, limits=limits),
            billing,
        )

        results = await scheduler.run_pending()

        assert [s.name for s in scheduler.sweeps] == ["automation", "reminders", "reconciliation"]
        assert results["automation"]["marked_overdue"] == 1
        assert results["reminders"]["per_category"]["overdue_payment"]["sent"] == 1
        assert results["reconciliation"]["checked"] == 1
        assert scheduler.sweeps[0].last_run == NOW.astimezone(UTC)
