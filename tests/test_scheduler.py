"""
Tests for the monitoring scheduler.

Validates run cadence, overlap skipping, health logging and shutdown.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import FakeBrowser, FakeClassifier, FakeSink
from src.config import settings
from src.pipeline.errors import AlreadyRunning
from src.pipeline.orchestrator import MonitoringOrchestrator, MonitoringRun, RunState
from src.pipeline.scheduler import MonitoringScheduler


@pytest.fixture
def orchestrator() -> MonitoringOrchestrator:
    """Orchestrator over fakes with one term and no delays."""
    return MonitoringOrchestrator(
        browser=FakeBrowser(listings_per_term=1),
        classifier=FakeClassifier(),
        sink=FakeSink(),
        search_terms=["pokemon etb"],
        delay_between_terms=0,
        capture_screenshots=False,
    )


@pytest.fixture
def scheduler(orchestrator) -> MonitoringScheduler:
    return MonitoringScheduler(orchestrator, poll_check_interval=0.01)


@pytest.mark.asyncio
async def test_scheduler_init(scheduler):
    """Test scheduler initialization."""
    assert scheduler._shutdown_event is not None
    assert scheduler._interval_minutes == settings.MONITOR_INTERVAL_MINUTES
    assert scheduler._health_interval_minutes == settings.HEALTH_LOG_INTERVAL_MINUTES
    assert scheduler.runs_started == 0


@pytest.mark.asyncio
async def test_first_run_is_immediate(scheduler):
    """No previous run means a run is due."""
    assert scheduler._should_run() is True


@pytest.mark.asyncio
async def test_run_not_due_inside_interval(scheduler):
    """A run that started moments ago blocks the next one."""
    scheduler._last_run_at = datetime.now(timezone.utc) - timedelta(minutes=1)
    assert scheduler._should_run() is False


@pytest.mark.asyncio
async def test_run_due_after_interval(scheduler):
    scheduler._last_run_at = datetime.now(timezone.utc) - timedelta(minutes=scheduler._interval_minutes + 1)
    assert scheduler._should_run() is True


@pytest.mark.asyncio
async def test_run_monitoring_counts_runs(scheduler, orchestrator):
    """A completed run is counted and the orchestrator returns to idle."""
    await scheduler._run_monitoring()

    assert scheduler.runs_started == 1
    assert scheduler._last_run_at is not None
    assert orchestrator.state is RunState.IDLE


@pytest.mark.asyncio
async def test_overlapping_tick_is_skipped():
    """A tick during an in-flight run is skipped, not queued."""
    mock_orchestrator = MagicMock()
    mock_orchestrator.run_once = AsyncMock(side_effect=AlreadyRunning("busy"))
    sched = MonitoringScheduler(mock_orchestrator, interval_minutes=30)

    await sched._run_monitoring()

    assert sched.runs_skipped == 1
    assert sched.runs_started == 0


@pytest.mark.asyncio
async def test_health_log_uses_status(scheduler):
    """Health logging reads the non-blocking status snapshot."""
    scheduler._last_health_at = datetime.now(timezone.utc) - timedelta(minutes=scheduler._health_interval_minutes + 1)
    assert scheduler._should_log_health() is True

    scheduler._log_health()

    assert scheduler._should_log_health() is False


@pytest.mark.asyncio
async def test_scheduler_shutdown(scheduler):
    """Test scheduler shutdown signal."""
    assert not scheduler._shutdown_event.is_set()
    await scheduler.shutdown()
    assert scheduler._shutdown_event.is_set()


@pytest.mark.asyncio
async def test_scheduler_run_triggers_monitoring_then_stops(orchestrator):
    """run() starts a monitoring run straight away and exits on shutdown."""
    sched = MonitoringScheduler(orchestrator, poll_check_interval=0.01)
    run_called = asyncio.Event()

    async def _patched_run() -> None:
        run_called.set()
        await sched.shutdown()

    sched._run_monitoring = _patched_run  # type: ignore[method-assign]

    await asyncio.wait_for(sched.run(), timeout=2.0)

    assert run_called.is_set(), "_run_monitoring was never called by run()"


@pytest.mark.asyncio
async def test_scheduler_survives_orchestrator_crash():
    """An unexpected error in a run is logged and the loop keeps going."""
    mock_orchestrator = MagicMock()
    mock_orchestrator.search_terms = ["pokemon etb"]
    sched = MonitoringScheduler(mock_orchestrator, interval_minutes=30, poll_check_interval=0.01)
    calls = 0

    async def _run_once() -> MonitoringRun:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("boom")
        await sched.shutdown()
        return MonitoringRun(state=RunState.IDLE)

    mock_orchestrator.run_once = _run_once
    # Force the second tick to be due as soon as the first one fails
    sched._should_run = lambda: True  # type: ignore[method-assign]

    await asyncio.wait_for(sched.run(), timeout=2.0)

    assert calls == 2
    assert sched.runs_started == 1
