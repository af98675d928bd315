"""
TCG Marketplace Monitor — Monitoring Scheduler

Triggers a monitoring run every MONITOR_INTERVAL_MINUTES. A tick that lands
while a run is still in flight is skipped (the orchestrator rejects it with
AlreadyRunning), never queued.
"""

from __future__ import annotations

import asyncio
import signal
from datetime import datetime, timezone
from typing import Any

import structlog

from src.config import settings
from src.pipeline.errors import AlreadyRunning
from src.pipeline.orchestrator import MonitoringOrchestrator

logger = structlog.get_logger(__name__)


class MonitoringScheduler:
    """
    Async scheduler for periodic monitoring runs.

    The first run starts immediately; later runs are spaced from the start of
    the previous one.
    """

    def __init__(
        self,
        orchestrator: MonitoringOrchestrator,
        interval_minutes: int | None = None,
        health_interval_minutes: int | None = None,
        poll_check_interval: float = 5.0,
    ) -> None:
        self.orchestrator = orchestrator
        self._interval_minutes = interval_minutes or settings.MONITOR_INTERVAL_MINUTES
        self._health_interval_minutes = health_interval_minutes or settings.HEALTH_LOG_INTERVAL_MINUTES
        self._poll_check_interval = poll_check_interval
        self._shutdown_event = asyncio.Event()

        self._last_run_at: datetime | None = None
        self._last_health_at: datetime = datetime.now(timezone.utc)
        self.runs_started = 0
        self.runs_skipped = 0

    async def shutdown(self) -> None:
        """Signal graceful shutdown to the scheduler loop."""
        logger.info("scheduler_shutdown_requested")
        self.orchestrator.stop()
        self._shutdown_event.set()

    def _should_run(self) -> bool:
        """Check if the monitoring interval has elapsed."""
        if self._last_run_at is None:
            return True
        elapsed_minutes = (datetime.now(timezone.utc) - self._last_run_at).total_seconds() / 60
        return elapsed_minutes >= self._interval_minutes

    def _should_log_health(self) -> bool:
        elapsed_minutes = (datetime.now(timezone.utc) - self._last_health_at).total_seconds() / 60
        return elapsed_minutes >= self._health_interval_minutes

    async def _run_monitoring(self) -> None:
        self._last_run_at = datetime.now(timezone.utc)
        try:
            run = await self.orchestrator.run_once()
        except AlreadyRunning:
            self.runs_skipped += 1
            logger.info("scheduler_run_skipped_already_running")
            return

        self.runs_started += 1
        logger.info(
            "scheduler_run_complete",
            state=run.state.value,
            completed_count=run.completed_count,
            error_count=run.error_count,
            next_run_in_minutes=self._interval_minutes,
        )

    def _log_health(self) -> None:
        self._last_health_at = datetime.now(timezone.utc)
        status = self.orchestrator.status()
        logger.info(
            "scheduler_health",
            state=status["state"],
            runs_started=self.runs_started,
            runs_skipped=self.runs_skipped,
            last_run=status["last_run"],
        )

    async def run(self) -> None:
        """
        Main scheduler loop. Runs indefinitely until shutdown is signaled.
        """
        logger.info(
            "scheduler_started",
            interval_minutes=self._interval_minutes,
            search_terms=self.orchestrator.search_terms,
        )

        try:
            while not self._shutdown_event.is_set():
                try:
                    if self._should_run():
                        await self._run_monitoring()

                    if self._should_log_health():
                        self._log_health()

                    # Sleep before next check
                    await asyncio.wait_for(
                        self._shutdown_event.wait(),
                        timeout=self._poll_check_interval,
                    )
                except asyncio.TimeoutError:
                    # Expected: timeout means no shutdown signal, continue loop
                    continue
                except Exception as e:
                    logger.error(
                        "scheduler_unknown_error",
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    # Continue running despite errors
                    await asyncio.sleep(self._poll_check_interval)

        except asyncio.CancelledError:
            logger.info("scheduler_cancelled")
            raise
        finally:
            logger.info("scheduler_stopped")


async def run_scheduler(orchestrator: MonitoringOrchestrator) -> None:
    """
    Initialize and run the scheduler with graceful shutdown handling.

    Registers SIGTERM/SIGINT handlers to trigger shutdown.

    Args:
        orchestrator: Fully wired monitoring orchestrator.
    """
    scheduler = MonitoringScheduler(orchestrator)

    # Register signal handlers for graceful shutdown
    def handle_signal(_signum: int, _frame: Any) -> None:
        """Called by SIGTERM/SIGINT."""
        logger.info("scheduler_signal_received")
        asyncio.create_task(scheduler.shutdown())

    loop = asyncio.get_running_loop()

    # Platform-dependent signal handling
    try:
        loop.add_signal_handler(signal.SIGTERM, handle_signal, signal.SIGTERM, None)
        loop.add_signal_handler(signal.SIGINT, handle_signal, signal.SIGINT, None)
    except NotImplementedError:
        # Windows doesn't support add_signal_handler for all signals
        logger.warning("signal_handlers_not_supported_on_platform")

    try:
        await scheduler.run()
    except Exception as e:
        logger.error("scheduler_fatal_error", error=str(e), error_type=type(e).__name__)
        raise
