"""
TCG Marketplace Monitor — Application Entrypoint

Configures structlog, wires browser, classifier, sinks and the optional eBay
validator into the orchestrator, then runs the scheduler (or a single pass).

Run via:
    python -m src.main            # scheduled monitoring
    python -m src.main --once     # one run, then exit
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import sys
from typing import Any

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from src.classifier.factory import build_classifier
from src.config import settings
from src.pipeline.ebay import eBayClient
from src.pipeline.orchestrator import MonitoringOrchestrator, RunState
from src.pipeline.scheduler import run_scheduler
from src.scraper.session import PlaywrightSessionManager
from src.sinks import FanOutSink, ListingSink
from src.sinks.database import DatabaseSink
from src.sinks.sheets import GoogleSheetsSink


# ---------------------------------------------------------------------------
# Structlog Configuration
# ---------------------------------------------------------------------------


def _configure_logging(log_level: str = "INFO") -> None:
    """
    Set up structured logging with JSON output.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
    """
    # Configure stdlib logging first (for third-party libraries)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Database Setup
# ---------------------------------------------------------------------------


async def create_db_engine() -> tuple[Any, async_sessionmaker[AsyncSession]]:
    """
    Create SQLAlchemy async engine and session factory for the mirror sink.

    Returns:
        (engine, session_factory) tuple.
    """
    logger = structlog.get_logger(__name__)

    engine = create_async_engine(
        settings.DATABASE_URL,
        echo=False,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,  # Verify connections before use
    )
    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    async with session_factory() as session:
        await session.execute(text("SELECT 1"))
    logger.info("database_health_check_passed")
    return engine, session_factory


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_sink(session_factory: async_sessionmaker[AsyncSession] | None) -> ListingSink:
    """Google Sheets as the primary sink, optionally mirrored into SQL."""
    sheets = GoogleSheetsSink()
    if session_factory is None:
        return sheets
    return FanOutSink(primary=sheets, mirrors=[DatabaseSink(session_factory)])


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="python -m src.main", description="Pokemon TCG marketplace monitor")
    parser.add_argument("--once", action="store_true", help="run a single monitoring pass and exit")
    parser.add_argument("--term", action="append", dest="terms", help="override search terms (repeatable)")
    parser.add_argument("--model", help="override the classifier model")
    return parser.parse_args(argv)


# ---------------------------------------------------------------------------
# Application Startup
# ---------------------------------------------------------------------------


async def main(argv: list[str] | None = None) -> int:
    """
    Application entrypoint.

    Execution order:
    1. Configure logging (structlog JSON)
    2. Optionally connect the SQL mirror
    3. Build classifier, browser, sinks and orchestrator
    4. Run once or hand over to the scheduler

    Returns:
        Process exit code (1 when a single run ends FAILED).
    """
    args = _parse_args(argv)
    _configure_logging(log_level=settings.LOG_LEVEL)
    logger = structlog.get_logger(__name__)

    logger.info("monitor_startup_begin", version="0.1.0", backend=settings.CLASSIFIER_BACKEND.value)

    if not settings.GOOGLE_SPREADSHEET_ID:
        logger.warning("config_spreadsheet_id_missing", note="every append will fail until GOOGLE_SPREADSHEET_ID is set")
    if not settings.BROWSER_DEBUG_PORT and not settings.BROWSER_PROFILE_DIR:
        logger.warning("config_browser_not_logged_in", note="no debug port or profile dir; marketplace may show a login wall")

    engine = None
    session_factory = None
    if settings.ENABLE_DATABASE_MIRROR:
        try:
            engine, session_factory = await create_db_engine()
        except Exception as e:
            logger.error("database_engine_creation_failed", error=str(e), error_type=type(e).__name__)
            raise

    classifier = build_classifier(settings)
    price_validator = eBayClient() if settings.ENABLE_EBAY_VALIDATION else None
    orchestrator = MonitoringOrchestrator(
        browser=PlaywrightSessionManager(),
        classifier=classifier,
        sink=build_sink(session_factory),
        price_validator=price_validator,
    )
    if args.terms or args.model:
        orchestrator.configure(search_terms=args.terms, classifier_model=args.model)

    logger.info(
        "monitor_startup_complete",
        search_terms=orchestrator.search_terms,
        classifier_model=classifier.model,
        ebay_validation=price_validator is not None,
        database_mirror=session_factory is not None,
        backlog_url=orchestrator.get_backlog_url(),
    )

    exit_code = 0
    try:
        async with contextlib.AsyncExitStack() as stack:
            if price_validator is not None:
                await stack.enter_async_context(price_validator)
            if args.once or not settings.MONITOR_ENABLED:
                run = await orchestrator.run_once()
                exit_code = 1 if run.state is RunState.FAILED else 0
            else:
                await run_scheduler(orchestrator)
    except KeyboardInterrupt:
        logger.info("monitor_interrupted_by_user")
    except Exception as e:
        logger.error("monitor_fatal_error", error=str(e), error_type=type(e).__name__)
        raise
    finally:
        aclose = getattr(classifier, "aclose", None)
        if aclose is not None:
            await aclose()
        if engine is not None:
            await engine.dispose()
        logger.info("monitor_shutdown_complete")

    return exit_code


# ---------------------------------------------------------------------------
# CLI Entry
# ---------------------------------------------------------------------------


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
