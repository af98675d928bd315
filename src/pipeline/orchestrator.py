"""
TCG Marketplace Monitor — Monitoring Orchestrator

Drives one run across the configured search terms:

    acquire session
    for each term (in order):
        NAVIGATING -> SCROLLING -> EXTRACTING
        for each new listing:
            CLASSIFYING -> PERSISTING
        NEXT_TERM
    release session

Run states: IDLE -> RUNNING -> {IDLE, FAILED}. At most one run is in flight;
the IDLE/FAILED -> RUNNING transition is a compare-and-swap under a lock and
a second start() is rejected with AlreadyRunning, not queued.

Failure policy:
- SessionUnavailable (no browser) aborts the run -> FAILED.
- NavigationError / blocked page skip the current term.
- Classification, enrichment and persistence failures affect one listing.
  A listing whose classification fails is still persisted from its raw
  fields with confidence 0.0.
Every handled exception increments error_count.
"""

from __future__ import annotations

import asyncio
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

import structlog

from src.classifier import ClassifiedListing, ListingClassifier
from src.classifier.heuristics import heuristic_classify
from src.config import settings
from src.pipeline.ebay import eBayClient
from src.pipeline.errors import (
    AlreadyRunning,
    BlockedError,
    ClassificationError,
    ClassificationTimeout,
    NavigationError,
    PersistenceError,
    SessionUnavailable,
)
from src.scraper import RawListing
from src.scraper.extractor import ListingExtractor
from src.scraper.session import BrowserSessionManager
from src.sinks import ListingSink, PersistedListing
from src.utils.price import parse_price
from src.utils.urls import build_search_url

logger = structlog.get_logger(__name__)


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    FAILED = "failed"


class TermPhase(str, Enum):
    NAVIGATING = "navigating"
    SCROLLING = "scrolling"
    EXTRACTING = "extracting"
    CLASSIFYING = "classifying"
    PERSISTING = "persisting"
    NEXT_TERM = "next_term"


@dataclass
class MonitoringRun:
    """Counters and progress for one run. Lives in memory only."""
    state: RunState = RunState.IDLE
    phase: TermPhase | None = None
    current_term_index: int = -1
    current_term: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    completed_count: int = 0
    error_count: int = 0
    classification_errors: int = 0
    persistence_errors: int = 0
    term_errors: int = 0
    listing_errors: int = 0
    skipped_duplicates: int = 0
    listings_found: int = 0
    blocked_terms: list[str] = field(default_factory=list)
    stopped: bool = False
    last_error: str | None = None

    def summary(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        data["phase"] = self.phase.value if self.phase else None
        data["started_at"] = self.started_at.isoformat() if self.started_at else None
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return data


class MonitoringOrchestrator:
    """
    The monitoring state machine.

    Browser, classifier and sink are injected capability objects so the state
    machine runs against fakes in tests.

    Usage:
        orchestrator = MonitoringOrchestrator(browser, classifier, sink)
        run = await orchestrator.run_once()      # scheduler / CLI
        orchestrator.start()                     # fire-and-forget trigger
        orchestrator.status()                    # never blocks
    """

    def __init__(
        self,
        browser: BrowserSessionManager,
        classifier: ListingClassifier,
        sink: ListingSink,
        extractor: ListingExtractor | None = None,
        price_validator: eBayClient | None = None,
        search_terms: list[str] | None = None,
        classify_timeout: float | None = None,
        delay_between_terms: float | None = None,
        capture_screenshots: bool | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._browser = browser
        self._classifier = classifier
        self._sink = sink
        self._extractor = extractor or ListingExtractor()
        self._price_validator = price_validator
        self._search_terms = self._clean_terms(search_terms if search_terms is not None else settings.SEARCH_TERMS)
        self._classify_timeout = (
            classify_timeout if classify_timeout is not None else settings.CLASSIFIER_TIMEOUT_SECONDS
        )
        self._delay_between_terms = (
            delay_between_terms if delay_between_terms is not None else settings.DELAY_BETWEEN_SEARCHES_SECONDS
        )
        self._capture_screenshots = (
            capture_screenshots if capture_screenshots is not None else settings.CAPTURE_LISTING_SCREENSHOTS
        )
        self._sleep = sleep

        self._state_lock = threading.Lock()
        self._state = RunState.IDLE
        self._run = MonitoringRun()
        self._last_run: MonitoringRun | None = None
        self._stop_requested = False
        self._task: asyncio.Task[MonitoringRun] | None = None
        # URLs persisted by earlier runs in this process
        self._known_urls: set[str] = set()

    # -----------------------------------------------------------------------
    # Trigger surface
    # -----------------------------------------------------------------------

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def search_terms(self) -> list[str]:
        return list(self._search_terms)

    @staticmethod
    def _clean_terms(terms: list[str]) -> list[str]:
        cleaned = [term.strip() for term in terms if term and term.strip()]
        if not cleaned:
            raise ValueError("at least one non-blank search term is required")
        return cleaned

    def _begin(self) -> MonitoringRun:
        """Atomically move IDLE/FAILED -> RUNNING, or raise AlreadyRunning."""
        with self._state_lock:
            if self._state is RunState.RUNNING:
                raise AlreadyRunning("a monitoring run is already in progress")
            self._state = RunState.RUNNING
            self._stop_requested = False
            self._run = MonitoringRun(state=RunState.RUNNING, started_at=datetime.now(timezone.utc))
            return self._run

    def start(self) -> dict[str, Any]:
        """
        Launch a run in the background and return the status snapshot.

        Must be called from inside the event loop.

        Raises:
            AlreadyRunning: a run is in flight (state is left unchanged).
        """
        self._begin()
        self._task = asyncio.create_task(self._execute(), name="marketplace-monitor-run")
        logger.info("monitor_run_started", mode="background", terms=len(self._search_terms))
        return self.status()

    async def run_once(self) -> MonitoringRun:
        """
        Run to completion in the caller's task.

        Raises:
            AlreadyRunning: a run is in flight.
        """
        self._begin()
        logger.info("monitor_run_started", mode="foreground", terms=len(self._search_terms))
        return await self._execute()

    async def wait(self) -> MonitoringRun | None:
        """Await the background run launched by start(), if any."""
        if self._task is None:
            return self._last_run
        return await self._task

    def stop(self) -> bool:
        """
        Ask the active run to stop at the next listing or term boundary.

        An in-flight navigation or classification is allowed to finish.

        Returns:
            True if a run was active.
        """
        if self._state is not RunState.RUNNING:
            return False
        self._stop_requested = True
        logger.info("monitor_stop_requested", current_term=self._run.current_term)
        return True

    def status(self) -> dict[str, Any]:
        """Non-blocking snapshot of the current (or last) run."""
        run = self._run
        return {
            "is_running": self._state is RunState.RUNNING,
            "state": self._state.value,
            "phase": run.phase.value if run.phase else None,
            "current_term": run.current_term,
            "current_term_index": run.current_term_index,
            "completed_count": run.completed_count,
            "error_count": run.error_count,
            "started_at": run.started_at.isoformat() if run.started_at else None,
            "stop_requested": self._stop_requested,
            "search_terms": list(self._search_terms),
            "classifier_model": self._classifier.model,
            "last_error": run.last_error,
            "last_run": self._last_run.summary() if self._last_run else None,
        }

    def configure(self, search_terms: list[str] | None = None, classifier_model: str | None = None) -> dict[str, Any]:
        """
        Change search terms and/or classifier model between runs.

        Raises:
            AlreadyRunning: a run is in flight.
            ValueError: search_terms has no non-blank entries.
        """
        with self._state_lock:
            if self._state is RunState.RUNNING:
                raise AlreadyRunning("cannot reconfigure while a run is in progress")
            if search_terms is not None:
                self._search_terms = self._clean_terms(search_terms)
            if classifier_model:
                self._classifier.set_model(classifier_model.strip())

        logger.info(
            "monitor_configured",
            search_terms=self._search_terms,
            classifier_model=self._classifier.model,
        )
        return self.status()

    def get_backlog_url(self) -> str | None:
        return self._sink.get_backlog_url()

    # -----------------------------------------------------------------------
    # Run execution
    # -----------------------------------------------------------------------

    def _record_error(self, counter: str | None, error: BaseException | str) -> None:
        self._run.error_count += 1
        if counter:
            setattr(self._run, counter, getattr(self._run, counter) + 1)
        self._run.last_error = str(error)

    def _set_phase(self, phase: TermPhase) -> None:
        self._run.phase = phase

    def _finish(self, outcome: RunState) -> None:
        run = self._run
        run.state = outcome
        run.finished_at = datetime.now(timezone.utc)
        run.stopped = self._stop_requested
        self._last_run = run
        with self._state_lock:
            self._state = outcome

        log = logger.error if outcome is RunState.FAILED else logger.info
        log(
            "monitor_run_finished",
            state=outcome.value,
            completed_count=run.completed_count,
            error_count=run.error_count,
            classification_errors=run.classification_errors,
            persistence_errors=run.persistence_errors,
            term_errors=run.term_errors,
            skipped_duplicates=run.skipped_duplicates,
            stopped=run.stopped,
            last_error=run.last_error,
        )

    async def _execute(self) -> MonitoringRun:
        run = self._run
        terms = list(self._search_terms)
        seen: set[str] = set(self._known_urls)
        session: Any = None
        outcome = RunState.IDLE

        try:
            try:
                seen |= await self._sink.existing_urls()
            except PersistenceError as e:
                self._record_error("persistence_errors", e)
                logger.warning("monitor_existing_urls_unavailable", error=str(e))

            try:
                session = await self._browser.acquire()
            except SessionUnavailable as e:
                run.last_error = str(e)
                outcome = RunState.FAILED
                logger.error("monitor_session_unavailable", error=str(e))
                return run

            for index, term in enumerate(terms):
                if self._stop_requested:
                    break
                await self._process_term(session, index, term, seen)
                if index < len(terms) - 1 and not self._stop_requested and self._delay_between_terms > 0:
                    await self._sleep(self._delay_between_terms)

        except asyncio.CancelledError:
            run.last_error = "cancelled"
            outcome = RunState.FAILED
            raise
        except SessionUnavailable as e:
            run.last_error = str(e)
            outcome = RunState.FAILED
            logger.error("monitor_session_lost", error=str(e))
        except Exception as e:
            self._record_error(None, e)
            outcome = RunState.FAILED
            logger.error("monitor_run_crashed", error=str(e), error_type=type(e).__name__)
        finally:
            if session is not None:
                try:
                    await self._browser.release(session)
                except Exception as e:
                    logger.warning("monitor_session_release_failed", error=str(e))
            self._finish(outcome)

        return run

    async def _process_term(self, session: Any, index: int, term: str, seen: set[str]) -> None:
        run = self._run
        run.current_term_index = index
        run.current_term = term
        log = logger.bind(search_term=term, term_index=index)

        try:
            self._set_phase(TermPhase.NAVIGATING)
            await self._browser.navigate(session, build_search_url(term))
            if await self._browser.is_blocked(session):
                raise BlockedError(f"search page blocked for {term!r}")

            self._set_phase(TermPhase.SCROLLING)
            await self._browser.human_like_scroll(session)

            self._set_phase(TermPhase.EXTRACTING)
            html = await self._browser.page_content(session)
            listings = self._extractor.extract(html, term)
        except SessionUnavailable:
            raise
        except BlockedError as e:
            run.blocked_terms.append(term)
            self._record_error("term_errors", e)
            log.warning("monitor_term_blocked")
            return
        except NavigationError as e:
            self._record_error("term_errors", e)
            log.warning("monitor_term_navigation_failed", error=str(e))
            return
        except Exception as e:
            self._record_error("term_errors", e)
            log.error("monitor_term_extraction_failed", error=str(e), error_type=type(e).__name__)
            return

        run.listings_found += len(listings)
        log.info("monitor_term_extracted", listing_count=len(listings))

        for raw in listings:
            if self._stop_requested:
                log.info("monitor_stopping_mid_term")
                break
            if raw.url in seen:
                run.skipped_duplicates += 1
                continue
            try:
                await self._process_listing(session, raw, seen)
            except SessionUnavailable:
                raise
            except Exception as e:
                self._record_error("listing_errors", e)
                log.error("monitor_listing_failed", url=raw.url, error=str(e), error_type=type(e).__name__)

        self._set_phase(TermPhase.NEXT_TERM)

    async def _capture_screenshot(self, session: Any, raw: RawListing) -> str | None:
        """Open the listing page and screenshot it; None if that fails."""
        try:
            await self._browser.navigate(session, raw.url)
        except NavigationError as e:
            self._record_error("listing_errors", e)
            logger.warning("monitor_listing_page_failed", url=raw.url, error=str(e))
            return None
        await self._browser.expand_description(session)
        return await self._browser.take_screenshot(session) or None

    async def _classify(self, raw: RawListing, screenshot: str | None) -> ClassifiedListing:
        """Classify with a bounded wait; fall back to raw fields on any failure."""
        try:
            result = await asyncio.wait_for(
                self._classifier.classify(raw.text_context(), screenshot),
                timeout=self._classify_timeout,
            )
            return ClassifiedListing.from_result(raw, result)
        except asyncio.TimeoutError:
            error: Exception = ClassificationTimeout(f"no classification within {self._classify_timeout}s")
        except ClassificationError as e:
            error = e
        except Exception as e:
            error = ClassificationError(f"{type(e).__name__}: {e}")

        self._record_error("classification_errors", error)
        logger.warning(
            "monitor_classification_failed",
            url=raw.url,
            error=str(error),
            timeout=isinstance(error, ClassificationTimeout),
        )
        return ClassifiedListing.from_result(raw, heuristic_classify(raw, confidence=0.0))

    async def _validate_price(self, listing: ClassifiedListing) -> ClassifiedListing:
        if self._price_validator is None:
            return listing
        # Same precedence as the stored record: card price text, then classifier price
        price = parse_price(listing.raw.raw_price_text)
        if price is None:
            price = listing.price
        try:
            check = await self._price_validator.validate_price(listing.item_name, price)
        except Exception as e:
            self._record_error("listing_errors", e)
            logger.warning("monitor_price_validation_failed", url=listing.raw.url, error=str(e))
            return listing
        if check is None:
            return listing
        return listing.model_copy(update={
            "ebay_median_price": check.median_price,
            "ebay_price_flagged": check.flagged,
        })

    async def _process_listing(self, session: Any, raw: RawListing, seen: set[str]) -> None:
        screenshot = raw.screenshot_b64
        if screenshot is None and self._capture_screenshots:
            screenshot = await self._capture_screenshot(session, raw)
            if screenshot:
                raw = raw.model_copy(update={"screenshot_b64": screenshot})

        self._set_phase(TermPhase.CLASSIFYING)
        classified = await self._classify(raw, screenshot)
        classified = await self._validate_price(classified)

        self._set_phase(TermPhase.PERSISTING)
        record = PersistedListing.from_classified(classified)
        try:
            await self._sink.append(record)
        except PersistenceError as e:
            self._record_error("persistence_errors", e)
            logger.error("monitor_persist_failed", url=record.marketplace_url, error=str(e))
            return

        seen.add(raw.url)
        self._known_urls.add(raw.url)
        self._run.completed_count += 1
        logger.info(
            "monitor_listing_persisted",
            url=record.marketplace_url,
            item_name=record.item_name,
            product_type=record.product_type,
            price=str(record.price) if record.price is not None else None,
            confidence=record.confidence,
            needs_review=record.needs_review,
        )
