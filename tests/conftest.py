"""
TCG Marketplace Monitor — Shared pytest Fixtures & Configuration

Provides common fixtures for all test modules:
- In-memory database session factory (aiosqlite)
- Fake browser, classifier and sink capability objects
- Search-results HTML builder
- Async test support via pytest-asyncio
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, AsyncGenerator
from urllib.parse import parse_qs, urlsplit

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from src.classifier import ClassificationResult, ClassifiedItem, ProductType
from src.models.base import Base
from src.pipeline.errors import ClassificationError, NavigationError, PersistenceError, SessionUnavailable
from src.sinks import PersistedListing


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

pytest_plugins = ("pytest_asyncio",)


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Use asyncio backend for anyio tests."""
    return "asyncio"


# ---------------------------------------------------------------------------
# Database Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def db_session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """
    Session factory over aiosqlite in-memory.

    Creates a fresh database for each test, ensuring isolation. A single
    shared connection keeps the in-memory database alive across sessions.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


# ---------------------------------------------------------------------------
# HTML Builders
# ---------------------------------------------------------------------------


def card_html(item_id: str, title: str, price: str | None = "$165", location: str | None = "Austin, TX") -> str:
    """One marketplace result card as it appears in the search grid."""
    spans = [f"<span>{part}</span>" for part in (price, title, location) if part]
    return f'<a href="/marketplace/item/{item_id}/?ref=search&referral_code=null">{"".join(spans)}</a>'


def search_page_html(cards: list[str]) -> str:
    """Wrap cards in a minimal search-results page."""
    return (
        "<html><head><title>Marketplace</title></head><body>"
        f"<div role=\"main\"><div>{''.join(cards)}</div></div>"
        "</body></html>"
    )


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeBrowser:
    """
    In-memory BrowserSessionManager.

    pages maps a search query to the HTML served for it. Each query not in
    pages gets listings_per_term generated cards with term-unique ids.
    """

    def __init__(
        self,
        pages: dict[str, str] | None = None,
        listings_per_term: int = 2,
        fail_acquire: bool = False,
        blocked_terms: set[str] | None = None,
        failing_terms: set[str] | None = None,
        navigate_delay: float = 0.0,
    ) -> None:
        self.pages = pages or {}
        self.listings_per_term = listings_per_term
        self.fail_acquire = fail_acquire
        self.blocked_terms = blocked_terms or set()
        self.failing_terms = failing_terms or set()
        self.navigate_delay = navigate_delay
        self.acquire_calls = 0
        self.release_calls = 0
        self.navigated: list[str] = []
        self.screenshots_taken = 0
        self._current_term: str | None = None

    async def acquire(self) -> dict[str, Any]:
        self.acquire_calls += 1
        if self.fail_acquire:
            raise SessionUnavailable("no browser available")
        return {"id": self.acquire_calls}

    async def navigate(self, session: Any, url: str) -> None:
        self.navigated.append(url)
        if self.navigate_delay:
            await asyncio.sleep(self.navigate_delay)
        query = parse_qs(urlsplit(url).query).get("query")
        if query:
            self._current_term = query[0]
            if self._current_term in self.failing_terms:
                raise NavigationError(url, "timeout")

    async def human_like_scroll(self, session: Any) -> None:
        return None

    async def take_screenshot(self, session: Any) -> str:
        self.screenshots_taken += 1
        return "aGVsbG8="

    async def is_blocked(self, session: Any) -> bool:
        return self._current_term in self.blocked_terms

    async def page_content(self, session: Any) -> str:
        term = self._current_term or ""
        if term in self.pages:
            return self.pages[term]
        slug = term.replace(" ", "-")
        cards = [
            card_html(f"{slug}-{i}", f"{term.title()} listing {i}", price=f"${100 + i}")
            for i in range(self.listings_per_term)
        ]
        return search_page_html(cards)

    async def expand_description(self, session: Any) -> None:
        return None

    async def release(self, session: Any) -> None:
        self.release_calls += 1


class FakeClassifier:
    """ListingClassifier that answers instantly, or fails on demand."""

    def __init__(self, fail: bool = False, delay: float = 0.0, confidence: float | None = 0.9) -> None:
        self.fail = fail
        self.delay = delay
        self.confidence = confidence
        self.calls: list[tuple[str, str | None]] = []
        self._model = "fake-vl-model"

    @property
    def model(self) -> str:
        return self._model

    def set_model(self, model: str) -> None:
        self._model = model

    async def classify(self, text_context: str, image_context: str | None = None) -> ClassificationResult:
        self.calls.append((text_context, image_context))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ClassificationError("classifier offline")
        title = text_context.splitlines()[0].removeprefix("Title: ")
        return ClassificationResult(
            items=[ClassifiedItem(item_name=title, set_name="Evolving Skies", product_type=ProductType.ETB)],
            confidence=self.confidence,
            source="fake",
            model=self._model,
        )


class FakeSink:
    """ListingSink that keeps appended records in a list."""

    def __init__(self, existing: set[str] | None = None, fail_urls: set[str] | None = None, fail_all: bool = False) -> None:
        self.records: list[PersistedListing] = []
        self.existing = set(existing or set())
        self.fail_urls = fail_urls or set()
        self.fail_all = fail_all

    async def append(self, record: PersistedListing) -> None:
        if self.fail_all or record.marketplace_url in self.fail_urls:
            raise PersistenceError("sheet unavailable")
        self.records.append(record)

    async def existing_urls(self) -> set[str]:
        return set(self.existing)

    def get_backlog_url(self) -> str | None:
        return "https://docs.google.com/spreadsheets/d/test-sheet/edit"

    @property
    def urls(self) -> list[str]:
        return [record.marketplace_url for record in self.records]


# ---------------------------------------------------------------------------
# Utility Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_browser() -> FakeBrowser:
    return FakeBrowser()


@pytest.fixture
def fake_classifier() -> FakeClassifier:
    return FakeClassifier()


@pytest.fixture
def fake_sink() -> FakeSink:
    return FakeSink()


@pytest.fixture
def now() -> datetime:
    """Current timestamp for tests."""
    return datetime.now(timezone.utc)
