"""
TCG Marketplace Monitor — SQL Mirror Sink

Mirrors persisted listings into the marketplace_listings table with
INSERT ... ON CONFLICT (marketplace_url) DO NOTHING, so the unique URL
constraint backs the in-memory de-duplication.
"""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.models.marketplace_listing import MarketplaceListing
from src.pipeline.errors import PersistenceError
from src.sinks import PersistedListing

logger = structlog.get_logger(__name__)


class DatabaseSink:
    """ListingSink backed by an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @staticmethod
    def _values(record: PersistedListing) -> dict[str, Any]:
        return {
            "marketplace_url": record.marketplace_url,
            "item_name": record.item_name,
            "set_name": record.set_name,
            "product_type": record.product_type,
            "price": record.price,
            "quantity": record.quantity,
            "location": record.location,
            "language": record.language,
            "condition": record.condition,
            "confidence": record.confidence,
            "needs_review": record.needs_review,
            "status": record.status.value,
            "source": record.source,
            "search_term": record.search_term,
            "ebay_median_price": record.ebay_median_price,
            "notes": record.notes,
            "date_found": record.date_found,
        }

    async def append(self, record: PersistedListing) -> None:
        """
        Insert a listing unless its URL is already stored.

        Raises:
            PersistenceError: database unreachable or the insert failed.
        """
        try:
            async with self._session_factory() as session:
                dialect = session.bind.dialect.name if session.bind is not None else "postgresql"
                insert = sqlite.insert if dialect == "sqlite" else postgresql.insert
                stmt = (
                    insert(MarketplaceListing)
                    .values(**self._values(record))
                    .on_conflict_do_nothing(index_elements=["marketplace_url"])
                )
                result = await session.execute(stmt)
                await session.commit()
        except (SQLAlchemyError, OSError) as e:
            logger.error(
                "database_append_failed",
                marketplace_url=record.marketplace_url,
                error=str(e),
                error_type=type(e).__name__,
                source="database_sink",
            )
            raise PersistenceError(f"database insert failed: {e}") from e

        if result.rowcount == 0:
            logger.debug("database_duplicate_skipped", marketplace_url=record.marketplace_url, source="database_sink")
        else:
            logger.debug("database_row_inserted", marketplace_url=record.marketplace_url, source="database_sink")

    async def existing_urls(self) -> set[str]:
        try:
            async with self._session_factory() as session:
                rows = await session.execute(select(MarketplaceListing.marketplace_url))
                return {url for (url,) in rows.all()}
        except (SQLAlchemyError, OSError) as e:
            raise PersistenceError(f"database read failed: {e}") from e

    def get_backlog_url(self) -> str | None:
        return None
