"""
TCG Marketplace Monitor — Persistence Gateway

Append-only sinks for finished listings. A record is written once and never
updated; a listing that has sold is stored with status Unavailable rather
than removed.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Protocol

import structlog
from pydantic import BaseModel, Field, field_validator

from src.classifier import ClassifiedListing
from src.config import settings
from src.pipeline.errors import PersistenceError
from src.utils.price import parse_price
from src.utils.urls import clean_marketplace_url

logger = structlog.get_logger(__name__)

__all__ = ["FanOutSink", "ListingSink", "ListingStatus", "PersistedListing", "PersistenceError"]

_UNAVAILABLE_RE = re.compile(r"\b(?:sold|pending)\b", re.IGNORECASE)


class ListingStatus(str, Enum):
    AVAILABLE = "Available"
    UNAVAILABLE = "Unavailable"


class PersistedListing(BaseModel):
    """Final record handed to a sink. marketplace_url is the natural key."""
    item_name: str
    set_name: str | None = None
    product_type: str = "OTHER"
    price: Decimal | None = None  # None marks an unparseable price
    quantity: int = 1
    location: str | None = None
    marketplace_url: str
    date_found: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    source: str = "Facebook Marketplace"
    status: ListingStatus = ListingStatus.AVAILABLE
    language: str = "English"
    condition: str | None = None
    price_unit: str | None = None
    main_listing_price: Decimal | None = None
    has_multiple_items: bool = False
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    needs_review: bool = True
    notes: str | None = None
    search_term: str = ""
    ebay_median_price: Decimal | None = None

    @field_validator("price")
    @classmethod
    def non_negative(cls, v: Decimal | None) -> Decimal | None:
        if v is not None and v < 0:
            return None
        return v

    @field_validator("marketplace_url")
    @classmethod
    def well_formed_url(cls, v: str) -> str:
        cleaned = clean_marketplace_url(v)
        if cleaned is None:
            raise ValueError(f"not a marketplace listing URL: {v!r}")
        return cleaned

    @property
    def price_valid(self) -> bool:
        return self.price is not None

    @classmethod
    def from_classified(cls, listing: ClassifiedListing, date_found: datetime | None = None) -> PersistedListing:
        """
        Flatten a classified listing into a sink record.

        Price comes from the card's price text; the classifier's item price is
        used only when that text is missing or unparseable.
        """
        raw = listing.raw
        price = parse_price(raw.raw_price_text)
        if price is None:
            price = listing.price

        status_text = " ".join(part for part in (raw.raw_title, raw.seller_text or "") if part)
        status = ListingStatus.UNAVAILABLE if _UNAVAILABLE_RE.search(status_text) else ListingStatus.AVAILABLE

        notes = listing.notes
        if listing.ebay_price_flagged and listing.ebay_median_price is not None:
            flag = f"Price differs from eBay median ${listing.ebay_median_price}"
            notes = f"{notes} | {flag}" if notes else flag

        return cls(
            item_name=listing.item_name,
            set_name=listing.set_name,
            product_type=listing.product_type.value,
            price=price,
            quantity=listing.quantity,
            location=listing.location or raw.raw_location_text,
            marketplace_url=raw.url,
            date_found=date_found or raw.extracted_at,
            source=settings.LISTING_SOURCE_TAG,
            status=status,
            language=listing.language,
            condition=listing.condition,
            price_unit=listing.price_unit,
            main_listing_price=listing.main_listing_price,
            has_multiple_items=listing.has_multiple_items,
            confidence=listing.confidence,
            needs_review=listing.needs_review,
            notes=notes,
            search_term=raw.search_term,
            ebay_median_price=listing.ebay_median_price,
        )


class ListingSink(Protocol):
    """Append-only storage target."""

    async def append(self, record: PersistedListing) -> None: ...

    async def existing_urls(self) -> set[str]: ...

    def get_backlog_url(self) -> str | None: ...


class FanOutSink:
    """
    Writes to a primary sink and best-effort mirrors.

    Only the primary decides success: its PersistenceError propagates, mirror
    failures of any kind are logged and swallowed.
    """

    def __init__(self, primary: ListingSink, mirrors: list[ListingSink] | None = None) -> None:
        self._primary = primary
        self._mirrors = mirrors or []

    async def append(self, record: PersistedListing) -> None:
        await self._primary.append(record)
        for mirror in self._mirrors:
            try:
                await mirror.append(record)
            except Exception as e:
                logger.warning(
                    "sink_mirror_append_failed",
                    mirror=type(mirror).__name__,
                    marketplace_url=record.marketplace_url,
                    error=str(e),
                    error_type=type(e).__name__,
                    source="sinks",
                )

    async def existing_urls(self) -> set[str]:
        return await self._primary.existing_urls()

    def get_backlog_url(self) -> str | None:
        return self._primary.get_backlog_url()
