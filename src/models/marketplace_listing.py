"""
TCG Marketplace Monitor — Marketplace Listing Model

SQL mirror of the review spreadsheet. One row per marketplace URL; rows are
inserted once and never updated.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import BOOLEAN, DECIMAL, FLOAT, INTEGER, TIMESTAMP, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base


class MarketplaceListing(Base):
    """A persisted marketplace listing. marketplace_url is unique."""

    __tablename__ = "marketplace_listings"

    id: Mapped[int] = mapped_column(INTEGER, primary_key=True, autoincrement=True)
    marketplace_url: Mapped[str] = mapped_column(
        String, unique=True, nullable=False, comment="Normalised listing URL (natural key)"
    )
    item_name: Mapped[str] = mapped_column(String, nullable=False)
    set_name: Mapped[str | None] = mapped_column(String, nullable=True)
    product_type: Mapped[str] = mapped_column(String, nullable=False, server_default="OTHER")
    price: Mapped[Decimal | None] = mapped_column(
        DECIMAL(10, 2), nullable=True, comment="NULL when the listing price could not be parsed"
    )
    quantity: Mapped[int] = mapped_column(INTEGER, nullable=False, server_default="1")
    location: Mapped[str | None] = mapped_column(String, nullable=True)
    language: Mapped[str] = mapped_column(String, nullable=False, server_default="English")
    condition: Mapped[str | None] = mapped_column(String, nullable=True)
    confidence: Mapped[float] = mapped_column(FLOAT, nullable=False, server_default="0")
    needs_review: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, server_default="true")
    status: Mapped[str] = mapped_column(String, nullable=False, server_default="Available")
    source: Mapped[str] = mapped_column(String, nullable=False)
    search_term: Mapped[str | None] = mapped_column(String, nullable=True)
    ebay_median_price: Mapped[Decimal | None] = mapped_column(DECIMAL(10, 2), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    date_found: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), server_default=func.now())

    def __repr__(self) -> str:
        return (
            f"<MarketplaceListing url={self.marketplace_url!r} item={self.item_name!r} "
            f"price={self.price!r} status={self.status!r}>"
        )
