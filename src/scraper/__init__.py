"""TCG Marketplace Monitor — Scraper Layer"""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, Field


class RawListing(BaseModel):
    """One listing card as extracted from a marketplace search page."""
    url: str  # normalised, de-duplication key
    raw_title: str = ""
    raw_price_text: str | None = None
    raw_location_text: str | None = None
    seller_text: str | None = None
    screenshot_b64: str | None = None
    search_term: str = ""
    extracted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_incomplete(self) -> bool:
        """Price or location could not be read from the card."""
        return not self.raw_price_text or not self.raw_location_text

    def text_context(self) -> str:
        """Plain-text summary handed to the classifier alongside the screenshot."""
        lines = [f"Title: {self.raw_title or 'unknown'}"]
        if self.raw_price_text:
            lines.append(f"Price: {self.raw_price_text}")
        if self.raw_location_text:
            lines.append(f"Location: {self.raw_location_text}")
        if self.seller_text:
            lines.append(f"Details: {self.seller_text}")
        lines.append(f"URL: {self.url}")
        return "\n".join(lines)
