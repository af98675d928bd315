"""
TCG Marketplace Monitor — Listing Extractor

Turns a search-results HTML snapshot into RawListing records.

Marketplace markup is obfuscated and changes often, so extraction is
text-based: every anchor pointing at /marketplace/item/ is a candidate card,
and the card's visible text lines are sorted into price, title, and location
by shape rather than by class name.
"""

from __future__ import annotations

import re

import structlog
from bs4 import BeautifulSoup, Tag

from src.config import settings
from src.scraper import RawListing
from src.utils.price import clean_text, looks_like_price
from src.utils.urls import LISTING_PATH_MARKER, clean_marketplace_url

logger = structlog.get_logger(__name__)

# Full region names accepted after the comma besides two-letter codes
REGION_NAMES = (
    "Alabama|Alaska|Arizona|Arkansas|California|Colorado|Connecticut|Delaware|Florida|Georgia|Hawaii|Idaho|"
    "Illinois|Indiana|Iowa|Kansas|Kentucky|Louisiana|Maine|Maryland|Massachusetts|Michigan|Minnesota|"
    "Mississippi|Missouri|Montana|Nebraska|Nevada|New Hampshire|New Jersey|New Mexico|New York|"
    "North Carolina|North Dakota|Ohio|Oklahoma|Oregon|Pennsylvania|Rhode Island|South Carolina|"
    "South Dakota|Tennessee|Texas|Utah|Vermont|Virginia|Washington|West Virginia|Wisconsin|Wyoming|"
    "Alberta|British Columbia|Manitoba|New Brunswick|Newfoundland and Labrador|Nova Scotia|Ontario|"
    "Quebec|Saskatchewan"
)

# "Austin, TX" / "Saint-Laurent, QC" / "Portland, Oregon", but not "Evolving Skies ETB, sealed"
LOCATION_RE = re.compile(rf"^[A-Za-z][A-Za-z .'\-]+,\s*(?:[A-Z]{{2}}|{REGION_NAMES})$")
DISTANCE_RE = re.compile(r"\b\d+(?:\.\d+)?\s?(?:mi|km|miles)\b(?:\s+away)?", re.IGNORECASE)

# Card containers seen across markup revisions, most specific first
CARD_SELECTORS = [
    "[data-testid='marketplace-item']",
    "div[data-testid='marketplace_feed'] a",
    "div[role='main'] a[href*='/marketplace/item/']",
    "a[href*='/marketplace/item/']",
]


def _card_lines(anchor: Tag) -> list[str]:
    lines = [clean_text(s) for s in anchor.get_text("\n").split("\n")]
    lines = [line for line in lines if line]
    if lines:
        return lines

    # Image-only anchors: fall back to accessible names
    label = clean_text(anchor.get("aria-label"))
    if label:
        return [label]
    img = anchor.find("img")
    if isinstance(img, Tag):
        alt = clean_text(img.get("alt"))
        if alt:
            return [alt]
    return []


def split_card_lines(lines: list[str]) -> dict[str, str | None]:
    """
    Sort a card's text lines into listing fields.

    The first price-shaped line is the price (a second one is usually the
    struck-through original price). The last "City, ST" line is the location,
    since cards put it below the title and titles can contain commas. The
    longest remaining line is the title; anything else is kept as detail text.
    """
    price: str | None = None
    rest: list[str] = []
    location_index: int | None = None

    for line in lines:
        if looks_like_price(line):
            if price is None:
                price = line
            continue
        if LOCATION_RE.match(line) or DISTANCE_RE.search(line):
            location_index = len(rest)
        rest.append(line)

    # A lone line is the title even if it happens to contain a comma
    location = rest.pop(location_index) if location_index is not None and len(rest) > 1 else None
    title = max(rest, key=len) if rest else ""
    details = list(rest)
    if title:
        details.remove(title)
    return {
        "title": title,
        "price": price,
        "location": location,
        "details": " | ".join(details) or None,
    }


class ListingExtractor:
    """
    Best-effort HTML -> RawListing extraction.

    Output preserves page order, holds at most one record per normalised URL,
    and is capped at max_listings. Cards missing price or location are still
    emitted (RawListing.is_incomplete reports them).
    """

    def __init__(self, max_listings: int | None = None, base_url: str | None = None) -> None:
        self._max_listings = max_listings if max_listings is not None else settings.MAX_LISTINGS_PER_SEARCH
        self._base_url = base_url

    def _candidate_anchors(self, soup: BeautifulSoup) -> list[Tag]:
        seen: set[int] = set()
        anchors: list[Tag] = []
        for selector in CARD_SELECTORS:
            for node in soup.select(selector):
                anchor = node if node.name == "a" else node.find("a", href=re.compile(re.escape(LISTING_PATH_MARKER)))
                if not isinstance(anchor, Tag) or id(anchor) in seen:
                    continue
                seen.add(id(anchor))
                anchors.append(anchor)
        # Document order regardless of which selector matched first
        order = {id(tag): i for i, tag in enumerate(soup.find_all("a"))}
        anchors.sort(key=lambda tag: order.get(id(tag), len(order)))
        return anchors

    def extract(self, html: str, search_term: str = "") -> list[RawListing]:
        """
        Parse a search-results snapshot.

        Args:
            html: Page HTML from the browser.
            search_term: Query that produced the page, carried on each record.

        Returns:
            Ordered, de-duplicated RawListing records.
        """
        if not html:
            return []

        soup = BeautifulSoup(html, "html.parser")
        listings: list[RawListing] = []
        seen_urls: set[str] = set()
        skipped = 0

        for anchor in self._candidate_anchors(soup):
            if len(listings) >= self._max_listings:
                break

            url = clean_marketplace_url(anchor.get("href"), self._base_url)
            if url is None:
                skipped += 1
                continue
            if url in seen_urls:
                continue
            seen_urls.add(url)

            fields = split_card_lines(_card_lines(anchor))
            listing = RawListing(
                url=url,
                raw_title=fields["title"] or "",
                raw_price_text=fields["price"],
                raw_location_text=fields["location"],
                seller_text=fields["details"],
                search_term=search_term,
            )
            if listing.is_incomplete:
                logger.debug("extractor_listing_incomplete", url=url, source="extractor")
            listings.append(listing)

        logger.info(
            "extractor_complete",
            search_term=search_term,
            listing_count=len(listings),
            skipped_anchors=skipped,
            source="extractor",
        )
        return listings
