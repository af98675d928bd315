"""
TCG Marketplace Monitor — eBay Browse API Client

Cross-market price validation for classified listings. Looks up comparable
fixed-price eBay listings for the classified item name and compares the
marketplace price with their median.

Authentication: OAuth2 Client Credentials flow, token cached with expiry.
Every failure degrades to "no comparison" (None); validation never fails a
listing.
"""

from __future__ import annotations

import base64
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from statistics import median
from typing import Any

import httpx
import structlog

from src.config import settings

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Module-level token cache
# ---------------------------------------------------------------------------
_TOKEN_CACHE: dict[str, Any] = {
    "access_token": None,
    "expires_at": datetime.min.replace(tzinfo=timezone.utc),
}

# ---------------------------------------------------------------------------
# Comparable filtering
# ---------------------------------------------------------------------------
_MULTI_QUANTITY_RE = re.compile(
    r"\bset of \d+|\b\d+\s*-?pack\b|\blot of \d+|\b\d+\s*x\b|\bx\d+\b", re.IGNORECASE
)
MULTI_QUANTITY_KEYWORDS = (
    "bundle", "pack of", "display", "case of", "box of", "bulk", "multiple", "combo", "package deal",
)
POKEMON_CENTER_KEYWORDS = (
    "pokemon center", "pokemon centre", "pokémon center", "pokémon centre", "pokemon-center",
    " pc etb", " pc elite", "center edition",
)


def is_multiple_quantity_listing(title: str | None, query: str = "") -> bool:
    """True for lots and multi-packs, unless the query itself asks for one."""
    if not title:
        return False
    lowered = title.lower()
    if _MULTI_QUANTITY_RE.search(lowered):
        return True
    return any(keyword in lowered and keyword not in query.lower() for keyword in MULTI_QUANTITY_KEYWORDS)


def is_pokemon_center_listing(title: str | None) -> bool:
    """Pokemon Center exclusives sell at a premium and skew the median."""
    if not title:
        return False
    lowered = f" {title.lower()}"
    return any(keyword in lowered for keyword in POKEMON_CENTER_KEYWORDS)


def price_discrepancy_pct(a: Decimal, b: Decimal) -> Decimal:
    """Absolute difference as a percentage of the lower price."""
    lower = min(a, b)
    if lower <= 0:
        return Decimal("100")
    return (abs(a - b) / lower * 100).quantize(Decimal("0.1"))


@dataclass(frozen=True)
class EbayPriceCheck:
    """Outcome of comparing one marketplace price with eBay."""
    median_price: Decimal
    sample_size: int
    discrepancy_pct: Decimal | None
    flagged: bool


class eBayClient:
    """
    eBay Browse API client for cross-market price validation.

    OAuth2 Client Credentials flow using EBAY_APP_ID + EBAY_CERT_ID.
    Token is cached in module-level dict until expiry (typically 2 hours).

    Usage:
        async with eBayClient() as client:
            check = await client.validate_price("Evolving Skies ETB", Decimal("165.00"))
    """

    def __init__(self) -> None:
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "eBayClient":
        self._client = httpx.AsyncClient(timeout=15.0)
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def configured(self) -> bool:
        return bool(settings.EBAY_APP_ID and settings.EBAY_CERT_ID)

    async def _get_access_token(self) -> str:
        """
        OAuth2 Client Credentials flow using EBAY_APP_ID + EBAY_CERT_ID.

        Caches token until expiry (with 60-second safety margin) to avoid
        hammering the auth endpoint. Returns empty string if credentials
        are not configured.
        """
        if not self.configured:
            return ""

        now = datetime.now(timezone.utc)
        if _TOKEN_CACHE["access_token"] and now < _TOKEN_CACHE["expires_at"]:
            return str(_TOKEN_CACHE["access_token"])

        if not self._client:
            return ""

        # Basic auth: base64(APP_ID:CERT_ID)
        credentials = f"{settings.EBAY_APP_ID}:{settings.EBAY_CERT_ID}"
        encoded = base64.b64encode(credentials.encode()).decode()

        try:
            response = await self._client.post(
                settings.EBAY_OAUTH_URL,
                headers={
                    "Authorization": f"Basic {encoded}",
                    "Content-Type": "application/x-www-form-urlencoded",
                },
                data={
                    "grant_type": "client_credentials",
                    "scope": "https://api.ebay.com/oauth/api_scope",
                },
            )
            response.raise_for_status()
            data = response.json()

            token = data.get("access_token", "")
            expires_in = int(data.get("expires_in", 7200))

            # Cache with 60-second safety margin before real expiry
            _TOKEN_CACHE["access_token"] = token
            _TOKEN_CACHE["expires_at"] = now + timedelta(seconds=expires_in - 60)

            logger.info("ebay_token_refreshed", expires_in=expires_in, source="ebay")
            return token

        except (httpx.HTTPError, ValueError) as e:
            logger.error("ebay_token_fetch_failed", error=str(e), source="ebay")
            return ""

    async def search_listings(self, query: str, limit: int = 20) -> list[dict[str, Any]]:
        """
        Search fixed-price eBay listings.

        GET /buy/browse/v1/item_summary/search
            ?q={query}&filter=buyingOptions:{FIXED_PRICE}&limit={limit}

        Lots, multi-packs, Pokemon Center exclusives, and (unless the query
        mentions PSA) graded slabs are dropped as non-comparable.

        Returns:
            List of {item_id, title, price_usd, condition, listing_url}.
            [] on any error or missing credentials.
        """
        if not self._client:
            return []

        token = await self._get_access_token()
        if not token:
            logger.warning("ebay_search_skipped_no_token", query=query, source="ebay")
            return []

        try:
            response = await self._client.get(
                f"{settings.EBAY_BROWSE_URL}/item_summary/search",
                headers={"Authorization": f"Bearer {token}"},
                params={
                    "q": query,
                    "filter": "buyingOptions:{FIXED_PRICE}",
                    "limit": str(limit),
                },
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("ebay_search_failed", query=query, error=str(e), source="ebay")
            return []

        wants_graded = "psa" in query.lower()
        results: list[dict[str, Any]] = []

        for item in data.get("itemSummaries", []):
            title = item.get("title", "")
            if not wants_graded and "psa" in title.lower():
                continue
            if is_multiple_quantity_listing(title, query) or is_pokemon_center_listing(title):
                continue

            price_value = (item.get("price") or {}).get("value")
            try:
                price_usd = Decimal(str(price_value)) if price_value is not None else None
            except (InvalidOperation, TypeError):
                price_usd = None

            results.append({
                "item_id": item.get("itemId", ""),
                "title": title,
                "price_usd": price_usd,
                "condition": item.get("condition"),
                "listing_url": item.get("itemWebUrl", ""),
            })

        logger.info("ebay_search_complete", query=query, result_count=len(results), source="ebay")
        return results

    async def get_market_price(self, query: str) -> tuple[Decimal, int] | None:
        """
        Median price of comparable listings.

        Returns:
            (median, sample_size), or None if no priced comparables were found.
        """
        listings = await self.search_listings(query)
        prices = [listing["price_usd"] for listing in listings if listing.get("price_usd") is not None]

        if not prices:
            logger.debug("ebay_no_prices_found", query=query, source="ebay")
            return None

        median_price = Decimal(str(median([float(p) for p in prices]))).quantize(Decimal("0.01"))
        logger.info(
            "ebay_market_price_calculated",
            query=query,
            median_price=str(median_price),
            sample_size=len(prices),
            source="ebay",
        )
        return median_price, len(prices)

    async def validate_price(self, item_name: str, price: Decimal | None) -> EbayPriceCheck | None:
        """
        Compare a marketplace price with the eBay median.

        Args:
            item_name: Classified item name, used as the search query.
            price: Marketplace price, or None when it could not be parsed.

        Returns:
            EbayPriceCheck, flagged when the discrepancy exceeds
            EBAY_MAX_DISCREPANCY_PCT; None when there is nothing to compare.
        """
        if not item_name or item_name == "Unknown Item":
            return None

        market = await self.get_market_price(item_name)
        if market is None:
            return None
        median_price, sample_size = market

        if price is None or price <= 0:
            return EbayPriceCheck(median_price, sample_size, None, False)

        discrepancy = price_discrepancy_pct(price, median_price)
        flagged = discrepancy > settings.EBAY_MAX_DISCREPANCY_PCT
        if flagged:
            logger.info(
                "ebay_price_discrepancy",
                item_name=item_name,
                listing_price=str(price),
                median_price=str(median_price),
                discrepancy_pct=str(discrepancy),
                source="ebay",
            )
        return EbayPriceCheck(median_price, sample_size, discrepancy, flagged)
