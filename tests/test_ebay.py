"""Tests for the eBay Browse API client used for cross-market price validation."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import httpx
import pytest
import respx

import src.pipeline.ebay as ebay_module
from src.pipeline.ebay import (
    eBayClient,
    is_multiple_quantity_listing,
    is_pokemon_center_listing,
    price_discrepancy_pct,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

OAUTH_URL = "https://api.ebay.com/identity/v1/oauth2/token"
BROWSE_URL = "https://api.ebay.com/buy/browse/v1/item_summary/search"

MOCK_TOKEN_RESPONSE = {
    "access_token": "test-access-token-abc123",
    "expires_in": 7200,
    "token_type": "Application Access Token",
}

MOCK_SEARCH_RESPONSE = {
    "itemSummaries": [
        {
            "itemId": "v1|123|0",
            "title": "Pokemon Evolving Skies Elite Trainer Box Sealed",
            "price": {"value": "150.00", "currency": "USD"},
            "condition": "New",
            "itemWebUrl": "https://www.ebay.com/itm/123",
        },
        {
            "itemId": "v1|124|0",
            "title": "Evolving Skies ETB Factory Sealed",
            "price": {"value": "160.00", "currency": "USD"},
            "condition": "New",
            "itemWebUrl": "https://www.ebay.com/itm/124",
        },
        {
            "itemId": "v1|125|0",
            "title": "Evolving Skies ETB NEW",
            "price": {"value": "170.00", "currency": "USD"},
            "condition": "New",
            "itemWebUrl": "https://www.ebay.com/itm/125",
        },
        {
            "itemId": "v1|126|0",
            "title": "Lot of 3 Evolving Skies ETB",
            "price": {"value": "480.00", "currency": "USD"},
            "condition": "New",
            "itemWebUrl": "https://www.ebay.com/itm/126",
        },
        {
            "itemId": "v1|127|0",
            "title": "Pokemon Center Evolving Skies ETB",
            "price": {"value": "400.00", "currency": "USD"},
            "condition": "New",
            "itemWebUrl": "https://www.ebay.com/itm/127",
        },
        {
            "itemId": "v1|128|0",
            "title": "Evolving Skies ETB promo PSA 10",
            "price": {"value": "90.00", "currency": "USD"},
            "condition": "Graded",
            "itemWebUrl": "https://www.ebay.com/itm/128",
        },
    ],
    "total": 6,
}


def _reset_token_cache() -> None:
    """Reset module-level token cache between tests."""
    ebay_module._TOKEN_CACHE["access_token"] = None
    ebay_module._TOKEN_CACHE["expires_at"] = datetime.min.replace(tzinfo=timezone.utc)


def _credentials():
    return patch.multiple(ebay_module.settings, EBAY_APP_ID="app", EBAY_CERT_ID="cert")


# ---------------------------------------------------------------------------
# Comparable filters
# ---------------------------------------------------------------------------


class TestComparableFilters:
    @pytest.mark.parametrize(
        "title",
        ["Lot of 3 Crown Zenith ETB", "Booster pack 5-pack", "ETB x2", "Bulk Pokemon cards", "Set of 4 tins"],
    )
    def test_multiple_quantity_titles(self, title: str) -> None:
        assert is_multiple_quantity_listing(title) is True

    def test_single_item_title(self) -> None:
        assert is_multiple_quantity_listing("Crown Zenith Elite Trainer Box") is False

    def test_keyword_in_query_is_allowed(self) -> None:
        """Searching for a bundle should not filter out bundles."""
        assert is_multiple_quantity_listing("151 Booster Bundle", query="151 booster bundle") is False

    def test_pokemon_center_titles(self) -> None:
        assert is_pokemon_center_listing("Pokémon Center Exclusive ETB") is True
        assert is_pokemon_center_listing("Evolving Skies ETB") is False
        assert is_pokemon_center_listing(None) is False

    def test_discrepancy_relative_to_lower_price(self) -> None:
        assert price_discrepancy_pct(Decimal("100"), Decimal("170")) == Decimal("70.0")
        assert price_discrepancy_pct(Decimal("170"), Decimal("100")) == Decimal("70.0")
        assert price_discrepancy_pct(Decimal("0"), Decimal("10")) == Decimal("100")


# ---------------------------------------------------------------------------
# Token fetch tests
# ---------------------------------------------------------------------------


class TesteBayClientOAuth:
    def setup_method(self) -> None:
        _reset_token_cache()

    @pytest.mark.asyncio
    async def test_token_fetch_happy_path(self) -> None:
        """Successful token fetch returns access token string."""
        with _credentials():
            with respx.mock:
                respx.post(OAUTH_URL).mock(return_value=httpx.Response(200, json=MOCK_TOKEN_RESPONSE))
                async with eBayClient() as client:
                    token = await client._get_access_token()

        assert token == "test-access-token-abc123"

    @pytest.mark.asyncio
    async def test_token_is_cached_second_call_skips_request(self) -> None:
        """Second call within TTL uses cached token without an HTTP request."""
        with _credentials():
            with respx.mock:
                route = respx.post(OAUTH_URL).mock(return_value=httpx.Response(200, json=MOCK_TOKEN_RESPONSE))
                async with eBayClient() as client:
                    t1 = await client._get_access_token()
                    t2 = await client._get_access_token()

        assert t1 == t2 == "test-access-token-abc123"
        assert route.call_count == 1

    @pytest.mark.asyncio
    async def test_expired_token_triggers_refresh(self) -> None:
        """An expired cached token triggers a new HTTP request."""
        ebay_module._TOKEN_CACHE["access_token"] = "old-token"
        ebay_module._TOKEN_CACHE["expires_at"] = datetime.now(timezone.utc) - timedelta(seconds=10)
        new_response = {**MOCK_TOKEN_RESPONSE, "access_token": "new-token-refreshed"}

        with _credentials():
            with respx.mock:
                respx.post(OAUTH_URL).mock(return_value=httpx.Response(200, json=new_response))
                async with eBayClient() as client:
                    token = await client._get_access_token()

        assert token == "new-token-refreshed"

    @pytest.mark.asyncio
    async def test_missing_credentials_returns_empty_string(self) -> None:
        """Empty EBAY_APP_ID or EBAY_CERT_ID returns '' without HTTP call."""
        with patch.multiple(ebay_module.settings, EBAY_APP_ID="", EBAY_CERT_ID=""):
            async with eBayClient() as client:
                assert client.configured is False
                token = await client._get_access_token()

        assert token == ""


# ---------------------------------------------------------------------------
# Search tests
# ---------------------------------------------------------------------------


class TesteBaySearchListings:
    def setup_method(self) -> None:
        _reset_token_cache()

    @pytest.mark.asyncio
    async def test_non_comparables_filtered(self) -> None:
        """Lots, Pokemon Center exclusives and graded slabs are dropped."""
        with _credentials():
            with respx.mock:
                respx.post(OAUTH_URL).mock(return_value=httpx.Response(200, json=MOCK_TOKEN_RESPONSE))
                route = respx.get(BROWSE_URL).mock(return_value=httpx.Response(200, json=MOCK_SEARCH_RESPONSE))
                async with eBayClient() as client:
                    results = await client.search_listings("Evolving Skies ETB")

        assert [r["item_id"] for r in results] == ["v1|123|0", "v1|124|0", "v1|125|0"]
        assert results[0]["price_usd"] == Decimal("150.00")
        assert results[0]["listing_url"] == "https://www.ebay.com/itm/123"
        assert route.calls.last.request.url.params["filter"] == "buyingOptions:{FIXED_PRICE}"

    @pytest.mark.asyncio
    async def test_graded_kept_when_query_mentions_psa(self) -> None:
        with _credentials():
            with respx.mock:
                respx.post(OAUTH_URL).mock(return_value=httpx.Response(200, json=MOCK_TOKEN_RESPONSE))
                respx.get(BROWSE_URL).mock(return_value=httpx.Response(200, json=MOCK_SEARCH_RESPONSE))
                async with eBayClient() as client:
                    results = await client.search_listings("Evolving Skies PSA 10")

        assert "v1|128|0" in [r["item_id"] for r in results]

    @pytest.mark.asyncio
    async def test_http_error_returns_empty_list(self) -> None:
        """HTTP 500 from eBay returns [] gracefully."""
        with _credentials():
            with respx.mock:
                respx.post(OAUTH_URL).mock(return_value=httpx.Response(200, json=MOCK_TOKEN_RESPONSE))
                respx.get(BROWSE_URL).mock(return_value=httpx.Response(500, text="Internal Server Error"))
                async with eBayClient() as client:
                    results = await client.search_listings("Evolving Skies ETB")

        assert results == []

    @pytest.mark.asyncio
    async def test_no_client_returns_empty_list(self) -> None:
        """Outside the async context manager there is no HTTP client."""
        assert await eBayClient().search_listings("Evolving Skies ETB") == []


# ---------------------------------------------------------------------------
# Market price + validation tests
# ---------------------------------------------------------------------------


class TesteBayPriceValidation:
    def setup_method(self) -> None:
        _reset_token_cache()

    @pytest.mark.asyncio
    async def test_market_price_is_median_of_comparables(self) -> None:
        """150, 160, 170 after filtering -> median 160."""
        with _credentials():
            with respx.mock:
                respx.post(OAUTH_URL).mock(return_value=httpx.Response(200, json=MOCK_TOKEN_RESPONSE))
                respx.get(BROWSE_URL).mock(return_value=httpx.Response(200, json=MOCK_SEARCH_RESPONSE))
                async with eBayClient() as client:
                    market = await client.get_market_price("Evolving Skies ETB")

        assert market == (Decimal("160.00"), 3)

    @pytest.mark.asyncio
    async def test_null_prices_ignored(self) -> None:
        mock_with_nulls = {
            "itemSummaries": [
                {"itemId": "a", "title": "ETB", "price": {"value": "100.00"}},
                {"itemId": "b", "title": "ETB", "price": None},
                {"itemId": "c", "title": "ETB"},
            ]
        }
        with _credentials():
            with respx.mock:
                respx.post(OAUTH_URL).mock(return_value=httpx.Response(200, json=MOCK_TOKEN_RESPONSE))
                respx.get(BROWSE_URL).mock(return_value=httpx.Response(200, json=mock_with_nulls))
                async with eBayClient() as client:
                    market = await client.get_market_price("ETB")

        assert market == (Decimal("100.00"), 1)

    @pytest.mark.asyncio
    async def test_price_in_line_not_flagged(self) -> None:
        with _credentials():
            with respx.mock:
                respx.post(OAUTH_URL).mock(return_value=httpx.Response(200, json=MOCK_TOKEN_RESPONSE))
                respx.get(BROWSE_URL).mock(return_value=httpx.Response(200, json=MOCK_SEARCH_RESPONSE))
                async with eBayClient() as client:
                    check = await client.validate_price("Evolving Skies ETB", Decimal("165.00"))

        assert check is not None
        assert check.median_price == Decimal("160.00")
        assert check.flagged is False

    @pytest.mark.asyncio
    async def test_price_far_off_median_flagged(self) -> None:
        """A $40 "ETB" against a $160 median is flagged for review."""
        with _credentials():
            with respx.mock:
                respx.post(OAUTH_URL).mock(return_value=httpx.Response(200, json=MOCK_TOKEN_RESPONSE))
                respx.get(BROWSE_URL).mock(return_value=httpx.Response(200, json=MOCK_SEARCH_RESPONSE))
                async with eBayClient() as client:
                    check = await client.validate_price("Evolving Skies ETB", Decimal("40.00"))

        assert check.flagged is True
        assert check.discrepancy_pct == Decimal("300.0")

    @pytest.mark.asyncio
    async def test_missing_price_not_flagged(self) -> None:
        with _credentials():
            with respx.mock:
                respx.post(OAUTH_URL).mock(return_value=httpx.Response(200, json=MOCK_TOKEN_RESPONSE))
                respx.get(BROWSE_URL).mock(return_value=httpx.Response(200, json=MOCK_SEARCH_RESPONSE))
                async with eBayClient() as client:
                    check = await client.validate_price("Evolving Skies ETB", None)

        assert check.flagged is False
        assert check.discrepancy_pct is None

    @pytest.mark.asyncio
    async def test_unknown_item_skipped(self) -> None:
        """No eBay lookup for listings the classifier could not name."""
        with respx.mock:
            async with eBayClient() as client:
                assert await client.validate_price("Unknown Item", Decimal("50")) is None

    @pytest.mark.asyncio
    async def test_no_market_data_returns_none(self) -> None:
        with _credentials():
            with respx.mock:
                respx.post(OAUTH_URL).mock(return_value=httpx.Response(200, json=MOCK_TOKEN_RESPONSE))
                respx.get(BROWSE_URL).mock(return_value=httpx.Response(200, json={"itemSummaries": []}))
                async with eBayClient() as client:
                    assert await client.validate_price("Evolving Skies ETB", Decimal("165")) is None
