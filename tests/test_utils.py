"""Tests for price parsing and marketplace URL helpers."""

from __future__ import annotations

from decimal import Decimal

import pytest

from src.utils.price import clean_text, looks_like_price, parse_price
from src.utils.urls import build_search_url, clean_marketplace_url, is_listing_url


class TestParsePrice:
    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("$165", Decimal("165.00")),
            ("$1,200", Decimal("1200.00")),
            ("US$45.50 OBO", Decimal("45.50")),
            ("45,5", Decimal("45.50")),
            ("€1.200,50", Decimal("1200.50")),
            ("  $ 80  ", Decimal("80.00")),
        ],
    )
    def test_valid_prices(self, text: str, expected: Decimal) -> None:
        assert parse_price(text) == expected

    @pytest.mark.parametrize("text", ["", None, "Free", "Message for price", "-$20", "$250000"])
    def test_invalid_prices_return_none(self, text: str | None) -> None:
        """Unusable price text never raises; it returns None."""
        assert parse_price(text) is None

    def test_two_decimal_places(self) -> None:
        assert parse_price("$165").as_tuple().exponent == -2


class TestPriceHelpers:
    def test_clean_text_collapses_whitespace(self) -> None:
        assert clean_text("  Evolving \n Skies\tETB ") == "Evolving Skies ETB"
        assert clean_text(None) == ""

    @pytest.mark.parametrize("line", ["$40", "Free", "CA$55", "€12"])
    def test_looks_like_price(self, line: str) -> None:
        assert looks_like_price(line) is True

    @pytest.mark.parametrize("line", ["Pokemon 151", "Austin, TX", "", "12 mi away"])
    def test_not_a_price(self, line: str) -> None:
        assert looks_like_price(line) is False


class TestUrls:
    def test_search_url_sorted_newest_first(self) -> None:
        url = build_search_url("pokemon elite trainer box", base_url="https://www.facebook.com")
        assert url.startswith("https://www.facebook.com/marketplace/search/?query=pokemon+elite+trainer+box")
        assert "sortBy=creation_time_descend" in url

    def test_relative_href_resolved_and_query_dropped(self) -> None:
        cleaned = clean_marketplace_url("/marketplace/item/1234567890/?ref=search&tracking=abc")
        assert cleaned == "https://www.facebook.com/marketplace/item/1234567890"

    def test_equivalent_urls_normalise_equal(self) -> None:
        a = clean_marketplace_url("https://WWW.facebook.com/marketplace/item/42/#photos")
        b = clean_marketplace_url("/marketplace/item/42")
        assert a == b

    @pytest.mark.parametrize(
        "href",
        [
            "http://www.facebook.com/marketplace/item/42/",
            "https://m.facebook.com/marketplace/item/42?ref=share",
            "https://web.facebook.com/marketplace/item/42",
            "https://facebook.com/marketplace/item/42",
        ],
    )
    def test_scheme_and_subdomain_variants_share_one_key(self, href: str) -> None:
        assert clean_marketplace_url(href) == "https://www.facebook.com/marketplace/item/42"

    def test_foreign_host_kept_as_https(self) -> None:
        cleaned = clean_marketplace_url("http://example.com/marketplace/item/7")
        assert cleaned == "https://example.com/marketplace/item/7"

    @pytest.mark.parametrize(
        "href",
        [None, "", "/marketplace/category/toys", "/marketplace/item/", "javascript:void(0)"],
    )
    def test_non_listing_hrefs_rejected(self, href: str | None) -> None:
        assert clean_marketplace_url(href) is None

    def test_is_listing_url(self) -> None:
        assert is_listing_url("https://www.facebook.com/marketplace/item/1") is True
        assert is_listing_url("https://www.facebook.com/groups/1") is False
