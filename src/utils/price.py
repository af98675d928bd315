"""
Listing price parsing.

Marketplace price text is free-form ("$165", "$1,200", "US$45.50 OBO", "Free").
parse_price() returns a two-decimal Decimal, or None when the text does not
hold a usable price. None is the "invalid price" marker downstream; it never
raises.
"""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation

MAX_REASONABLE_PRICE = Decimal("100000")

_NUMBER_RE = re.compile(r"\d[\d.,]*")
_WHITESPACE_RE = re.compile(r"\s+")


def clean_text(s: str | None) -> str:
    """Collapse runs of whitespace and strip the ends."""
    if not s:
        return ""
    return _WHITESPACE_RE.sub(" ", s).strip()


def _normalise_separators(token: str) -> str:
    """
    Turn a number token with mixed separators into a plain decimal string.

    "1,200" -> "1200", "1.200,50" -> "1200.50", "45,5" -> "45.5".
    """
    token = token.rstrip(".,")
    if "," in token and "." in token:
        if token.rfind(",") > token.rfind("."):
            return token.replace(".", "").replace(",", ".")
        return token.replace(",", "")
    if "," in token:
        head, _, tail = token.rpartition(",")
        if len(tail) in (1, 2) and head.count(",") == 0:
            return f"{head}.{tail}"
        return token.replace(",", "")
    if token.count(".") > 1:
        return token.replace(".", "")
    return token


def parse_price(price_text: str | None) -> Decimal | None:
    """
    Extract the first price in a string.

    Args:
        price_text: Raw price text from the listing card.

    Returns:
        Decimal quantized to cents, or None for empty, non-numeric,
        negative, or implausibly large values.
    """
    text = clean_text(price_text).replace("\xa0", " ")
    if not text:
        return None

    if text.lstrip().startswith("-"):
        return None

    match = _NUMBER_RE.search(text)
    if not match:
        return None

    try:
        value = Decimal(_normalise_separators(match.group(0)))
    except InvalidOperation:
        return None

    if value < 0 or value > MAX_REASONABLE_PRICE:
        return None
    return value.quantize(Decimal("0.01"))


def looks_like_price(text: str | None) -> bool:
    """True when a text line reads like a listing price ("$40", "Free", "€12")."""
    line = clean_text(text)
    if not line:
        return False
    if line.lower() == "free":
        return True
    return bool(re.match(r"^(?:[A-Z]{0,3}\s?[$€£¥]|[$€£¥])\s?\d", line))
