"""Marketplace URL helpers: search URL construction and listing URL normalisation."""

from __future__ import annotations

from urllib.parse import quote_plus, urljoin, urlsplit, urlunsplit

from src.config import settings

LISTING_PATH_MARKER = "/marketplace/item/"


def build_search_url(term: str, base_url: str | None = None) -> str:
    """Newest-first marketplace search URL for a query."""
    base = (base_url or settings.MARKETPLACE_BASE_URL).rstrip("/")
    return (
        f"{base}/marketplace/search/?query={quote_plus(term.strip())}"
        "&sortBy=creation_time_descend&exact=false"
    )


def is_listing_url(url: str | None) -> bool:
    return bool(url) and LISTING_PATH_MARKER in url


def clean_marketplace_url(href: str | None, base_url: str | None = None) -> str | None:
    """
    Normalise a listing href into its de-duplication key.

    Resolves relative hrefs, drops query string and fragment, and trims the
    trailing slash so "/marketplace/item/123/?ref=search" and
    "https://www.facebook.com/marketplace/item/123" compare equal. Hosts under
    the base domain and either scheme map onto the base URL's host.

    Returns:
        Absolute URL, or None if the href is not a well-formed listing link.
    """
    if not href or not is_listing_url(href):
        return None

    base = urlsplit((base_url or settings.MARKETPLACE_BASE_URL).rstrip("/") + "/")
    absolute = urljoin(urlunsplit(base), href.strip())
    parts = urlsplit(absolute)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        return None

    marker_at = parts.path.find(LISTING_PATH_MARKER)
    if marker_at < 0:
        return None
    item_id = parts.path[marker_at + len(LISTING_PATH_MARKER):].strip("/")
    if not item_id:
        return None

    scheme, host = "https", parts.netloc.lower()
    base_host = base.netloc.lower()
    base_domain = base_host.removeprefix("www.")
    if host == base_domain or host.endswith("." + base_domain):
        scheme, host = base.scheme or "https", base_host

    return urlunsplit((scheme, host, parts.path.rstrip("/"), "", ""))
