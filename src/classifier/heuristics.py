"""
Rule-based listing classification.

Used when the AI classifier fails or times out: the orchestrator still needs
a product type, set and language to persist the listing. Also supplies a
confidence estimate when a model reply omits one.
"""

from __future__ import annotations

import re

from src.classifier import ClassificationResult, ClassifiedItem, ProductType
from src.scraper import RawListing
from src.utils.price import clean_text, parse_price

# ---------------------------------------------------------------------------
# Keyword tables (checked in order; first hit wins)
# ---------------------------------------------------------------------------
PRODUCT_TYPE_KEYWORDS: list[tuple[ProductType, tuple[str, ...]]] = [
    (ProductType.ETB, ("elite trainer box", "etb", "trainer box", "elite trainer")),
    (ProductType.BOOSTER_BOX, ("booster box", "display box", "sealed box", "bb", "booster case")),
    (ProductType.COLLECTION_BOX, (
        "premium collection", "special collection", "collection box", "trainer collection",
        "ultra premium", "upc", "collection",
    )),
    (ProductType.TIN, ("mini tin", "pokeball tin", "collector tin", "tin")),
    (ProductType.THEME_DECK, ("theme deck", "battle deck", "starter deck", "league battle deck", "challenger deck")),
    (ProductType.BUNDLE, ("booster bundle", "bundle", "lot", "bulk", "combo", "package deal")),
    (ProductType.BOOSTER_PACK, ("booster pack", "sleeved booster", "loose pack", "blister", "pack", "booster")),
    (ProductType.ACCESSORIES, ("sleeves", "playmat", "binder", "deck box", "card protectors", "portfolio")),
    (ProductType.SINGLE, (
        "psa", "cgc", "bgs", "graded", "alt art", "full art", "secret rare", "rainbow rare",
        "gold card", "promo", "single", "holo", "vmax", "vstar",
    )),
]

SET_ABBREVIATIONS: dict[str, str] = {
    "pal": "Paldea Evolved",
    "obf": "Obsidian Flames",
    "par": "Paradox Rift",
    "tef": "Temporal Forces",
    "twm": "Twilight Masquerade",
    "scr": "Stellar Crown",
    "ssp": "Surging Sparks",
    "paf": "Paldean Fates",
    "sfa": "Shrouded Fable",
    "ssh": "Sword & Shield",
    "rcl": "Rebel Clash",
    "daa": "Darkness Ablaze",
    "viv": "Vivid Voltage",
    "shf": "Shining Fates",
    "bst": "Battle Styles",
    "cre": "Chilling Reign",
    "evs": "Evolving Skies",
    "cel": "Celebrations",
    "fst": "Fusion Strike",
    "brs": "Brilliant Stars",
    "ast": "Astral Radiance",
    "pgo": "Pokemon GO",
    "lor": "Lost Origin",
    "crz": "Crown Zenith",
}

SET_NAMES: list[str] = [
    "Prismatic Evolutions", "Surging Sparks", "Stellar Crown", "Shrouded Fable",
    "Twilight Masquerade", "Temporal Forces", "Paldean Fates", "Paradox Rift",
    "Obsidian Flames", "Paldea Evolved", "Scarlet & Violet", "Crown Zenith",
    "Silver Tempest", "Lost Origin", "Pokemon GO", "Astral Radiance",
    "Brilliant Stars", "Fusion Strike", "Celebrations", "Evolving Skies",
    "Chilling Reign", "Battle Styles", "Shining Fates", "Vivid Voltage",
    "Champion's Path", "Darkness Ablaze", "Rebel Clash", "Sword & Shield",
    "Hidden Fates", "Journey Together", "Destined Rivals",
]

LANGUAGE_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("Japanese", ("japanese", "japan", "jp", "jpn")),
    ("Korean", ("korean", "kr")),
    ("Chinese", ("chinese", "simplified chinese", "traditional chinese", "cn")),
    ("French", ("french",)),
    ("German", ("german",)),
    ("Spanish", ("spanish",)),
]

JAPANESE_CHARS_RE = re.compile(r"[\u3040-\u30ff]")
KOREAN_CHARS_RE = re.compile(r"[\uac00-\ud7af]")
CJK_CHARS_RE = re.compile(r"[\u4e00-\u9fff]")
SALE_PREFIX_RE = re.compile(r"^(?:WTS|WTB|WTT|FS|FT|ISO|SELLING|BUYING)\b\s*:?\s*", re.IGNORECASE)


def _has_word(text: str, word: str) -> bool:
    return re.search(rf"(?<![a-z0-9]){re.escape(word)}(?![a-z0-9])", text) is not None


def clean_item_name(name: str | None) -> str:
    """Strip sale prefixes ("WTS:") and normalise common spellings."""
    cleaned = clean_text(name)
    cleaned = SALE_PREFIX_RE.sub("", cleaned)
    cleaned = re.sub(r"(?i)\bpokemon\b", "Pokemon", cleaned)
    cleaned = re.sub(r"(?i)\betb\b", "ETB", cleaned)
    cleaned = re.sub(r"(?i)\btcg\b", "TCG", cleaned)
    return cleaned.strip() or "Unknown Item"


def classify_product_type(text: str) -> ProductType:
    lowered = text.lower()
    for product_type, keywords in PRODUCT_TYPE_KEYWORDS:
        if any(_has_word(lowered, keyword) for keyword in keywords):
            return product_type
    return ProductType.OTHER


def detect_set(text: str) -> str | None:
    lowered = text.lower()
    for name in SET_NAMES:
        if name.lower() in lowered:
            return name
    if _has_word(lowered, "151"):
        return "Pokemon 151"
    for abbreviation, name in SET_ABBREVIATIONS.items():
        if _has_word(lowered, abbreviation):
            return name
    if "base set" in lowered:
        return "Base Set"
    return None


def detect_language(text: str) -> str:
    lowered = text.lower()
    for language, keywords in LANGUAGE_KEYWORDS:
        if any(_has_word(lowered, keyword) for keyword in keywords):
            return language
    if JAPANESE_CHARS_RE.search(text):
        return "Japanese"
    if KOREAN_CHARS_RE.search(text):
        return "Korean"
    if CJK_CHARS_RE.search(text):
        return "Chinese"
    return "English"


def estimate_confidence(item_name: str, product_type: ProductType) -> float:
    """
    Keyword-match confidence for a name/type pair.

    OTHER is a guess (0.3). An explicit "etb" / "booster box" in the name for
    the matching type is near-certain (0.95). Other keyword hits score 0.75.
    """
    if product_type is ProductType.OTHER:
        return 0.3
    lowered = item_name.lower()
    if product_type is ProductType.ETB and ("etb" in lowered or "elite trainer box" in lowered):
        return 0.95
    if product_type is ProductType.BOOSTER_BOX and "booster box" in lowered:
        return 0.95
    return 0.75


def heuristic_classify(raw: RawListing, confidence: float = 0.0) -> ClassificationResult:
    """
    Classify a listing from its raw text alone.

    Args:
        raw: Extracted listing.
        confidence: Confidence to stamp on the result. The orchestrator passes
            0.0 so fallback records always land in the review queue.

    Returns:
        Single-item ClassificationResult with source="fallback".
    """
    text = " ".join(part for part in (raw.raw_title, raw.seller_text or "") if part)
    item_name = clean_item_name(raw.raw_title)
    item = ClassifiedItem(
        item_name=item_name,
        set_name=detect_set(text),
        product_type=classify_product_type(text),
        price=parse_price(raw.raw_price_text),
        quantity=1,
    )
    return ClassificationResult(
        items=[item],
        main_listing_price=parse_price(raw.raw_price_text),
        location=raw.raw_location_text,
        language=detect_language(text),
        confidence=confidence,
        source="fallback",
    )
