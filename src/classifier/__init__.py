"""
TCG Marketplace Monitor — AI Classifier Layer

Classifier backends turn a listing's text (and optional screenshot) into
structured product attributes. They all return ClassificationResult and raise
ClassificationError / ClassificationTimeout; they never return partial junk.
"""

from __future__ import annotations

import json
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.config import settings
from src.pipeline.errors import ClassificationError, ClassificationTimeout
from src.scraper import RawListing

__all__ = [
    "ClassificationError",
    "ClassificationResult",
    "ClassificationTimeout",
    "ClassifiedItem",
    "ClassifiedListing",
    "ListingClassifier",
    "ProductType",
    "extract_json_object",
]


class ProductType(str, Enum):
    SINGLE = "Single"
    BOOSTER_PACK = "Booster Pack"
    BOOSTER_BOX = "Booster Box"
    ETB = "ETB"
    COLLECTION_BOX = "Collection Box"
    BUNDLE = "Bundle"
    TIN = "Tin"
    THEME_DECK = "Theme Deck"
    ACCESSORIES = "Accessories"
    OTHER = "OTHER"


_PRODUCT_TYPE_ALIASES = {
    "single card": ProductType.SINGLE,
    "singles": ProductType.SINGLE,
    "card": ProductType.SINGLE,
    "pack": ProductType.BOOSTER_PACK,
    "booster": ProductType.BOOSTER_PACK,
    "bb": ProductType.BOOSTER_BOX,
    "elite trainer box": ProductType.ETB,
    "collection": ProductType.COLLECTION_BOX,
    "lot": ProductType.BUNDLE,
    "deck": ProductType.THEME_DECK,
}


def _to_decimal(v: Any) -> Decimal | None:
    """Lenient money parse for model output: numbers, "$25", "", None."""
    if v is None or isinstance(v, bool):
        return None
    if isinstance(v, (int, float, Decimal)):
        value = Decimal(str(v))
    else:
        cleaned = "".join(ch for ch in str(v) if ch.isdigit() or ch == ".")
        if not cleaned:
            return None
        try:
            value = Decimal(cleaned)
        except InvalidOperation:
            return None
    if value <= 0:
        return None
    return value.quantize(Decimal("0.01"))


def _blank_to_none(v: Any) -> Any:
    if isinstance(v, str) and not v.strip():
        return None
    return v


class ClassifiedItem(BaseModel):
    """One product inside a listing. A lot can hold several."""

    model_config = ConfigDict(populate_by_name=True)

    item_name: str = Field(default="Unknown Item", alias="itemName")
    set_name: str | None = Field(default=None, alias="set")
    product_type: ProductType = Field(default=ProductType.OTHER, alias="productType")
    price: Decimal | None = None
    quantity: int = 1
    price_unit: str | None = Field(default=None, alias="priceUnit")
    notes: str | None = None

    @field_validator("item_name", mode="before")
    @classmethod
    def default_item_name(cls, v: Any) -> str:
        text = str(v).strip() if v is not None else ""
        return text or "Unknown Item"

    @field_validator("set_name", "price_unit", "notes", mode="before")
    @classmethod
    def blank_strings(cls, v: Any) -> Any:
        return _blank_to_none(v)

    @field_validator("product_type", mode="before")
    @classmethod
    def normalise_product_type(cls, v: Any) -> ProductType:
        if isinstance(v, ProductType):
            return v
        text = str(v or "").strip()
        for member in ProductType:
            if text.lower() in (member.value.lower(), member.name.lower()):
                return member
        return _PRODUCT_TYPE_ALIASES.get(text.lower(), ProductType.OTHER)

    @field_validator("price", mode="before")
    @classmethod
    def parse_price(cls, v: Any) -> Decimal | None:
        return _to_decimal(v)

    @field_validator("quantity", mode="before")
    @classmethod
    def positive_quantity(cls, v: Any) -> int:
        try:
            quantity = int(float(v))
        except (TypeError, ValueError):
            return 1
        return max(quantity, 1)


class ClassificationResult(BaseModel):
    """Structured reply from a classifier backend."""

    model_config = ConfigDict(populate_by_name=True)

    items: list[ClassifiedItem] = Field(default_factory=list)
    main_listing_price: Decimal | None = Field(default=None, alias="mainListingPrice")
    description: str | None = Field(default=None, alias="extractedDescription")
    location: str | None = None
    has_multiple_items: bool = Field(default=False, alias="hasMultipleItems")
    condition: str | None = None
    language: str = "English"
    authenticity: str | None = None
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    source: str = "unknown"
    model: str | None = None

    @field_validator("main_listing_price", mode="before")
    @classmethod
    def parse_main_price(cls, v: Any) -> Decimal | None:
        return _to_decimal(v)

    @field_validator("description", "location", "condition", "authenticity", mode="before")
    @classmethod
    def blank_strings(cls, v: Any) -> Any:
        return _blank_to_none(v)

    @field_validator("language", mode="before")
    @classmethod
    def default_language(cls, v: Any) -> str:
        return str(v).strip() if v and str(v).strip() else "English"

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v: Any) -> float | None:
        if v is None or v == "":
            return None
        try:
            value = float(v)
        except (TypeError, ValueError):
            return None
        return min(max(value, 0.0), 1.0)

    @property
    def primary_item(self) -> ClassifiedItem:
        return self.items[0] if self.items else ClassifiedItem()


class ClassifiedListing(BaseModel):
    """RawListing enriched with classifier (or fallback) attributes."""
    raw: RawListing
    item_name: str
    set_name: str | None = None
    product_type: ProductType = ProductType.OTHER
    condition: str | None = None
    language: str = "English"
    confidence: float = Field(ge=0.0, le=1.0)
    authenticity: str | None = None
    price: Decimal | None = None
    quantity: int = 1
    price_unit: str | None = None
    main_listing_price: Decimal | None = None
    location: str | None = None
    has_multiple_items: bool = False
    notes: str | None = None
    classification_source: str = "fallback"
    ebay_median_price: Decimal | None = None
    ebay_price_flagged: bool = False

    @property
    def needs_review(self) -> bool:
        return self.confidence < settings.REVIEW_CONFIDENCE_THRESHOLD

    @classmethod
    def from_result(cls, raw: RawListing, result: ClassificationResult) -> ClassifiedListing:
        """
        Merge a classifier result onto its raw listing.

        A multi-item lot becomes one record keyed by the listing URL: the first
        item supplies the attributes, the others are summarised in notes.
        """
        from src.classifier.heuristics import estimate_confidence

        item = result.primary_item
        notes = [item.notes] if item.notes else []
        extra = result.items[1:]
        if extra:
            notes.append(
                "Also in listing: "
                + "; ".join(
                    f"{other.item_name}" + (f" ${other.price}" if other.price is not None else "")
                    for other in extra
                )
            )

        confidence = result.confidence
        if confidence is None:
            confidence = estimate_confidence(item.item_name, item.product_type)

        return cls(
            raw=raw,
            item_name=item.item_name,
            set_name=item.set_name,
            product_type=item.product_type,
            condition=result.condition,
            language=result.language,
            confidence=confidence,
            authenticity=result.authenticity,
            price=item.price,
            quantity=item.quantity,
            price_unit=item.price_unit,
            main_listing_price=result.main_listing_price,
            location=result.location or raw.raw_location_text,
            has_multiple_items=result.has_multiple_items or len(result.items) > 1,
            notes=" | ".join(notes) or None,
            classification_source=result.source,
        )


class ListingClassifier(Protocol):
    """Capability interface the orchestrator classifies through."""

    @property
    def model(self) -> str: ...

    def set_model(self, model: str) -> None: ...

    async def classify(self, text_context: str, image_context: str | None = None) -> ClassificationResult: ...


def extract_json_object(reply: str) -> dict[str, Any]:
    """
    Pull the JSON object out of a model reply.

    Models often wrap JSON in prose or code fences, so this takes the span
    from the first "{" to the last "}".

    Raises:
        ClassificationError: no object found or it does not parse.
    """
    start = reply.find("{")
    end = reply.rfind("}")
    if start < 0 or end <= start:
        raise ClassificationError("no JSON object in classifier reply")
    try:
        payload = json.loads(reply[start:end + 1])
    except json.JSONDecodeError as e:
        raise ClassificationError(f"classifier reply is not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise ClassificationError("classifier reply is not a JSON object")
    return payload


def result_from_payload(payload: dict[str, Any], source: str, model: str | None) -> ClassificationResult:
    """
    Validate a decoded reply. A flat reply without "items" is treated as a
    single item so older prompts keep working.
    """
    data = dict(payload)
    if "error" in data and not data.get("items"):
        raise ClassificationError(f"classifier reported error: {data['error']}")
    if not data.get("items") and data.get("itemName"):
        data["items"] = [{key: data.get(key) for key in ("itemName", "set", "productType", "price", "quantity", "priceUnit", "notes")}]
    data["source"] = source
    data["model"] = model
    try:
        result = ClassificationResult.model_validate(data)
    except ValueError as e:
        raise ClassificationError(f"classifier reply failed validation: {e}") from e
    if not result.items:
        raise ClassificationError("classifier reply has no items")
    return result
