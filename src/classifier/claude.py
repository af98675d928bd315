"""
TCG Marketplace Monitor — Claude Vision Classifier

Hosted alternative to LM Studio. Sends the same prompt through the
Anthropic Messages API with the screenshot as a base64 image block.
"""

from __future__ import annotations

import asyncio

import anthropic
import structlog

from src.classifier import ClassificationResult, extract_json_object, result_from_payload
from src.classifier.prompts import MARKETPLACE_SYSTEM_PROMPT, build_user_prompt
from src.config import settings
from src.pipeline.errors import ClassificationError, ClassificationTimeout

logger = structlog.get_logger(__name__)


def _media_type(image_b64: str) -> str:
    # PNG base64 always starts with the encoded "\x89PNG" signature
    return "image/png" if image_b64.startswith("iVBOR") else "image/jpeg"


class ClaudeVisionClassifier:
    """ListingClassifier backed by anthropic.AsyncAnthropic."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        client: anthropic.AsyncAnthropic | None = None,
    ) -> None:
        self._model = model or settings.VISION_MODEL_ID
        key = api_key or settings.ANTHROPIC_API_KEY
        if client is None and not key:
            raise ValueError("ANTHROPIC_API_KEY is required for the claude classifier backend")
        self._client = client or anthropic.AsyncAnthropic(
            api_key=key,
            timeout=settings.CLASSIFIER_TIMEOUT_SECONDS,
            max_retries=settings.CLASSIFIER_MAX_RETRIES,
        )

    @property
    def model(self) -> str:
        return self._model

    def set_model(self, model: str) -> None:
        logger.info("claude_model_changed", old_model=self._model, new_model=model, source="claude")
        self._model = model

    async def aclose(self) -> None:
        await self._client.close()

    async def classify(self, text_context: str, image_context: str | None = None) -> ClassificationResult:
        """
        Classify one listing via Claude.

        Raises:
            ClassificationTimeout, ClassificationError
        """
        content: list[dict] = []
        if image_context:
            data = image_context.split(",", 1)[1] if image_context.startswith("data:") else image_context
            content.append({
                "type": "image",
                "source": {"type": "base64", "media_type": _media_type(data), "data": data},
            })
        content.append({"type": "text", "text": build_user_prompt(text_context)})

        try:
            response = await self._client.messages.create(
                model=self._model,
                max_tokens=settings.CLASSIFIER_MAX_TOKENS,
                temperature=settings.CLASSIFIER_TEMPERATURE,
                system=MARKETPLACE_SYSTEM_PROMPT,
                messages=[{"role": "user", "content": content}],
            )
        except (anthropic.APITimeoutError, asyncio.TimeoutError) as e:
            logger.warning("claude_timeout", model=self._model, source="claude")
            raise ClassificationTimeout(f"Claude did not respond within {settings.CLASSIFIER_TIMEOUT_SECONDS}s") from e
        except anthropic.APIError as e:
            logger.error("claude_api_error", model=self._model, error=str(e), source="claude")
            raise ClassificationError(f"Claude API error: {e}") from e

        try:
            reply = response.content[0].text
        except (IndexError, AttributeError) as e:
            raise ClassificationError("Claude reply has no text block") from e

        result = result_from_payload(extract_json_object(reply), source="claude", model=self._model)
        logger.info(
            "claude_classified",
            model=self._model,
            item_count=len(result.items),
            confidence=result.confidence,
            has_image=bool(image_context),
            source="claude",
        )
        return result
