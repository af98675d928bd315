"""
TCG Marketplace Monitor — LM Studio Classifier

Talks to a local LM Studio server through its OpenAI-compatible API:
POST /v1/chat/completions for classification, GET /v1/models for discovery.
The default model is a small vision-language model so the listing
screenshot can be sent as an image_url data URI.

LM Studio serves one completion at a time, so callers classify sequentially.
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
import structlog

from src.classifier import ClassificationResult, extract_json_object, result_from_payload
from src.classifier.prompts import MARKETPLACE_SYSTEM_PROMPT, build_user_prompt
from src.config import settings
from src.pipeline.errors import ClassificationError, ClassificationTimeout

logger = structlog.get_logger(__name__)


class LMStudioClassifier:
    """
    Async LM Studio client.

    Usage:
        async with LMStudioClassifier() as classifier:
            result = await classifier.classify(raw.text_context(), screenshot_b64)
    """

    def __init__(
        self,
        base_url: str | None = None,
        model: str | None = None,
        timeout_seconds: float | None = None,
        max_retries: int | None = None,
        base_backoff: float = 1.0,
    ) -> None:
        self._base_url = (base_url or settings.LMSTUDIO_BASE_URL).rstrip("/")
        self._model = model or settings.LMSTUDIO_MODEL
        self._timeout = timeout_seconds or settings.CLASSIFIER_TIMEOUT_SECONDS
        self._max_retries = max_retries if max_retries is not None else settings.CLASSIFIER_MAX_RETRIES
        self._base_backoff = base_backoff
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> LMStudioClassifier:
        self._ensure_client()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=httpx.Timeout(self._timeout, connect=10.0),
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def aclose(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def model(self) -> str:
        return self._model

    def set_model(self, model: str) -> None:
        """Switch the model used for subsequent requests."""
        logger.info("lmstudio_model_changed", old_model=self._model, new_model=model, source="lmstudio")
        self._model = model

    def build_request(self, text_context: str, image_context: str | None) -> dict[str, Any]:
        """OpenAI-style chat payload: system prompt, then text + optional image."""
        content: list[dict[str, Any]] = [{"type": "text", "text": build_user_prompt(text_context)}]
        if image_context:
            url = image_context if image_context.startswith("data:") else f"data:image/jpeg;base64,{image_context}"
            content.append({"type": "image_url", "image_url": {"url": url}})

        return {
            "model": self._model,
            "messages": [
                {"role": "system", "content": MARKETPLACE_SYSTEM_PROMPT},
                {"role": "user", "content": content},
            ],
            "temperature": settings.CLASSIFIER_TEMPERATURE,
            "max_tokens": settings.CLASSIFIER_MAX_TOKENS,
            "stream": False,
        }

    async def _request(self, method: str, path: str, json_body: dict[str, Any] | None = None) -> dict[str, Any]:
        """
        Make a request with retry logic and exponential backoff.

        429 and 5xx responses and connection errors are retried. A read
        timeout is not: the wait is already bounded.

        Raises:
            ClassificationTimeout: the server did not answer in time.
            ClassificationError: any other failure after retries.
        """
        client = self._ensure_client()
        last_error: Exception | None = None

        for attempt in range(self._max_retries + 1):
            try:
                response = await client.request(method, path, json=json_body)

                if response.status_code == 429 or response.status_code >= 500:
                    wait_time = self._base_backoff * (2 ** attempt)
                    logger.warning(
                        "lmstudio_retryable_status",
                        status_code=response.status_code,
                        attempt=attempt + 1,
                        wait_seconds=wait_time,
                        source="lmstudio",
                    )
                    last_error = httpx.HTTPStatusError(
                        f"status {response.status_code}", request=response.request, response=response
                    )
                    await asyncio.sleep(wait_time)
                    continue

                response.raise_for_status()
                return response.json()

            except httpx.TimeoutException as e:
                logger.warning("lmstudio_timeout", path=path, attempt=attempt + 1, source="lmstudio")
                raise ClassificationTimeout(f"LM Studio did not respond within {self._timeout}s") from e

            except httpx.HTTPStatusError as e:
                logger.error(
                    "lmstudio_http_error",
                    status_code=e.response.status_code,
                    attempt=attempt + 1,
                    path=path,
                    source="lmstudio",
                )
                raise ClassificationError(f"LM Studio returned {e.response.status_code}") from e

            except httpx.RequestError as e:
                last_error = e
                logger.error(
                    "lmstudio_request_error",
                    error=str(e),
                    attempt=attempt + 1,
                    path=path,
                    source="lmstudio",
                )
                await asyncio.sleep(self._base_backoff * (2 ** attempt))
                continue

            except ValueError as e:
                raise ClassificationError(f"LM Studio returned non-JSON body: {e}") from e

        raise ClassificationError(
            f"LM Studio request failed after {self._max_retries + 1} attempts"
        ) from last_error

    async def classify(self, text_context: str, image_context: str | None = None) -> ClassificationResult:
        """
        Classify one listing.

        Args:
            text_context: Listing text (title, price, location, details).
            image_context: Base64 screenshot or data URI, optional.

        Raises:
            ClassificationTimeout, ClassificationError
        """
        data = await self._request("POST", "/v1/chat/completions", self.build_request(text_context, image_context))

        try:
            reply = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ClassificationError("LM Studio reply has no message content") from e
        if not isinstance(reply, str) or not reply.strip():
            raise ClassificationError("LM Studio reply is empty")

        result = result_from_payload(extract_json_object(reply), source="lmstudio", model=self._model)
        logger.info(
            "lmstudio_classified",
            model=self._model,
            item_count=len(result.items),
            confidence=result.confidence,
            has_image=bool(image_context),
            source="lmstudio",
        )
        return result

    async def list_models(self) -> list[dict[str, Any]]:
        """Models loaded in LM Studio; [] when the server is unreachable."""
        try:
            data = await self._request("GET", "/v1/models")
        except ClassificationError as e:
            logger.error("lmstudio_list_models_failed", error=str(e), source="lmstudio")
            return []
        models = data.get("data", [])
        return models if isinstance(models, list) else []

    async def test_connection(self) -> bool:
        models = await self.list_models()
        logger.info("lmstudio_connection_checked", reachable=bool(models), model_count=len(models), source="lmstudio")
        return bool(models)
