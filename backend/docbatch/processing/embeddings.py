"""
Embedding Service  —  Single-Text Embeddings with Retry
═══════════════════════════════════════════════════════

Produces one semantic vector per persisted document (title + OCR text).
Embedding is best-effort: EmbeddingService.embed() raises EmbeddingError
after exhausting retries and the coordinator then persists the document
with embedding = None.

Retry policy (exponential back-off, base × 2^attempt):
  RateLimitError, APIError (5xx), APIConnectionError, timeouts → retry
  AuthenticationError, BadRequestError, PermissionDeniedError → fail immediately
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from docbatch.core.exceptions import EmbeddingError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration defaults
# ---------------------------------------------------------------------------

MAX_RETRIES        = 3      # total attempts
RETRY_BASE_DELAY   = 1.0    # seconds, doubles each retry
RETRY_MAX_DELAY    = 30.0   # cap
MAX_INPUT_CHARS    = 8000   # ~2K tokens; longer transcripts are truncated

_NON_RETRYABLE = frozenset(
    {"AuthenticationError", "BadRequestError", "PermissionDeniedError", "NotFoundError"}
)


def build_embedding_input(title: str, ocr_text: str | None, max_chars: int = MAX_INPUT_CHARS) -> str:
    """Title first so short transcripts still carry the document name."""
    body = (ocr_text or "").strip()
    text = f"{title}\n\n{body}" if body else title
    return text[:max_chars]


class EmbeddingService:
    """
    Thin async wrapper over the OpenAI embeddings endpoint.

    Usage:
        service = EmbeddingService(api_key=settings.openai_api_key)
        vector  = await service.embed("Quarterly report ...")
    """

    def __init__(
        self,
        api_key:          str = "",
        model:            str = "text-embedding-3-small",
        dimensions:       int = 1536,
        max_retries:      int = MAX_RETRIES,
        retry_base_delay: float = RETRY_BASE_DELAY,
        client:           Any = None,
    ) -> None:
        self._api_key     = api_key
        self._model       = model
        self._dimensions  = dimensions
        self._max_retries = max(1, max_retries)
        self._base_delay  = retry_base_delay
        self._client      = client

    def _get_client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=self._api_key)
        return self._client

    async def embed(self, text: str) -> list[float]:
        """
        Embed one text string.

        Raises:
            EmbeddingError: on empty input, non-retryable errors, or after
                            every retry attempt failed.
        """
        if not text.strip():
            raise EmbeddingError("Cannot embed empty text")

        last_error: Exception | None = None

        for attempt in range(self._max_retries):
            if attempt > 0:
                delay = min(self._base_delay * (2 ** (attempt - 1)), RETRY_MAX_DELAY)
                logger.warning(
                    "Embedding retry | attempt=%d/%d delay=%.1fs error=%s",
                    attempt + 1, self._max_retries, delay, last_error,
                )
                await asyncio.sleep(delay)

            try:
                return await self._call_openai(text)
            except Exception as exc:
                last_error = exc
                if type(exc).__name__ in _NON_RETRYABLE:
                    logger.error("Non-retryable embedding error: %s", exc)
                    raise EmbeddingError(str(exc)) from exc

        logger.error("Embedding failed after %d attempts: %s", self._max_retries, last_error)
        raise EmbeddingError(
            f"Embedding failed after {self._max_retries} attempts: {last_error}"
        ) from last_error

    async def _call_openai(self, text: str) -> list[float]:
        t_api = time.monotonic()

        kwargs: dict = {"model": self._model, "input": [text]}
        # dimensions param only works for text-embedding-3-* models
        if self._dimensions != 1536:
            kwargs["dimensions"] = self._dimensions

        response = await self._get_client().embeddings.create(**kwargs)
        vector = list(response.data[0].embedding)

        logger.debug(
            "OpenAI embeddings | chars=%d dims=%d api_ms=%.0f",
            len(text), len(vector), (time.monotonic() - t_api) * 1000,
        )
        return vector


def build_embedding_service() -> EmbeddingService | None:
    """Return a configured service, or None when embeddings are disabled."""
    from docbatch.core.config import settings

    if not settings.embeddings_enabled:
        logger.info("OPENAI_API_KEY not set, documents will be stored without embeddings")
        return None

    return EmbeddingService(
        api_key=settings.openai_api_key,
        model=settings.embedding_model,
        dimensions=settings.embedding_dimensions,
        max_retries=settings.embedding_max_retries,
        retry_base_delay=settings.embedding_retry_base_delay,
    )
