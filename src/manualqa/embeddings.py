"""
Embedding client: text batch in, one fixed-dimension vector per input out.

Rate-limited calls (HTTP 429) are retried with a fixed delay up to a bounded
number of attempts; every other upstream failure is raised immediately.
"""
from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_fixed

from .config import (
    EMBEDDING_BASE_URL,
    EMBEDDING_DIMENSIONS,
    EMBEDDING_MAX_ATTEMPTS,
    EMBEDDING_MAX_INPUT_CHARS,
    EMBEDDING_MODEL_NAME,
    EMBEDDING_RETRY_DELAY_S,
    OPENAI_API_KEY,
)
from .errors import EmbeddingError
from .observability import get_logger

logger = get_logger(__name__)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, EmbeddingError) and exc.retryable


def _status_of(exc: BaseException) -> int | None:
    status = getattr(exc, "status_code", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


class EmbeddingClient:
    def __init__(
        self,
        embeddings: Any = None,
        *,
        model: str = EMBEDDING_MODEL_NAME,
        dimensions: int = EMBEDDING_DIMENSIONS,
        max_input_chars: int = EMBEDDING_MAX_INPUT_CHARS,
        max_attempts: int = EMBEDDING_MAX_ATTEMPTS,
        retry_delay_s: float = EMBEDDING_RETRY_DELAY_S,
        base_url: str | None = EMBEDDING_BASE_URL,
        api_key: str | None = OPENAI_API_KEY,
    ):
        self.model = model
        self.dimensions = int(dimensions)
        self.max_input_chars = int(max_input_chars)
        self.max_attempts = max(1, int(max_attempts))
        self.retry_delay_s = max(0.0, float(retry_delay_s))
        self.base_url = base_url
        self.api_key = api_key
        self._embeddings = embeddings

    @property
    def embeddings(self):
        if self._embeddings is None:
            from langchain_openai import OpenAIEmbeddings

            kwargs: dict[str, Any] = {
                "model": self.model,
                "openai_api_key": self.api_key,
                "max_retries": 0,
                "check_embedding_ctx_length": False,
            }
            if self.base_url:
                kwargs["openai_api_base"] = self.base_url
            if self.model.startswith("text-embedding-3"):
                kwargs["dimensions"] = self.dimensions
            self._embeddings = OpenAIEmbeddings(**kwargs)
            logger.info("embedding_client_initialized", model=self.model, dimensions=self.dimensions)
        return self._embeddings

    def _truncate(self, text: str) -> str:
        # Lossy: the tail beyond max_input_chars is never embedded.
        return str(text or "")[: self.max_input_chars]

    def _call_once(self, inputs: list[str]) -> list[list[float]]:
        try:
            vectors = self.embeddings.embed_documents(inputs)
        except EmbeddingError:
            raise
        except Exception as exc:
            status = _status_of(exc)
            body = getattr(exc, "body", None)
            logger.warning("embedding_call_failed", status=status, body=str(body)[:500], error=str(exc))
            raise EmbeddingError(f"embedding request failed: {exc}", status_code=status, body=body) from exc
        return [list(map(float, vec)) for vec in vectors]

    def _log_retry(self, retry_state):
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "embedding_rate_limited",
            attempt=retry_state.attempt_number,
            max_attempts=self.max_attempts,
            delay_s=self.retry_delay_s,
            status=getattr(exc, "status_code", None),
        )

    def embed(self, texts: Sequence[str]) -> list[list[float]]:
        """Embeds a batch. Output order matches input order."""
        inputs = [self._truncate(text) for text in texts]
        if not inputs:
            return []

        retrying = Retrying(
            retry=retry_if_exception(_is_retryable),
            wait=wait_fixed(self.retry_delay_s),
            stop=stop_after_attempt(self.max_attempts),
            before_sleep=self._log_retry,
            reraise=True,
        )
        vectors = retrying(self._call_once, inputs)

        if len(vectors) != len(inputs):
            raise EmbeddingError(f"embedding count mismatch: sent {len(inputs)}, received {len(vectors)}")
        for vec in vectors:
            if len(vec) != self.dimensions:
                raise EmbeddingError(f"embedding dimension mismatch: got {len(vec)}, expected {self.dimensions}")
        return vectors

    def embed_query(self, text: str) -> list[float]:
        return self.embed([text])[0]
