"""
Error taxonomy shared by ingestion, retrieval and synthesis.

Library exceptions are translated into these types at the seam that touches
the library, so callers (HTTP layer, CLI) only reason about this module.
"""
from __future__ import annotations

from typing import Any


class ManualQAError(Exception):
    """Base class for all service errors."""

    kind = "internal_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class SourceNotFoundError(ManualQAError):
    """Raised when a manual source reference does not resolve to any bytes."""

    kind = "not_found"


class TransportError(ManualQAError):
    """Raised when a manual source could not be transferred."""

    kind = "transport_error"


class ExtractionError(ManualQAError):
    """Raised when a byte buffer is not a parseable PDF."""

    kind = "extraction_error"


class EmbeddingError(ManualQAError):
    """Upstream embedding failure. Retryable only when rate limited (HTTP 429)."""

    kind = "embedding_error"

    def __init__(self, message: str, status_code: int | None = None, body: Any = None):
        self.status_code = status_code
        self.body = body
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.status_code == 429


class RetrievalError(ManualQAError):
    """Semantic search failed; the query cannot be answered."""

    kind = "retrieval_error"


SYNTHESIS_USER_MESSAGES = {
    "rate_limit": "The assistant is in high demand right now. Please try again shortly.",
    "payment_required": "The assistant service is not configured correctly. Please contact support.",
    "unauthorized": "Please sign in again.",
    "server_error": "Something went wrong. Please try again.",
}


class SynthesisError(ManualQAError):
    """Chat completion failure classified for user-facing messaging."""

    def __init__(self, message: str, kind: str = "server_error", status_code: int | None = None):
        if kind not in SYNTHESIS_USER_MESSAGES:
            kind = "server_error"
        self.kind = kind
        self.status_code = status_code
        super().__init__(message)

    @property
    def user_message(self) -> str:
        return SYNTHESIS_USER_MESSAGES[self.kind]

    @classmethod
    def from_status(cls, status_code: int | None, detail: str = "") -> "SynthesisError":
        kinds = {429: "rate_limit", 402: "payment_required", 401: "unauthorized"}
        kind = kinds.get(int(status_code), "server_error") if status_code is not None else "server_error"
        return cls(f"chat completion failed ({status_code}): {detail}".strip(), kind=kind, status_code=status_code)


class PersistenceError(ManualQAError):
    kind = "persistence_error"


class ConversationNotFoundError(ManualQAError):
    kind = "not_found"

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"conversation not found: {conversation_id}")


class IngestionAbortedError(ManualQAError):
    """An ingestion run stopped early. `progress` holds the counts reached so far."""

    kind = "ingestion_error"

    def __init__(self, message: str, progress: Any):
        self.progress = progress
        super().__init__(message)
