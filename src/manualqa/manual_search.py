"""
Standalone manual search (semantic or full-text) with filters and pagination.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

from .config import SEARCH_PAGE_SIZE, SEARCH_SIMILARITY_THRESHOLD
from .document_manager import DocumentStore
from .embeddings import EmbeddingClient
from .memory_manager import ConversationStore
from .models import Chunk
from .observability import get_logger
from .tokenization import STOP_WORDS, normalize_words

logger = get_logger(__name__)

SEARCH_TYPES = ("semantic", "fulltext")
EXCERPT_CHARS = 300
FULLTEXT_RELEVANCE = 0.85
_ALL = "all"


def determine_content_type(warning_flags, text: str) -> str:
    """warning | caution | note | text; stored flags win over scanning the text."""
    flags = {str(flag).upper() for flag in (warning_flags or ())}
    if flags:
        for flag in ("WARNING", "CAUTION", "NOTE"):
            if flag in flags:
                return flag.lower()
        return "text"
    upper = str(text or "").upper()
    for flag in ("WARNING", "CAUTION", "NOTE"):
        if f"{flag}:" in upper:
            return flag.lower()
    return "text"


def _excerpt(text: str) -> str:
    if len(text) > EXCERPT_CHARS:
        return text[:EXCERPT_CHARS] + "..."
    return text


def _clean_filter(value: str | None) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    if not value or value.lower() == _ALL:
        return None
    return value


def search_terms(query: str) -> list[str]:
    words = normalize_words(query)
    terms = [w for w in words if w not in STOP_WORDS]
    return list(dict.fromkeys(terms or words))


@dataclass
class SearchPage:
    results: list[dict[str, Any]] = field(default_factory=list)
    total_count: int = 0
    page: int = 1
    page_size: int = SEARCH_PAGE_SIZE

    @property
    def total_pages(self) -> int:
        return int(math.ceil(self.total_count / self.page_size)) if self.page_size else 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "results": self.results,
            "totalCount": self.total_count,
            "page": self.page,
            "pageSize": self.page_size,
            "totalPages": self.total_pages,
        }


class ManualSearch:
    def __init__(
        self,
        store: DocumentStore,
        embedder: EmbeddingClient,
        conversations: ConversationStore | None = None,
        *,
        similarity_threshold: float = SEARCH_SIMILARITY_THRESHOLD,
    ):
        self.store = store
        self.embedder = embedder
        self.conversations = conversations
        self.similarity_threshold = float(similarity_threshold)

    @staticmethod
    def _result(chunk: Chunk, relevance: float) -> dict[str, Any]:
        return {
            "id": chunk.id,
            "title": f"{chunk.volume or 'Unknown'} - {chunk.chapter or 'Unknown'}",
            "volume": chunk.volume,
            "chapter": chunk.chapter,
            "page": str(chunk.page_number) if chunk.page_number else "N/A",
            "excerpt": _excerpt(chunk.text),
            "type": determine_content_type(chunk.warning_flags, chunk.text),
            "relevanceScore": round(float(relevance), 4),
        }

    def search(
        self,
        query: str,
        *,
        search_type: str = "fulltext",
        volume_filter: str | None = None,
        safety_filter: str | None = None,
        page: int = 1,
        page_size: int = SEARCH_PAGE_SIZE,
        user_id: str | None = None,
    ) -> SearchPage:
        query = str(query or "").strip()
        if not query:
            raise ValueError("search query is required")
        if search_type not in SEARCH_TYPES:
            raise ValueError(f"unknown search type: {search_type!r}")
        page = max(1, int(page))
        page_size = max(1, int(page_size))
        volume = _clean_filter(volume_filter)
        safety = _clean_filter(safety_filter)

        if search_type == "semantic":
            vector = self.embedder.embed_query(query)
            hits = self.store.similarity_search(
                vector,
                self.similarity_threshold,
                page_size,
                volume=volume,
                safety_flag=safety,
            )
            results = [self._result(chunk, similarity) for chunk, similarity in hits]
            result_page = SearchPage(results=results, total_count=len(results), page=page, page_size=page_size)
        else:
            chunks, total = self.store.fulltext_search(
                search_terms(query),
                volume=volume,
                safety_flag=safety,
                offset=(page - 1) * page_size,
                limit=page_size,
            )
            results = [self._result(chunk, FULLTEXT_RELEVANCE) for chunk in chunks]
            result_page = SearchPage(results=results, total_count=total, page=page, page_size=page_size)

        if self.conversations is not None:
            self.conversations.log_search(
                user_id=user_id,
                query=query,
                search_type=search_type,
                results_count=len(result_page.results),
                filters={"volume": volume or _ALL, "safety": safety or _ALL},
            )
        logger.info(
            "manual_search_completed",
            search_type=search_type,
            results=len(result_page.results),
            total=result_page.total_count,
        )
        return result_page
