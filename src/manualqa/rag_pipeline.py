# /manualqa/rag_pipeline.py
"""
Hybrid retrieval over the manual: semantic (vector) and keyword (substring)
search run concurrently, then a score fusion favours exact, early phrase hits
while still surfacing paraphrased matches from the vector side.
"""
import asyncio
from collections.abc import Sequence
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

# Local Imports
from .config import (
    HISTORY_CONTEXT_MESSAGES,
    KEYWORD_CANDIDATE_LIMIT,
    MAX_QUERY_CHARS,
    RETRIEVAL_TOP_K,
    SEMANTIC_CANDIDATE_LIMIT,
    SEMANTIC_SIMILARITY_THRESHOLD,
)
from .document_manager import DocumentStore
from .embeddings import EmbeddingClient
from .errors import EmbeddingError, RetrievalError
from .models import Chunk, ScoredChunk
from .observability import get_logger
from .tokenization import count_word_occurrences, extract_keywords, extract_phrases, find_phrase

logger = get_logger(__name__)

PHRASE_MATCH_SCORE = 100.0
PHRASE_EARLY_BONUS = 50.0  # first occurrence within EARLY_WINDOW
PHRASE_VERY_EARLY_BONUS = 25.0  # first occurrence within VERY_EARLY_WINDOW
EARLY_WINDOW = 500
VERY_EARLY_WINDOW = 200
KEYWORD_OCCURRENCE_SCORE = 5.0
SEMANTIC_SCALE = 50.0


def _message_text(message: Any) -> str:
    if isinstance(message, str):
        return message
    if isinstance(message, dict):
        return str(message.get("content") or "")
    return str(getattr(message, "content", "") or "")


def build_contextual_query(
    query: str,
    history: Sequence[Any] = (),
    *,
    history_messages: int = HISTORY_CONTEXT_MESSAGES,
    max_chars: int = MAX_QUERY_CHARS,
) -> str:
    """Last few history turns + the new query, cut to `max_chars`. This is what gets embedded."""
    recent = list(history or [])[-history_messages:] if history_messages > 0 else []
    parts = [_message_text(m) for m in recent]
    parts = [p for p in parts if p]
    if parts:
        text = " ".join(parts) + " " + str(query or "")
    else:
        text = str(query or "")
    return text[:max_chars]


def score_keyword_chunk(text: str, phrases: Sequence[str], keywords: Sequence[str]) -> float:
    score = 0.0
    for phrase in phrases:
        span = find_phrase(text, phrase)
        if span is None:
            continue
        pos = span[0]
        score += PHRASE_MATCH_SCORE
        if pos < EARLY_WINDOW:
            score += PHRASE_EARLY_BONUS
            if pos < VERY_EARLY_WINDOW:
                score += PHRASE_VERY_EARLY_BONUS
    for keyword in keywords:
        score += KEYWORD_OCCURRENCE_SCORE * count_word_occurrences(text, keyword)
    return score


def fuse_results(
    keyword_chunks: Sequence[Chunk],
    semantic_hits: Sequence[tuple[Chunk, float]],
    phrases: Sequence[str],
    keywords: Sequence[str],
    *,
    top_k: int = RETRIEVAL_TOP_K,
) -> list[ScoredChunk]:
    """
    Keyword candidates are scored first; a semantic candidate only counts if
    no keyword candidate had the same chunk id. Ties keep arrival order.
    """
    seen: set[str] = set()
    scored: list[ScoredChunk] = []

    for chunk in keyword_chunks:
        key = chunk.id or chunk.content_hash
        if key in seen:
            continue
        seen.add(key)
        scored.append(
            ScoredChunk(
                chunk=chunk,
                score=score_keyword_chunk(chunk.text, phrases, keywords),
                source="keyword",
            )
        )

    for chunk, similarity in semantic_hits:
        key = chunk.id or chunk.content_hash
        if key in seen:
            continue
        seen.add(key)
        scored.append(
            ScoredChunk(
                chunk=chunk,
                score=float(similarity) * SEMANTIC_SCALE,
                source="semantic",
                similarity=float(similarity),
            )
        )

    ranked = sorted(scored, key=lambda item: item.score, reverse=True)
    return ranked[: max(0, int(top_k))]


@dataclass(frozen=True)
class RetrievalPlan:
    contextual_query: str
    keywords: list[str]
    phrases: list[str]


class HybridRetriever:
    """Runs semantic and keyword search concurrently, then fuses the scores."""

    def __init__(
        self,
        store: DocumentStore,
        embedder: EmbeddingClient,
        *,
        similarity_threshold: float = SEMANTIC_SIMILARITY_THRESHOLD,
        semantic_limit: int = SEMANTIC_CANDIDATE_LIMIT,
        keyword_limit: int = KEYWORD_CANDIDATE_LIMIT,
        top_k: int = RETRIEVAL_TOP_K,
        history_messages: int = HISTORY_CONTEXT_MESSAGES,
        max_query_chars: int = MAX_QUERY_CHARS,
    ):
        self.store = store
        self.embedder = embedder
        self.similarity_threshold = float(similarity_threshold)
        self.semantic_limit = int(semantic_limit)
        self.keyword_limit = int(keyword_limit)
        self.top_k = int(top_k)
        self.history_messages = int(history_messages)
        self.max_query_chars = int(max_query_chars)

    def plan(self, query: str, history: Sequence[Any] = ()) -> RetrievalPlan:
        return RetrievalPlan(
            contextual_query=build_contextual_query(
                query,
                history,
                history_messages=self.history_messages,
                max_chars=self.max_query_chars,
            ),
            keywords=extract_keywords(query),
            phrases=extract_phrases(query),
        )

    def _semantic_search(self, contextual_query: str) -> list[tuple[Chunk, float]]:
        vector = self.embedder.embed_query(contextual_query)
        try:
            return self.store.similarity_search(vector, self.similarity_threshold, self.semantic_limit)
        except Exception as exc:
            raise RetrievalError(f"semantic search failed: {exc}") from exc

    def _keyword_search(self, keywords: list[str]) -> list[Chunk]:
        if not keywords:
            return []
        return self.store.keyword_search(keywords, self.keyword_limit)

    def _join(self, plan: RetrievalPlan, semantic_outcome, keyword_outcome) -> list[ScoredChunk]:
        if isinstance(semantic_outcome, BaseException):
            logger.error("semantic_search_failed", error=str(semantic_outcome))
            if isinstance(semantic_outcome, (EmbeddingError, RetrievalError)):
                raise semantic_outcome
            raise RetrievalError(f"semantic search failed: {semantic_outcome}") from semantic_outcome
        if isinstance(keyword_outcome, BaseException):
            logger.warning("keyword_search_failed", error=str(keyword_outcome))
            keyword_outcome = []

        ranked = fuse_results(
            keyword_outcome,
            semantic_outcome,
            plan.phrases,
            plan.keywords,
            top_k=self.top_k,
        )
        logger.info(
            "retrieval_completed",
            keyword_candidates=len(keyword_outcome),
            semantic_candidates=len(semantic_outcome),
            returned=len(ranked),
            top_score=ranked[0].score if ranked else None,
        )
        return ranked

    def retrieve(self, query: str, history: Sequence[Any] = ()) -> list[ScoredChunk]:
        plan = self.plan(query, history)
        with ThreadPoolExecutor(max_workers=2) as pool:
            semantic_future = pool.submit(self._semantic_search, plan.contextual_query)
            keyword_future = pool.submit(self._keyword_search, plan.keywords)
            outcomes = []
            for future in (semantic_future, keyword_future):
                try:
                    outcomes.append(future.result())
                except Exception as exc:
                    outcomes.append(exc)
        return self._join(plan, outcomes[0], outcomes[1])

    async def aretrieve(
        self,
        query: str,
        history: Sequence[Any] = (),
        *,
        executor: Executor | None = None,
    ) -> list[ScoredChunk]:
        plan = self.plan(query, history)
        loop = asyncio.get_running_loop()
        semantic_future = loop.run_in_executor(executor, self._semantic_search, plan.contextual_query)
        keyword_future = loop.run_in_executor(executor, self._keyword_search, plan.keywords)
        semantic_outcome, keyword_outcome = await asyncio.gather(
            semantic_future, keyword_future, return_exceptions=True
        )
        return self._join(plan, semantic_outcome, keyword_outcome)


@dataclass
class Services:
    store: Any
    conversations: Any
    embedder: Any
    retriever: Any
    synthesizer: Any
    processor: Any
    search: Any
    ingestion: Any
    auth: Any
    metrics: Any

    def close(self):
        for resource in (self.store, self.conversations):
            close = getattr(resource, "close", None)
            if callable(close):
                close()


def build_services(*, verbose: bool = False) -> Services:
    """Wires the default, config-driven component graph."""
    from .auth import StaticTokenAuthProvider
    from .manual_search import ManualSearch
    from .memory_manager import ConversationStore
    from .metrics import MetricsCollector
    from .ingestion import IngestionCoordinator
    from .query_processor import QueryProcessor
    from .storage_provider import LocalFileSourceProvider, RoutingSourceProvider
    from .synthesizer import AnswerSynthesizer
    from .config import STORAGE_DIR

    store = DocumentStore()
    conversations = ConversationStore()
    embedder = EmbeddingClient()
    retriever = HybridRetriever(store, embedder)
    synthesizer = AnswerSynthesizer()
    processor = QueryProcessor(retriever, synthesizer, conversations)
    search = ManualSearch(store, embedder, conversations)
    ingestion = IngestionCoordinator(
        store,
        embedder,
        RoutingSourceProvider(local=LocalFileSourceProvider(root=STORAGE_DIR)),
        verbose=verbose,
    )
    logger.info("services_built")
    return Services(
        store=store,
        conversations=conversations,
        embedder=embedder,
        retriever=retriever,
        synthesizer=synthesizer,
        processor=processor,
        search=search,
        ingestion=ingestion,
        auth=StaticTokenAuthProvider.from_config(),
        metrics=MetricsCollector(),
    )
