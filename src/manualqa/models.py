"""
Canonical record shapes used across ingestion, retrieval and synthesis.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

WARNING_FLAGS = ("WARNING", "CAUTION", "NOTE")
SNIPPET_CHARS = 200


@dataclass(frozen=True)
class PageText:
    page_number: int
    text: str


@dataclass(frozen=True)
class Chunk:
    """A contiguous slice of manual text; the unit of retrieval."""

    seq: int
    text: str
    page_number: int
    content_hash: str
    volume: str | None = None
    chapter: str | None = None
    section_label: str | None = None
    warning_flags: tuple[str, ...] = ()
    token_count: int = 0
    id: str | None = None
    document_id: str | None = None
    document_title: str | None = None

    def location_label(self) -> str:
        return f"{self.volume or 'Unknown'} - {self.chapter or 'Unknown'} - Page {self.page_number}"


@dataclass(frozen=True)
class ScoredChunk:
    chunk: Chunk
    score: float
    source: str  # keyword | semantic
    similarity: float | None = None


@dataclass(frozen=True)
class Citation:
    """Snapshot of a chunk at answer time; stays valid if the chunk later changes."""

    document_id: str | None
    document_title: str
    snippet: str
    page_number: int
    volume: str | None = None
    chapter: str | None = None
    section_label: str | None = None

    @classmethod
    def from_chunk(cls, chunk: Chunk) -> "Citation":
        title = chunk.document_title or f"{chunk.volume or 'Unknown'} - {chunk.chapter or 'Unknown'}"
        return cls(
            document_id=chunk.document_id,
            document_title=title,
            snippet=chunk.text[:SNIPPET_CHARS],
            page_number=chunk.page_number,
            volume=chunk.volume,
            chapter=chunk.chapter,
            section_label=chunk.section_label,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Citation":
        return cls(
            document_id=data.get("document_id"),
            document_title=str(data.get("document_title") or ""),
            snippet=str(data.get("snippet") or ""),
            page_number=int(data.get("page_number") or 0),
            volume=data.get("volume"),
            chapter=data.get("chapter"),
            section_label=data.get("section_label"),
        )


@dataclass(frozen=True)
class DocumentRecord:
    id: str
    title: str
    version: str | None = None
    description: str | None = None
    source_ref: str | None = None
    total_pages: int | None = None
    is_published: bool = False
    published_at: str | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class ChatMessage:
    role: str  # user | assistant
    content: str
    citations: tuple[Citation, ...] = ()
    created_at: str | None = None
    id: int | None = None


@dataclass
class IngestResult:
    document_id: str
    total_pages: int = 0
    chunks_created: int = 0
    chunks_skipped: int = 0
    total_chunks: int = 0
    mode: str = "incremental"
    batches_completed: int = 0
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "documentId": self.document_id,
            "totalPages": self.total_pages,
            "chunksCreated": self.chunks_created,
            "chunksSkipped": self.chunks_skipped,
            "totalChunks": self.total_chunks,
            "mode": self.mode,
        }
