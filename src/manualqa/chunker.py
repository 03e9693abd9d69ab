"""
Structural chunker for long manuals.

Lines are folded through an explicit `ScanState`: structural markers
(VOLUME / CHAPTER / SECTION) stay in effect until a newer marker replaces
them, warning flags accumulate per chunk, and a chunk is closed once its
buffered text crosses the target length. The chunk carries the page number
that was active when it was closed.
"""
from __future__ import annotations

import hashlib
import math
import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, replace

from .config import CHUNK_TARGET_CHARS
from .models import WARNING_FLAGS, Chunk, PageText

VOLUME_RE = re.compile(r"\bVOLUME\s+(?:[IVXLC]+|\d+)\b", re.IGNORECASE)
CHAPTER_RE = re.compile(r"\bCHAPTER\s+\d+", re.IGNORECASE)
SECTION_RE = re.compile(r"\bSECTION\s+\d+", re.IGNORECASE)


def content_hash(text: str) -> str:
    """SHA-256 hex digest of the trimmed text (UTF-8)."""
    return hashlib.sha256(str(text or "").strip().encode("utf-8")).hexdigest()


def estimate_tokens(text: str) -> int:
    return int(math.ceil(len(text or "") / 4))


@dataclass(frozen=True)
class StructureMarkers:
    volume: str = ""
    chapter: str = ""
    section: str = ""

    def advance(self, line: str) -> "StructureMarkers":
        updates = {}
        stripped = line.strip()
        if VOLUME_RE.search(line):
            updates["volume"] = stripped
        if CHAPTER_RE.search(line):
            updates["chapter"] = stripped
        if SECTION_RE.search(line):
            updates["section"] = stripped
        return replace(self, **updates) if updates else self


@dataclass(frozen=True)
class ScanState:
    markers: StructureMarkers = StructureMarkers()
    lines: tuple[str, ...] = ()
    length: int = 0
    flags: tuple[str, ...] = ()
    page_number: int = 1

    @property
    def buffer(self) -> str:
        return "".join(self.lines)


@dataclass(frozen=True)
class ChunkDraft:
    text: str
    page_number: int
    markers: StructureMarkers
    flags: tuple[str, ...]


def detect_flags(line: str) -> tuple[str, ...]:
    upper = line.upper()
    return tuple(flag for flag in WARNING_FLAGS if flag in upper)


def _merge_flags(current: tuple[str, ...], found: tuple[str, ...]) -> tuple[str, ...]:
    if not found:
        return current
    merged = list(current)
    for flag in found:
        if flag not in merged:
            merged.append(flag)
    return tuple(merged)


def _close(state: ScanState) -> tuple[ScanState, ChunkDraft | None]:
    text = state.buffer.strip()
    draft = None
    if text:
        draft = ChunkDraft(text=text, page_number=state.page_number, markers=state.markers, flags=state.flags)
    return replace(state, lines=(), length=0, flags=()), draft


def scan_line(
    state: ScanState,
    page_number: int,
    line: str,
    target_chars: int = CHUNK_TARGET_CHARS,
) -> tuple[ScanState, ChunkDraft | None]:
    """Folds one line into the state. Returns the new state and a closed chunk, if any."""
    piece = line + "\n"
    state = replace(
        state,
        markers=state.markers.advance(line),
        flags=_merge_flags(state.flags, detect_flags(line)),
        lines=state.lines + (piece,),
        length=state.length + len(piece),
        page_number=page_number,
    )
    if state.length >= target_chars:
        return _close(state)
    return state, None


def flush(state: ScanState) -> tuple[ScanState, ChunkDraft | None]:
    """Closes whatever text is left in the buffer."""
    return _close(state)


def iter_drafts(pages: Iterable[PageText], target_chars: int = CHUNK_TARGET_CHARS) -> Iterator[ChunkDraft]:
    state = ScanState()
    for page in pages:
        for line in str(page.text or "").split("\n"):
            state, draft = scan_line(state, page.page_number, line, target_chars)
            if draft is not None:
                yield draft
    _, draft = flush(state)
    if draft is not None:
        yield draft


def chunk_pages(pages: Iterable[PageText], target_chars: int = CHUNK_TARGET_CHARS) -> list[Chunk]:
    """
    Chunks page texts in order; sequence numbers start at 1 with no gaps.
    A draft whose text repeats an earlier one (boilerplate pages) is dropped
    before it is numbered, so stored sequences stay gapless.
    """
    chunks: list[Chunk] = []
    seen: set[str] = set()
    for draft in iter_drafts(pages, target_chars):
        digest = content_hash(draft.text)
        if digest in seen:
            continue
        seen.add(digest)
        chunks.append(
            Chunk(
                seq=len(chunks) + 1,
                text=draft.text,
                page_number=draft.page_number,
                content_hash=digest,
                volume=draft.markers.volume or None,
                chapter=draft.markers.chapter or None,
                section_label=draft.markers.section or None,
                warning_flags=draft.flags,
                token_count=estimate_tokens(draft.text),
            )
        )
    return chunks
