"""
Builds the grounding context handed to the chat model.

A chunk containing one of the query phrases is cut down to a window around
the earliest match; chunks without a phrase hit are used whole.
"""
from __future__ import annotations

from collections.abc import Sequence

from .config import CONTEXT_MAX_CHARS, CONTEXT_WINDOW_CHARS
from .models import ScoredChunk
from .tokenization import find_phrase

ELLIPSIS = "..."


def _earliest_match(text: str, phrases: Sequence[str]) -> tuple[int, int] | None:
    best: tuple[int, int] | None = None
    for phrase in phrases:
        span = find_phrase(text, str(phrase or ""))
        if span is not None and (best is None or span[0] < best[0]):
            best = span
    return best


def extract_window(text: str, phrases: Sequence[str], window: int = CONTEXT_WINDOW_CHARS) -> str:
    match = _earliest_match(str(text or ""), phrases)
    if match is None:
        return text
    match_start, match_end = match
    start = max(0, match_start - window)
    end = min(len(text), match_end + window)
    excerpt = text[start:end]
    if start > 0:
        excerpt = ELLIPSIS + excerpt
    if end < len(text):
        excerpt = excerpt + ELLIPSIS
    return excerpt


def chunk_label(scored: ScoredChunk) -> str:
    chunk = scored.chunk
    label = f"[{chunk.location_label()}]"
    if chunk.warning_flags:
        label += " [" + ", ".join(chunk.warning_flags) + "]"
    return label


def build_context(
    ranked: Sequence[ScoredChunk],
    phrases: Sequence[str],
    *,
    window: int = CONTEXT_WINDOW_CHARS,
    max_chars: int = CONTEXT_MAX_CHARS,
) -> str:
    """
    Labelled, blank-line separated chunk texts in rank order. Stops adding
    chunks once the next one would push the total past `max_chars`; the first
    chunk is always included.
    """
    blocks: list[str] = []
    used = 0
    for scored in ranked:
        body = extract_window(scored.chunk.text, phrases, window)
        block = f"{chunk_label(scored)}\n{body}"
        cost = len(block) + (2 if blocks else 0)
        if blocks and used + cost > max_chars:
            break
        blocks.append(block)
        used += cost
    return "\n\n".join(blocks)
