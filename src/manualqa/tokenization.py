"""
Query text analysis shared by retrieval, context building and search.
"""
from __future__ import annotations

import re

STOP_WORDS = frozenset(
    {
        "what", "is", "are", "the", "a", "an", "how", "why", "when", "where",
        "can", "do", "does", "could", "would", "should",
    }
)
MIN_KEYWORD_LEN = 4
MIN_PHRASE_LEN = 6

_PUNCT_RE = re.compile(r"[^\w\s'\-]", flags=re.UNICODE)
_QUOTED_RE = re.compile(r'"([^"]+)"')


def normalize_words(text: str) -> list[str]:
    """
    Lowercases and strips punctuation. Hyphens and apostrophes survive only
    inside a word, so "no-decompression" stays whole but "-limit'" does not.
    """
    cleaned = _PUNCT_RE.sub(" ", str(text or "").lower())
    out = []
    for raw in cleaned.split():
        token = raw.strip("-'_")
        if token:
            out.append(token)
    return out


def normalize_text(text: str) -> str:
    return " ".join(normalize_words(text))


def extract_keywords(query: str) -> list[str]:
    """Non stop-word tokens longer than three characters, in query order, deduplicated."""
    seen: dict[str, None] = {}
    for token in normalize_words(query):
        if token in STOP_WORDS or len(token) < MIN_KEYWORD_LEN:
            continue
        seen.setdefault(token, None)
    return list(seen)


def _strip_leading_stop_words(words: list[str]) -> list[str]:
    idx = 0
    while idx < len(words) and words[idx] in STOP_WORDS:
        idx += 1
    return words[idx:]


def extract_phrases(query: str) -> list[str]:
    """
    Phrases used for exact-match scoring:
    - every double-quoted substring of the raw query
    - the normalized full query, if longer than 5 characters
    - the normalized query without its leading stop-words, if longer than 5 characters
    """
    phrases: dict[str, None] = {}
    for quoted in _QUOTED_RE.findall(str(query or "")):
        phrase = quoted.strip().lower()
        if phrase:
            phrases.setdefault(phrase, None)

    words = normalize_words(query)
    full = " ".join(words)
    if len(full) >= MIN_PHRASE_LEN:
        phrases.setdefault(full, None)
    core = " ".join(_strip_leading_stop_words(words))
    if len(core) >= MIN_PHRASE_LEN:
        phrases.setdefault(core, None)
    return list(phrases)


def count_word_occurrences(text: str, word: str) -> int:
    """Case-insensitive whole-word occurrence count."""
    if not word:
        return 0
    pattern = re.compile(r"\b" + re.escape(word) + r"\b", flags=re.IGNORECASE)
    return len(pattern.findall(str(text or "")))


def find_phrase(text: str, phrase: str) -> tuple[int, int] | None:
    """Case-insensitive (start, end) of the first occurrence, as offsets into `text` itself."""
    if not phrase:
        return None
    match = re.search(re.escape(phrase), str(text or ""), flags=re.IGNORECASE)
    return match.span() if match else None
