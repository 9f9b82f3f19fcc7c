"""Text extractor boundary for the pre-cache pipeline."""
from __future__ import annotations

import re
from typing import Iterable, Protocol

_SENTENCE_END_RE = re.compile(r"(?<=[.!?…])\s+")


class TextExtractor(Protocol):
    """Yields a book's distinct, non-empty, trimmed chunks in reading order.

    Implementations that move a reader position while extracting must put it
    back before returning.
    """

    async def extract_chunks(self, book_key: str) -> list[str]: ...


def dedupe_chunks(texts: Iterable[str]) -> list[str]:
    """Trim, drop empties and keep the first occurrence of each chunk."""
    seen: set[str] = set()
    chunks: list[str] = []
    for text in texts:
        trimmed = text.strip()
        if trimmed and trimmed not in seen:
            seen.add(trimmed)
            chunks.append(trimmed)
    return chunks


def split_sentences(body: str) -> list[str]:
    chunks: list[str] = []
    for paragraph in body.splitlines():
        chunks.extend(_SENTENCE_END_RE.split(paragraph))
    return dedupe_chunks(chunks)


class StaticTextExtractor:
    """Extractor over chunks already known to the caller."""

    def __init__(self, texts: Iterable[str]):
        self._chunks = dedupe_chunks(texts)

    async def extract_chunks(self, book_key: str) -> list[str]:
        return list(self._chunks)
