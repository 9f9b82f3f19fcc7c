"""Cache statistics computed by scanning the store."""
from __future__ import annotations

import asyncio
import math
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from .keys import derive_cache_key, extract_book_id, truncate_key
from .metadata import CacheMetadata
from .store import BookCacheStore, CacheEntrySummary

logger = logging.getLogger("bookcache.stats")

TOP_N = 10
PREVIEW_CHARS = 100


def _mb(size: int) -> str:
    return f"{size / 1024 / 1024:.2f}"


def _preview(text: str) -> str:
    return text[:PREVIEW_CHARS] + ("..." if len(text) > PREVIEW_CHARS else "")


@dataclass
class CacheSummary:
    entry_count: int = 0
    total_bytes: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "fileCount": self.entry_count,
            "totalSize": self.total_bytes,
            "totalSizeMB": _mb(self.total_bytes),
            "totalSizeGB": f"{self.total_bytes / 1024 / 1024 / 1024:.2f}",
        }


@dataclass
class BookStats:
    book_key: str
    cached_paragraphs: int = 0
    total_size: int = 0
    voices: set[str] = field(default_factory=set)
    last_used: Optional[datetime] = None

    def to_dict(self) -> dict[str, object]:
        return {
            "bookKey": self.book_key,
            "cachedParagraphs": self.cached_paragraphs,
            "totalSize": self.total_size,
            "totalSizeMB": _mb(self.total_size),
            "voices": sorted(self.voices),
            "lastUsed": self.last_used.isoformat() if self.last_used else None,
        }


@dataclass
class VoiceStats:
    voice: str
    count: int = 0
    total_size: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "voice": self.voice,
            "count": self.count,
            "totalSize": self.total_size,
            "totalSizeMB": _mb(self.total_size),
        }


@dataclass
class UsageEntry:
    cache_key: str
    book_key: str
    text: str
    voice: str
    use_count: int
    last_used: datetime
    size: int

    def to_dict(self) -> dict[str, object]:
        return {
            "text": _preview(self.text),
            "voice": self.voice,
            "bookKey": self.book_key,
            "useCount": self.use_count,
            "lastUsed": self.last_used.isoformat(),
            "sizeMB": _mb(self.size),
        }


@dataclass
class CacheDetail:
    summary: CacheSummary
    per_book: list[BookStats]
    per_voice: list[VoiceStats]
    top_used: list[UsageEntry]
    recent: list[UsageEntry]

    def to_dict(self) -> dict[str, object]:
        return {
            "summary": self.summary.to_dict(),
            "books": [b.to_dict() for b in self.per_book],
            "voices": [v.to_dict() for v in self.per_voice],
            "topUsed": [e.to_dict() for e in self.top_used],
            "recent": [e.to_dict() for e in self.recent],
        }


@dataclass
class BookStatus:
    book_key: str
    voice: Optional[str]
    cached_count: int = 0
    total_size: int = 0
    last_updated: float = 0
    voices: Optional[list[str]] = None

    def to_dict(self) -> dict[str, object]:
        data: dict[str, object] = {
            "bookKey": self.book_key,
            "cachedCount": self.cached_count,
            "totalSize": self.total_size,
            "lastUpdated": self.last_updated,
        }
        if self.voice is not None:
            data["voice"] = self.voice
        if self.voices is not None:
            data["voices"] = self.voices
        return data


@dataclass
class CheckItem:
    text: str
    cached: bool
    cache_key: str


@dataclass
class CheckResult:
    results: list[CheckItem]
    cached_count: int
    total_count: int
    cache_rate: float

    @property
    def uncached_texts(self) -> list[str]:
        return [r.text for r in self.results if not r.cached]

    def to_dict(self) -> dict[str, object]:
        return {
            "results": [
                {"text": r.text, "cached": r.cached, "cacheKey": r.cache_key}
                for r in self.results
            ],
            "cachedCount": self.cached_count,
            "totalCount": self.total_count,
            "cacheRate": self.cache_rate,
        }


class CacheAggregator:
    def __init__(self, store: BookCacheStore):
        self._store = store

    def summary(self) -> CacheSummary:
        summary = CacheSummary()
        for entry in self._store.enumerate():
            summary.entry_count += 1
            summary.total_bytes += entry.file_size
        for size in self._store.iter_legacy_sizes():
            summary.entry_count += 1
            summary.total_bytes += size
        return summary

    def detail(self) -> CacheDetail:
        summary = CacheSummary()
        books: OrderedDict[str, BookStats] = OrderedDict()
        voices: OrderedDict[str, VoiceStats] = OrderedDict()
        usage: list[UsageEntry] = []

        for entry in self._store.enumerate():
            summary.entry_count += 1
            summary.total_bytes += entry.file_size
            meta = entry.metadata
            if meta is None:
                continue
            usage.append(self._usage(entry, meta))
            self._add_book(books, entry, meta)
            vstats = voices.setdefault(meta.voice or entry.voice, VoiceStats(voice=meta.voice or entry.voice))
            vstats.count += 1
            vstats.total_size += meta.size

        for size in self._store.iter_legacy_sizes():
            summary.entry_count += 1
            summary.total_bytes += size

        # ties on count/timestamp fall back to cache key order
        by_key = sorted(usage, key=lambda u: u.cache_key)
        top_used = sorted(by_key, key=lambda u: u.use_count, reverse=True)[:TOP_N]
        recent = sorted(by_key, key=lambda u: u.last_used, reverse=True)[:TOP_N]

        return CacheDetail(
            summary=summary,
            per_book=list(books.values()),
            per_voice=list(voices.values()),
            top_used=top_used,
            recent=recent,
        )

    def _usage(self, entry: CacheEntrySummary, meta: CacheMetadata) -> UsageEntry:
        return UsageEntry(
            cache_key=entry.cache_key,
            book_key=meta.book_key or entry.book_id,
            text=meta.text,
            voice=meta.voice or entry.voice,
            use_count=meta.use_count,
            last_used=meta.last_used,
            size=meta.size,
        )

    def _add_book(self, books: OrderedDict[str, BookStats], entry: CacheEntrySummary,
                  meta: CacheMetadata) -> None:
        book_key = meta.book_key or entry.book_id
        stats = books.setdefault(book_key, BookStats(book_key=book_key))
        stats.cached_paragraphs += 1
        stats.total_size += meta.size
        stats.voices.add(meta.voice or entry.voice)
        if stats.last_used is None or meta.last_used > stats.last_used:
            stats.last_used = meta.last_used

    def book_status(self, book_key: str, voice: Optional[str] = None) -> BookStatus:
        book_id = extract_book_id(book_key)
        status = BookStatus(book_key=book_key, voice=voice)
        if voice is None:
            status.voices = []
            candidate_voices = list(self._store.iter_voices(book_id))
        else:
            candidate_voices = [voice]

        for v in candidate_voices:
            found = False
            for entry in self._store.iter_entries(book_id, v):
                found = True
                status.cached_count += 1
                status.total_size += entry.file_size
                status.last_updated = max(status.last_updated, entry.modified_ms)
            if found and status.voices is not None:
                status.voices.append(v)
        return status

    async def check(self, texts: list[str], voice: str, book_key: Optional[str] = None) -> CheckResult:
        book_id = extract_book_id(book_key)

        async def _check_one(text: str) -> CheckItem:
            cache_key = derive_cache_key(text, voice)
            cached = await self._store.exists_async(book_id, voice, cache_key)
            return CheckItem(text=text, cached=cached, cache_key=truncate_key(cache_key))

        results = list(await asyncio.gather(*[_check_one(t) for t in texts]))
        cached_count = sum(1 for r in results if r.cached)
        total = len(results)
        rate = math.floor(cached_count / total * 100 + 0.5) / 100 if total else 0.0
        logger.info("Cache check | book=%s voice=%s cached=%d/%d", book_id, voice, cached_count, total)
        return CheckResult(results=results, cached_count=cached_count, total_count=total, cache_rate=rate)
