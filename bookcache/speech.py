"""Cache-first speech synthesis shared by the HTTP API and the pre-cache pipeline."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from .cache.keys import derive_cache_key, extract_book_id
from .cache.store import BookCacheStore, CacheEntryNotFound

logger = logging.getLogger("bookcache")


class SynthesisGateway(Protocol):
    async def synthesize(self, text: str, voice: str, api_key: Optional[str] = None) -> bytes: ...


@dataclass(frozen=True)
class SpeechResult:
    audio: bytes
    cache_key: str
    book_id: str
    hit: bool


class CachedSpeech:
    def __init__(self, store: BookCacheStore, gateway: SynthesisGateway):
        self._store = store
        self._gateway = gateway

    @property
    def store(self) -> BookCacheStore:
        return self._store

    async def synthesize(self, text: str, voice: str, book_key: Optional[str] = None,
                         api_key: Optional[str] = None) -> SpeechResult:
        book_id = extract_book_id(book_key)
        cache_key = derive_cache_key(text, voice)

        if await self._store.exists_async(book_id, voice, cache_key):
            try:
                await self._store.touch_async(book_id, voice, cache_key)
                audio = await self._store.read_async(book_id, voice, cache_key)
            except CacheEntryNotFound:
                # evicted between the check and the read
                logger.warning("Cache entry vanished | key=%s book=%s voice=%s",
                               cache_key[:8], book_id, voice)
            else:
                logger.info("Cache HIT | key=%s book=%s voice=%s", cache_key[:8], book_id, voice)
                return SpeechResult(audio=audio, cache_key=cache_key, book_id=book_id, hit=True)

        logger.info("Cache MISS | key=%s book=%s voice=%s text_preview='%s'",
                    cache_key[:8], book_id, voice, text[:50])
        audio = await self._gateway.synthesize(text, voice, api_key)
        await self._store.write_async(book_id, voice, cache_key, audio, text, book_id)
        return SpeechResult(audio=audio, cache_key=cache_key, book_id=book_id, hit=False)
