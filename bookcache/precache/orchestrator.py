"""Book pre-cache pipeline: extract -> check -> batched synthesis -> done."""
from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from ..cache.keys import derive_cache_key, extract_book_id
from ..cache.stats import CacheAggregator
from ..speech import CachedSpeech
from .extractor import TextExtractor
from .progress import PreCacheProgress, PreCacheState

logger = logging.getLogger("bookcache.precache")

DEFAULT_BATCH_SIZE = 5

ProgressCallback = Callable[[PreCacheProgress], None]


class EmptyBookError(ValueError):
    """Extractor returned no chunks."""


class _JobHandle:
    def __init__(self):
        self.cancelled = False


class PreCacheOrchestrator:
    """Runs one pre-cache job at a time.

    Cancellation and pause are cooperative and only observed between
    batches; a batch already dispatched always runs to completion.
    """

    def __init__(self, speech: CachedSpeech, aggregator: CacheAggregator,
                 batch_size: int = DEFAULT_BATCH_SIZE):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._speech = speech
        self._aggregator = aggregator
        self._batch_size = batch_size
        self._job: Optional[_JobHandle] = None
        self._resumed = asyncio.Event()
        self._resumed.set()
        self._state = PreCacheState.IDLE

    @property
    def state(self) -> PreCacheState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._job is not None and not self._job.cancelled

    @property
    def is_paused(self) -> bool:
        return not self._resumed.is_set()

    def pause(self) -> None:
        self._resumed.clear()

    def resume(self) -> None:
        self._resumed.set()

    def cancel(self) -> None:
        if self._job is not None:
            self._job.cancelled = True
        # wake a paused job so it can observe the cancellation
        self._resumed.set()

    async def start(self, book_key: str, voice: str, extractor: TextExtractor,
                    on_progress: Optional[ProgressCallback] = None,
                    api_key: Optional[str] = None) -> PreCacheProgress:
        job = _JobHandle()
        self._job = job
        self._resumed.set()
        book_id = extract_book_id(book_key)
        last = PreCacheProgress(PreCacheState.IDLE, 0, 0, "")

        def report(state: PreCacheState, current: int, total: int, message: str,
                   error: Optional[str] = None) -> PreCacheProgress:
            nonlocal last
            self._state = state
            last = PreCacheProgress(state, current, total, message, error)
            if on_progress is not None:
                on_progress(last)
            return last

        try:
            report(PreCacheState.EXTRACTING, 0, 0, "Extracting book text...")
            chunks = self.unique_chunks(await extractor.extract_chunks(book_key), voice)
            if not chunks:
                raise EmptyBookError("Book appears to be empty")
            logger.info("precache.extracted book=%s voice=%s chunks=%d", book_id, voice, len(chunks))

            if job.cancelled:
                return report(PreCacheState.CANCELLED, 0, len(chunks), "Pre-caching cancelled")

            report(PreCacheState.CHECKING, 0, len(chunks),
                   f"Checking cache status for {len(chunks)} chunks...")
            status = await self._aggregator.check(chunks, voice, book_key)
            uncached = status.uncached_texts
            if not uncached:
                return report(PreCacheState.COMPLETED, len(chunks), len(chunks), "All texts already cached!")

            return await self._synthesize_all(job, uncached, voice, book_key, api_key, report)
        except EmptyBookError as e:
            logger.warning("precache.failed book=%s reason=%s", book_id, e)
            return report(PreCacheState.FAILED, 0, 0, "No text found in book", str(e))
        except Exception as e:
            logger.error("precache.failed book=%s error=%s", book_id, e)
            report(PreCacheState.FAILED, last.current, last.total, "Pre-caching failed", str(e))
            raise
        finally:
            if self._job is job:
                self._job = None

    async def _synthesize_all(self, job: _JobHandle, uncached: list[str], voice: str,
                              book_key: str, api_key: Optional[str],
                              report: Callable[..., PreCacheProgress]) -> PreCacheProgress:
        total = len(uncached)
        completed = 0
        failed = 0
        report(PreCacheState.SYNTHESIZING, 0, total, f"Synthesizing {total} uncached chunks...")

        for start in range(0, total, self._batch_size):
            if job.cancelled:
                logger.info("precache.cancelled book=%s current=%d total=%d",
                            extract_book_id(book_key), completed, total)
                return report(PreCacheState.CANCELLED, completed, total, "Pre-caching cancelled")

            if not self._resumed.is_set():
                report(PreCacheState.PAUSED, completed, total, "Pre-caching paused")
                await self._resumed.wait()
                if job.cancelled:
                    return report(PreCacheState.CANCELLED, completed, total, "Pre-caching cancelled")
                report(PreCacheState.SYNTHESIZING, completed, total,
                       f"Resuming at {completed}/{total} chunks...")

            batch = uncached[start:start + self._batch_size]
            results = await asyncio.gather(
                *[self._synthesize_one(text, voice, book_key, api_key) for text in batch]
            )
            ok = sum(1 for r in results if r)
            completed += ok
            failed += len(batch) - ok
            report(PreCacheState.SYNTHESIZING, completed, total,
                   f"Synthesized {completed}/{total} chunks...")

        message = f"Successfully pre-cached {completed} chunks!"
        if failed:
            message = f"Pre-cached {completed}/{total} chunks ({failed} failed)"
        logger.info("precache.completed book=%s synthesized=%d failed=%d",
                    extract_book_id(book_key), completed, failed)
        return report(PreCacheState.COMPLETED, completed, total, message)

    async def _synthesize_one(self, text: str, voice: str, book_key: str,
                              api_key: Optional[str]) -> bool:
        try:
            await self._speech.synthesize(text, voice, book_key, api_key)
            return True
        except Exception as e:
            logger.error("precache.chunk-failed text_preview='%s' error=%s", text[:50], e)
            return False

    @staticmethod
    def unique_chunks(texts: list[str], voice: str) -> list[str]:
        seen: set[str] = set()
        chunks: list[str] = []
        for text in texts:
            if not text.strip():
                continue
            key = derive_cache_key(text, voice)
            if key not in seen:
                seen.add(key)
                chunks.append(text)
        return chunks
