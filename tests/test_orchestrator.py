import asyncio
from dataclasses import dataclass

import pytest

from bookcache.cache.keys import derive_cache_key
from bookcache.cache.stats import CacheAggregator
from bookcache.cache.store import BookCacheStore
from bookcache.gateway.errors import BackendError
from bookcache.precache.extractor import StaticTextExtractor
from bookcache.precache.orchestrator import PreCacheOrchestrator
from bookcache.precache.progress import PreCacheProgress, PreCacheState
from bookcache.speech import CachedSpeech


class StubGateway:
    def __init__(self, fail_on: set[str] | None = None, delay: float = 0.0):
        self.calls: list[tuple[str, str]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._fail_on = fail_on or set()
        self._delay = delay
        self.on_call = None

    async def synthesize(self, text: str, voice: str, api_key: str | None = None) -> bytes:
        self.calls.append((text, voice))
        if self.on_call is not None:
            self.on_call(len(self.calls))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self._delay)
            if text in self._fail_on:
                raise BackendError("boom", status_code=500)
            return f"audio:{text}".encode()
        finally:
            self.in_flight -= 1


@dataclass
class Env:
    store: BookCacheStore
    aggregator: CacheAggregator
    gateway: StubGateway
    orchestrator: PreCacheOrchestrator
    events: list[PreCacheProgress]

    def states(self) -> list[PreCacheState]:
        return [e.state for e in self.events]


def _env(tmp_path, gateway: StubGateway | None = None, batch_size: int = 5) -> Env:
    store = BookCacheStore(tmp_path / "cache")
    aggregator = CacheAggregator(store)
    gateway = gateway or StubGateway()
    orchestrator = PreCacheOrchestrator(CachedSpeech(store, gateway), aggregator, batch_size=batch_size)
    return Env(store, aggregator, gateway, orchestrator, [])


class EmptyExtractor:
    async def extract_chunks(self, book_key: str) -> list[str]:
        return []


class BrokenExtractor:
    async def extract_chunks(self, book_key: str) -> list[str]:
        raise RuntimeError("Cannot initialize TTS for text extraction")


@pytest.mark.anyio
async def test_pipeline_dedupes_checks_and_synthesizes(tmp_path):
    env = _env(tmp_path)
    extractor = StaticTextExtractor(["Hello world", "Hello   world", "Goodbye"])

    check = await env.aggregator.check(await extractor.extract_chunks("book1-s1"), "V", "book1-s1")
    assert check.cached_count == 0

    final = await env.orchestrator.start("book1-s1", "V", extractor, env.events.append)

    assert final.state is PreCacheState.COMPLETED
    assert final.current == final.total == 2
    assert final.percentage == 100
    assert len(env.gateway.calls) == 2
    for text in ("Hello world", "Goodbye"):
        assert env.store.exists("book1", "V", derive_cache_key(text, "V"))
    per_voice = {v.voice: v.count for v in env.aggregator.detail().per_voice}
    assert per_voice == {"V": 2}
    assert env.states()[:3] == [PreCacheState.EXTRACTING, PreCacheState.CHECKING, PreCacheState.SYNTHESIZING]
    checking = env.events[1]
    assert (checking.current, checking.total) == (0, 2)


@pytest.mark.anyio
async def test_all_cached_short_circuits_without_synthesis(tmp_path):
    env = _env(tmp_path)
    for text in ("a", "b"):
        env.store.write("book1", "V", derive_cache_key(text, "V"), b"x")

    final = await env.orchestrator.start("book1", "V", StaticTextExtractor(["a", "b"]), env.events.append)

    assert final.state is PreCacheState.COMPLETED
    assert (final.current, final.total, final.percentage) == (2, 2, 100)
    assert final.message == "All texts already cached!"
    assert env.gateway.calls == []
    assert PreCacheState.SYNTHESIZING not in env.states()


@pytest.mark.anyio
async def test_only_uncached_chunks_are_synthesized(tmp_path):
    env = _env(tmp_path)
    env.store.write("book1", "V", derive_cache_key("a", "V"), b"x")

    final = await env.orchestrator.start("book1", "V", StaticTextExtractor(["a", "b", "c"]))

    assert [t for t, _ in env.gateway.calls] == ["b", "c"]
    assert (final.current, final.total) == (2, 2)


@pytest.mark.anyio
async def test_empty_book_fails(tmp_path):
    env = _env(tmp_path)
    final = await env.orchestrator.start("book1", "V", EmptyExtractor(), env.events.append)
    assert final.state is PreCacheState.FAILED
    assert final.error == "Book appears to be empty"
    assert env.gateway.calls == []
    assert not env.orchestrator.is_active


@pytest.mark.anyio
async def test_extractor_error_fails_and_propagates(tmp_path):
    env = _env(tmp_path)
    with pytest.raises(RuntimeError):
        await env.orchestrator.start("book1", "V", BrokenExtractor(), env.events.append)
    assert env.events[-1].state is PreCacheState.FAILED
    assert "Cannot initialize TTS" in env.events[-1].error
    assert env.orchestrator.state is PreCacheState.FAILED


@pytest.mark.anyio
async def test_chunk_failures_are_skipped(tmp_path, caplog):
    env = _env(tmp_path, StubGateway(fail_on={"bad"}))
    caplog.set_level("ERROR", logger="bookcache.precache")

    final = await env.orchestrator.start("book1", "V", StaticTextExtractor(["ok1", "bad", "ok2"]))

    assert final.state is PreCacheState.COMPLETED
    assert (final.current, final.total) == (2, 3)
    assert "1 failed" in final.message
    assert not env.store.exists("book1", "V", derive_cache_key("bad", "V"))
    assert "precache.chunk-failed" in caplog.text


@pytest.mark.anyio
async def test_progress_fires_per_batch_and_is_monotonic(tmp_path):
    env = _env(tmp_path, batch_size=5)
    texts = [f"chunk {i}" for i in range(12)]

    await env.orchestrator.start("book1", "V", StaticTextExtractor(texts), env.events.append)

    synth = [e for e in env.events if e.state is PreCacheState.SYNTHESIZING]
    assert [e.current for e in synth] == [0, 5, 10, 12]
    assert [e.percentage for e in synth] == [0, 42, 83, 100]
    currents = [e.current for e in env.events]
    assert currents == sorted(currents)


@pytest.mark.anyio
async def test_never_exceeds_batch_width(tmp_path):
    env = _env(tmp_path, StubGateway(delay=0.01), batch_size=3)
    await env.orchestrator.start("book1", "V", StaticTextExtractor([f"t{i}" for i in range(10)]))
    assert env.gateway.max_in_flight == 3
    assert len(env.gateway.calls) == 10


@pytest.mark.anyio
async def test_cancel_after_first_batch_dispatched(tmp_path):
    env = _env(tmp_path, StubGateway(delay=0.01), batch_size=5)
    texts = [f"chunk {i}" for i in range(10)]

    def cancel_on_first_call(n: int) -> None:
        if n == 1:
            env.orchestrator.cancel()

    env.gateway.on_call = cancel_on_first_call
    final = await env.orchestrator.start("book1", "V", StaticTextExtractor(texts), env.events.append)

    assert final.state is PreCacheState.CANCELLED
    assert final.current == 5
    assert len(env.gateway.calls) == 5
    for text in texts[5:]:
        assert not env.store.exists("book1", "V", derive_cache_key(text, "V"))
    assert not env.orchestrator.is_active


@pytest.mark.anyio
async def test_pause_blocks_next_batch_until_resume(tmp_path):
    env = _env(tmp_path, batch_size=5)
    texts = [f"chunk {i}" for i in range(10)]
    paused = asyncio.Event()

    def on_progress(progress: PreCacheProgress) -> None:
        env.events.append(progress)
        if progress.state is PreCacheState.SYNTHESIZING and progress.current == 5:
            env.orchestrator.pause()
        if progress.state is PreCacheState.PAUSED:
            paused.set()

    job = asyncio.create_task(env.orchestrator.start("book1", "V", StaticTextExtractor(texts), on_progress))
    await asyncio.wait_for(paused.wait(), timeout=5)

    assert env.orchestrator.is_paused
    assert env.orchestrator.is_active
    calls_while_paused = len(env.gateway.calls)
    await asyncio.sleep(0.05)
    assert len(env.gateway.calls) == calls_while_paused == 5
    paused_event = env.events[-1]
    assert (paused_event.current, paused_event.total) == (5, 10)

    env.orchestrator.resume()
    final = await asyncio.wait_for(job, timeout=5)

    assert final.state is PreCacheState.COMPLETED
    assert final.current == final.total == 10
    assert len(env.gateway.calls) == 10


@pytest.mark.anyio
async def test_cancel_while_paused(tmp_path):
    env = _env(tmp_path, batch_size=2)
    paused = asyncio.Event()

    def on_progress(progress: PreCacheProgress) -> None:
        env.events.append(progress)
        if progress.state is PreCacheState.SYNTHESIZING and progress.current == 2:
            env.orchestrator.pause()
        if progress.state is PreCacheState.PAUSED:
            paused.set()

    job = asyncio.create_task(
        env.orchestrator.start("book1", "V", StaticTextExtractor(["a", "b", "c", "d"]), on_progress)
    )
    await asyncio.wait_for(paused.wait(), timeout=5)
    env.orchestrator.cancel()
    final = await asyncio.wait_for(job, timeout=5)

    assert final.state is PreCacheState.CANCELLED
    assert final.current == 2
    assert len(env.gateway.calls) == 2


def test_batch_size_must_be_positive(tmp_path):
    store = BookCacheStore(tmp_path)
    with pytest.raises(ValueError):
        PreCacheOrchestrator(CachedSpeech(store, StubGateway()), CacheAggregator(store), batch_size=0)
