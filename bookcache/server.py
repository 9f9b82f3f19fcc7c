"""bookcache — FastAPI server for the book TTS cache and pre-cache jobs.

Run with ``uvicorn bookcache.server:app``.
"""
from __future__ import annotations
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Optional
import asyncio
import json
import logging

from .config import Settings
from .cache.keys import extract_book_id
from .cache.store import BookCacheStore, InvalidCacheSegment
from .cache.stats import CacheAggregator
from .gateway.errors import BackendFailure, BackendUnauthorized, BackendUnreachable
from .gateway.vieneu import VieNeuGateway
from .precache.extractor import StaticTextExtractor, split_sentences
from .precache.orchestrator import PreCacheOrchestrator
from .precache.progress import BookCacheStatus, PreCacheProgress, registry
from .speech import CachedSpeech

logger = logging.getLogger("bookcache")

API_KEY_HEADER = "X-VieNeu-API-Key"

BACKBONES = [
    {"id": "VieNeu-TTS (GPU)", "label": "VieNeu-TTS (GPU)", "isGGUF": False},
    {"id": "VieNeu-TTS-0.3B (GPU)", "label": "VieNeu-TTS-0.3B (GPU)", "isGGUF": False},
    {"id": "VieNeu-TTS-q8-gguf", "label": "VieNeu-TTS-q8-gguf", "isGGUF": True},
    {"id": "VieNeu-TTS-q4-gguf", "label": "VieNeu-TTS-q4-gguf", "isGGUF": True},
    {"id": "VieNeu-TTS-0.3B-q4-gguf", "label": "VieNeu-TTS-0.3B-q4-gguf", "isGGUF": True},
    {"id": "VieNeu-TTS-0.3B-q8-gguf", "label": "VieNeu-TTS-0.3B-q8-gguf", "isGGUF": True},
]

CODECS = [
    {"id": "NeuCodec (Standard)", "label": "NeuCodec (Standard)"},
    {"id": "NeuCodec (Distill)", "label": "NeuCodec (Distill)"},
    {"id": "NeuCodec ONNX (Fast CPU)", "label": "NeuCodec ONNX (Fast CPU)"},
]


def _setup_logging(log_level: str = "info"):
    """Configure structured logging for bookcache."""
    level = getattr(logging, log_level.upper(), logging.INFO)
    handler = logging.StreamHandler()
    handler.setLevel(level)
    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False


_settings: Settings | None = None
_store: BookCacheStore | None = None
_aggregator: CacheAggregator | None = None
_gateway: VieNeuGateway | None = None
_speech: CachedSpeech | None = None
_orchestrators: dict[str, PreCacheOrchestrator] = {}
_jobs: dict[str, asyncio.Task[None]] = {}


def _load_settings() -> Settings:
    for path in ["bookcache.yaml", "bookcache.example.yaml"]:
        if Path(path).exists():
            return Settings.from_yaml(path).apply_env_overrides()
    return Settings().apply_env_overrides()


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _settings, _store, _aggregator, _gateway, _speech
    _settings = _load_settings()
    _setup_logging(_settings.server.log_level)
    logger.info("bookcache starting on port %s...", _settings.server.port)

    _store = BookCacheStore(_settings.cache.cache_dir)
    _aggregator = CacheAggregator(_store)
    backend = _settings.backend
    _gateway = VieNeuGateway(
        base_url=backend.base_url,
        api_key=backend.api_key,
        timeout=backend.timeout,
        health_timeout=backend.health_timeout,
        load_model_timeout=backend.load_model_timeout,
    )
    _speech = CachedSpeech(_store, _gateway)
    logger.info("Cache dir=%s backend=%s", _store.root, _gateway.base_url)

    yield

    for orchestrator in _orchestrators.values():
        orchestrator.cancel()
    for task in list(_jobs.values()):
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    _jobs.clear()
    _orchestrators.clear()
    logger.info("bookcache shutting down...")


app = FastAPI(title="bookcache", version="0.1.0", lifespan=lifespan)


def _error(status_code: int, error: str, details: str = "", **extra: Any) -> JSONResponse:
    body: dict[str, Any] = {"error": error}
    if details:
        body["details"] = details
    body.update(extra)
    return JSONResponse(body, status_code=status_code)


def _not_ready() -> JSONResponse:
    return _error(503, "Server not initialized")


def _backend_error_response(exc: BackendFailure, error: str) -> JSONResponse:
    if isinstance(exc, BackendUnreachable):
        return _error(503, str(exc), exc.detail,
                      serverUrl=_gateway.base_url if _gateway else "")
    if isinstance(exc, BackendUnauthorized):
        return _error(401, str(exc), exc.detail)
    return _error(500, error, str(exc))


async def _json_body(request: Request, default: Any = None) -> Any:
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        if default is not None:
            return default
        raise


def _api_key(request: Request) -> Optional[str]:
    return request.headers.get(API_KEY_HEADER) or None


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "cache_dir": str(_store.root) if _store else None,
        "active_jobs": len(registry.active()),
    }


@app.post("/synthesize")
async def synthesize(request: Request):
    if not _speech:
        return _not_ready()
    try:
        body = await _json_body(request)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return _error(400, "Invalid JSON body")
    if not isinstance(body, dict):
        return _error(400, "Missing text or voice parameter")
    text = body.get("text")
    voice = body.get("voice")
    book_key = body.get("bookKey")
    if not text or not voice or not isinstance(text, str) or not isinstance(voice, str):
        return _error(400, "Missing text or voice parameter")
    if book_key is not None and not isinstance(book_key, str):
        return _error(400, "Invalid bookKey parameter")

    try:
        result = await _speech.synthesize(text, voice, book_key, _api_key(request))
    except InvalidCacheSegment as e:
        return _error(400, "Invalid voice or bookKey", str(e))
    except BackendFailure as e:
        logger.error("Synthesis failed | voice=%s error=%s", voice, e)
        return _backend_error_response(e, "Synthesis failed")
    except OSError as e:
        logger.error("Cache I/O failed | voice=%s error=%s", voice, e)
        return _error(500, "Synthesis failed", str(e))

    headers = {
        "X-Cache-Status": "HIT" if result.hit else "MISS",
        "X-Cache-Key": result.cache_key,
    }
    if result.hit:
        headers["Cache-Control"] = "public, max-age=31536000"
    return Response(content=result.audio, media_type="audio/mpeg", headers=headers)


@app.post("/check")
async def check(request: Request):
    if not _aggregator:
        return _not_ready()
    try:
        body = await _json_body(request)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return _error(400, "Invalid JSON body")
    texts = body.get("texts") if isinstance(body, dict) else None
    voice = body.get("voice") if isinstance(body, dict) else None
    if (not isinstance(texts, list) or not all(isinstance(t, str) for t in texts)
            or not isinstance(voice, str) or not voice):
        return _error(400, "Missing or invalid texts array or voice parameter")
    book_key = body.get("bookKey")
    if book_key is not None and not isinstance(book_key, str):
        return _error(400, "Invalid bookKey parameter")

    try:
        result = await _aggregator.check(texts, voice, book_key)
    except InvalidCacheSegment as e:
        return _error(400, "Invalid voice or bookKey", str(e))
    except OSError as e:
        logger.error("Cache check failed: %s", e)
        return _error(500, "Cache check failed", str(e))
    return result.to_dict()


@app.get("/book-status")
async def book_status(bookKey: Optional[str] = None, voice: Optional[str] = None):
    if not _aggregator:
        return _not_ready()
    if not bookKey:
        return _error(400, "Missing bookKey parameter")
    try:
        status = await asyncio.to_thread(_aggregator.book_status, bookKey, voice or None)
    except InvalidCacheSegment as e:
        return _error(400, "Invalid voice or bookKey", str(e))
    except OSError as e:
        logger.error("Book status failed: %s", e)
        return _error(500, "Failed to get book cache status", str(e))
    return status.to_dict()


@app.get("/stats")
async def cache_stats():
    if not _aggregator or not _store:
        return _not_ready()
    try:
        detail = await asyncio.to_thread(_aggregator.detail)
    except OSError as e:
        logger.error("Failed to get cache statistics: %s", e)
        return _error(500, "Failed to get cache statistics", str(e))
    data: dict[str, Any] = {"cacheDir": str(_store.root)}
    data.update(detail.to_dict())
    return data


@app.post("/stats")
async def cache_clear(request: Request):
    if not _store:
        return _not_ready()
    body = await _json_body(request, default={})
    if not isinstance(body, dict):
        return _error(400, "Invalid eviction filter")
    book_key = body.get("bookKey") or None
    voice = body.get("voice") or None
    try:
        result = await asyncio.to_thread(_store.evict, book_key, voice)
    except OSError as e:
        logger.error("Failed to clear cache: %s", e)
        return _error(500, "Failed to clear cache", str(e))
    return {
        "success": True,
        "deletedCount": result.count,
        "deletedSize": result.bytes_freed,
        "deletedSizeMB": f"{result.bytes_freed / 1024 / 1024:.2f}",
        "filter": {"bookKey": book_key or "all", "voice": voice or "all"},
    }


@app.get("/server-status")
async def server_status():
    if not _gateway:
        return _not_ready()
    try:
        data = await _gateway.health()
    except BackendUnreachable as e:
        return JSONResponse(
            {"status": "disconnected", "connected": False, "message": e.detail},
            status_code=503,
        )
    except BackendFailure:
        return JSONResponse({"status": "error", "connected": False}, status_code=503)
    return {
        "status": "connected",
        "connected": True,
        "modelLoaded": data.get("model_loaded"),
        "backend": data.get("backend"),
        "backbone": data.get("backbone"),
        "codec": data.get("codec"),
    }


@app.get("/models")
async def models():
    if not _gateway:
        return _not_ready()
    try:
        voices = await _gateway.list_voices()
    except BackendFailure as e:
        return _error(500, "Failed to fetch models", e.detail)
    return {"backbones": BACKBONES, "codecs": CODECS, "voices": voices}


@app.post("/load-model")
async def load_model(request: Request):
    if not _gateway:
        return _not_ready()
    api_key = _api_key(request)
    if not api_key:
        return _error(401, "API key required", "Please configure API key in VieNeu settings")
    try:
        payload = await _json_body(request)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return _error(400, "Invalid JSON body")
    try:
        return await _gateway.load_model(payload, api_key)
    except BackendUnreachable as e:
        return _backend_error_response(e, "Model loading failed")
    except BackendFailure as e:
        return _error(e.status_code or 500, "Failed to load model", e.detail)


# -- pre-cache jobs ----------------------------------------------------------

def _new_orchestrator() -> PreCacheOrchestrator:
    if _speech is None or _aggregator is None or _settings is None:
        raise RuntimeError("Server not initialized")
    return PreCacheOrchestrator(_speech, _aggregator, batch_size=_settings.precache.batch_size)


async def _run_precache(orchestrator: PreCacheOrchestrator, book_key: str, voice: str,
                        texts: list[str], api_key: Optional[str]) -> None:
    book_id = extract_book_id(book_key)

    def on_progress(progress: PreCacheProgress) -> None:
        registry.set_progress(book_key, progress)

    try:
        final = await orchestrator.start(
            book_key, voice, StaticTextExtractor(texts), on_progress, api_key=api_key
        )
        if _aggregator is not None and final.state.terminal:
            status = await asyncio.to_thread(_aggregator.book_status, book_key, voice)
            registry.set_book_status(book_key, BookCacheStatus(
                book_key=book_id,
                cached_count=status.cached_count,
                total_count=len(PreCacheOrchestrator.unique_chunks(texts, voice)),
                last_updated=status.last_updated,
            ))
    except Exception as e:
        logger.error("Pre-cache job crashed | book=%s error=%s", book_id, e)
    finally:
        _jobs.pop(book_id, None)
        if _orchestrators.get(book_id) is orchestrator:
            del _orchestrators[book_id]


@app.post("/precache")
async def precache_start(request: Request):
    if not _speech or not _settings or not _store:
        return _not_ready()
    try:
        body = await _json_body(request)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return _error(400, "Invalid JSON body")
    if not isinstance(body, dict):
        return _error(400, "Missing bookKey, voice or texts parameter")
    book_key = body.get("bookKey")
    voice = body.get("voice") or _settings.precache.default_voice
    texts = body.get("texts")
    if texts is None and isinstance(body.get("text"), str):
        texts = split_sentences(body["text"])
    if (not book_key or not isinstance(book_key, str) or not voice or not isinstance(voice, str)
            or not isinstance(texts, list) or not all(isinstance(t, str) for t in texts)):
        return _error(400, "Missing bookKey, voice or texts parameter")

    book_id = extract_book_id(book_key)
    try:
        _store.entry_dir(book_id, voice)
    except InvalidCacheSegment as e:
        return _error(400, "Invalid voice or bookKey", str(e))
    if book_id in _jobs:
        return _error(409, "Pre-cache already running", f"A job is active for book {book_id}")

    registry.remove_progress(book_key)
    orchestrator = _new_orchestrator()
    _orchestrators[book_id] = orchestrator
    _jobs[book_id] = asyncio.create_task(
        _run_precache(orchestrator, book_key, voice, texts, _api_key(request))
    )
    logger.info("Pre-cache started | book=%s voice=%s texts=%d", book_id, voice, len(texts))
    return JSONResponse({"bookKey": book_id, "voice": voice, "state": "started"}, status_code=202)


@app.get("/precache/{book_key}")
async def precache_status(book_key: str):
    progress = registry.get_progress(book_key)
    if progress is None:
        return _error(404, "No pre-cache job", f"No job recorded for book {extract_book_id(book_key)}")
    data = progress.to_dict()
    status = registry.get_book_status(book_key)
    if status is not None:
        data["bookStatus"] = status.to_dict()
    return data


@app.post("/precache/{book_key}/{action}")
async def precache_control(book_key: str, action: str):
    orchestrator = _orchestrators.get(extract_book_id(book_key))
    if orchestrator is None or not orchestrator.is_active:
        return _error(404, "No active pre-cache job", f"Nothing to {action} for book {extract_book_id(book_key)}")
    if action == "pause":
        orchestrator.pause()
    elif action == "resume":
        orchestrator.resume()
    elif action == "cancel":
        orchestrator.cancel()
    else:
        return _error(400, f"Unknown action '{action}'", "Use pause, resume or cancel")
    return {"bookKey": extract_book_id(book_key), "action": action, "paused": orchestrator.is_paused}
