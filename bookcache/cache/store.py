"""BookCacheStore — nested book/voice audio cache with legacy flat-layout migration.

Current layout::

    <cache_dir>/<book_id>/<voice>/<cache_key>.mp3
    <cache_dir>/<book_id>/<voice>/<cache_key>.meta.json

Legacy layout (read-compatible, migrated on lookup)::

    <cache_dir>/<cache_key>.mp3
    <cache_dir>/<cache_key>.meta.json
"""
from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from .keys import extract_book_id
from .metadata import CacheMetadata, CorruptMetadata

logger = logging.getLogger("bookcache.store")

AUDIO_SUFFIX = ".mp3"
META_SUFFIX = ".meta.json"


class CacheEntryNotFound(KeyError):
    """No audio for the requested entry in either layout."""


class InvalidCacheSegment(ValueError):
    """Book id or voice cannot be used as a single directory name."""


@dataclass(frozen=True)
class CacheEntrySummary:
    book_id: str
    voice: str
    cache_key: str
    audio_path: Path
    file_size: int
    modified_ms: float
    metadata: Optional[CacheMetadata]


@dataclass(frozen=True)
class EvictionResult:
    count: int = 0
    bytes_freed: int = 0


def _atomic_write(path: Path, data: bytes) -> None:
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


def _check_segment(name: str, what: str) -> str:
    """Return ``name`` if it is usable as one directory level under the root."""
    if (not name or name in (".", "..") or "\0" in name
            or "/" in name or "\\" in name or os.path.isabs(name)):
        raise InvalidCacheSegment(f"Invalid {what}: {name!r}")
    return name


def _unlink_quiet(path: Path) -> bool:
    """Delete ``path``; an already-missing file is not an error."""
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False


class BookCacheStore:
    def __init__(self, cache_dir: str | Path):
        self._root = Path(cache_dir)
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    # -- paths ---------------------------------------------------------------

    def book_dir(self, book_id: str) -> Path:
        return self._root / _check_segment(book_id, "book id")

    def entry_dir(self, book_id: str, voice: str) -> Path:
        return self.book_dir(book_id) / _check_segment(voice, "voice")

    def audio_path(self, book_id: str, voice: str, cache_key: str) -> Path:
        return self.entry_dir(book_id, voice) / f"{cache_key}{AUDIO_SUFFIX}"

    def meta_path(self, book_id: str, voice: str, cache_key: str) -> Path:
        return self.entry_dir(book_id, voice) / f"{cache_key}{META_SUFFIX}"

    def legacy_audio_path(self, cache_key: str) -> Path:
        return self._root / f"{cache_key}{AUDIO_SUFFIX}"

    def legacy_meta_path(self, cache_key: str) -> Path:
        return self._root / f"{cache_key}{META_SUFFIX}"

    # -- entry operations ----------------------------------------------------

    def exists(self, book_id: str, voice: str, cache_key: str) -> bool:
        if self.audio_path(book_id, voice, cache_key).is_file():
            return True
        if not self.legacy_audio_path(cache_key).is_file():
            return False
        logger.info(
            "Migrating legacy entry | key=%s book=%s voice=%s",
            cache_key[:8], book_id, voice,
        )
        try:
            self.migrate(book_id, voice, cache_key)
        except CacheEntryNotFound:
            # legacy copy vanished under us (migrated elsewhere or evicted)
            return self.audio_path(book_id, voice, cache_key).is_file()
        return True

    def read(self, book_id: str, voice: str, cache_key: str) -> bytes:
        for path in (self.audio_path(book_id, voice, cache_key),
                     self.legacy_audio_path(cache_key)):
            try:
                return path.read_bytes()
            except FileNotFoundError:
                continue
        raise CacheEntryNotFound(f"{book_id}/{voice}/{cache_key}")

    def write(self, book_id: str, voice: str, cache_key: str, audio: bytes,
              text: str = "", book_key: str | None = None) -> CacheMetadata:
        self.entry_dir(book_id, voice).mkdir(parents=True, exist_ok=True)
        meta = CacheMetadata.new(text=text, voice=voice, size=len(audio),
                                 book_key=book_key or book_id)
        _atomic_write(self.audio_path(book_id, voice, cache_key), audio)
        _atomic_write(self.meta_path(book_id, voice, cache_key), meta.dumps())
        return meta

    def read_metadata(self, book_id: str, voice: str, cache_key: str) -> Optional[CacheMetadata]:
        """Metadata for an entry, or None when missing or unreadable."""
        path = self.meta_path(book_id, voice, cache_key)
        try:
            return CacheMetadata.load(path)
        except FileNotFoundError:
            return None
        except CorruptMetadata as e:
            logger.warning("%s", e)
            return None

    def touch(self, book_id: str, voice: str, cache_key: str) -> None:
        path = self.meta_path(book_id, voice, cache_key)
        try:
            meta = CacheMetadata.load(path)
            _atomic_write(path, meta.touched().dumps())
        except (OSError, CorruptMetadata) as e:
            logger.warning("Failed to update metadata | key=%s error=%s", cache_key[:8], e)

    def migrate(self, book_id: str, voice: str, cache_key: str) -> None:
        legacy_audio = self.legacy_audio_path(cache_key)
        legacy_meta = self.legacy_meta_path(cache_key)
        new_audio = self.audio_path(book_id, voice, cache_key)
        new_meta = self.meta_path(book_id, voice, cache_key)
        self.entry_dir(book_id, voice).mkdir(parents=True, exist_ok=True)

        if not new_audio.is_file():
            try:
                audio = legacy_audio.read_bytes()
            except FileNotFoundError:
                # another caller finished the migration between our checks
                if new_audio.is_file():
                    return
                raise CacheEntryNotFound(cache_key)
            _atomic_write(new_audio, audio)

        if not new_meta.is_file():
            self._migrate_metadata(legacy_meta, new_meta, book_id)

        _unlink_quiet(legacy_audio)
        _unlink_quiet(legacy_meta)
        logger.info("Migrated %s... from flat to nested layout [%s/%s]",
                    cache_key[:8], book_id, voice)

    def _migrate_metadata(self, legacy_meta: Path, new_meta: Path, book_id: str) -> None:
        try:
            meta = CacheMetadata.load(legacy_meta)
        except FileNotFoundError:
            return
        except CorruptMetadata as e:
            # keep the bytes as-is; readers treat the record as unreadable
            logger.warning("%s", e)
            try:
                _atomic_write(new_meta, legacy_meta.read_bytes())
            except FileNotFoundError:
                pass
            return
        if not meta.book_key:
            meta = meta.model_copy(update={"book_key": book_id})
        _atomic_write(new_meta, meta.dumps())

    def migrate_all(self, book_id: str, voice: str) -> int:
        """Move every legacy entry under ``book_id``/``voice``."""
        migrated = 0
        for cache_key in list(self.iter_legacy_keys()):
            if self.exists(book_id, voice, cache_key):
                migrated += 1
        return migrated

    # -- async wrappers ------------------------------------------------------

    async def exists_async(self, book_id: str, voice: str, cache_key: str) -> bool:
        return await asyncio.to_thread(self.exists, book_id, voice, cache_key)

    async def read_async(self, book_id: str, voice: str, cache_key: str) -> bytes:
        return await asyncio.to_thread(self.read, book_id, voice, cache_key)

    async def write_async(self, book_id: str, voice: str, cache_key: str, audio: bytes,
                          text: str = "", book_key: str | None = None) -> CacheMetadata:
        return await asyncio.to_thread(self.write, book_id, voice, cache_key, audio, text, book_key)

    async def touch_async(self, book_id: str, voice: str, cache_key: str) -> None:
        await asyncio.to_thread(self.touch, book_id, voice, cache_key)

    # -- enumeration ---------------------------------------------------------

    def iter_book_ids(self) -> Iterator[str]:
        if not self._root.is_dir():
            return
        for child in sorted(self._root.iterdir()):
            if child.is_dir():
                yield child.name

    def iter_voices(self, book_id: str) -> Iterator[str]:
        book_dir = self.book_dir(book_id)
        if not book_dir.is_dir():
            return
        for child in sorted(book_dir.iterdir()):
            if child.is_dir():
                yield child.name

    def iter_entries(self, book_id: str, voice: str) -> Iterator[CacheEntrySummary]:
        voice_dir = self.entry_dir(book_id, voice)
        if not voice_dir.is_dir():
            return
        for audio in sorted(voice_dir.glob(f"*{AUDIO_SUFFIX}")):
            try:
                stat = audio.stat()
            except FileNotFoundError:
                continue
            cache_key = audio.name[: -len(AUDIO_SUFFIX)]
            yield CacheEntrySummary(
                book_id=book_id,
                voice=voice,
                cache_key=cache_key,
                audio_path=audio,
                file_size=stat.st_size,
                modified_ms=stat.st_mtime * 1000,
                metadata=self.read_metadata(book_id, voice, cache_key),
            )

    def enumerate(self) -> Iterator[CacheEntrySummary]:
        """Every current-layout entry, grouped by (book, voice)."""
        for book_id in self.iter_book_ids():
            for voice in self.iter_voices(book_id):
                yield from self.iter_entries(book_id, voice)

    def iter_legacy_keys(self) -> Iterator[str]:
        if not self._root.is_dir():
            return
        for audio in sorted(self._root.glob(f"*{AUDIO_SUFFIX}")):
            if audio.is_file():
                yield audio.name[: -len(AUDIO_SUFFIX)]

    def iter_legacy_sizes(self) -> Iterator[int]:
        for cache_key in self.iter_legacy_keys():
            try:
                yield self.legacy_audio_path(cache_key).stat().st_size
            except FileNotFoundError:
                continue

    # -- eviction ------------------------------------------------------------

    def evict(self, book_key: str | None = None, voice: str | None = None) -> EvictionResult:
        """Delete entries by book and/or voice; no filter wipes the cache."""
        count = 0
        freed = 0
        book_id = extract_book_id(book_key) if book_key else None

        for book in self.iter_book_ids():
            if book_id is not None and book != book_id:
                continue
            for entry_voice in list(self.iter_voices(book)):
                if voice is not None and entry_voice != voice:
                    continue
                for entry in list(self.iter_entries(book, entry_voice)):
                    if (book_id or voice) and entry.metadata is None:
                        continue
                    if self._delete_entry(entry.audio_path, self.meta_path(book, entry_voice, entry.cache_key)):
                        count += 1
                        freed += entry.file_size
                self._prune_dir(self.entry_dir(book, entry_voice))
            self._prune_dir(self.book_dir(book))

        if book_id is None and voice is None:
            for cache_key in list(self.iter_legacy_keys()):
                audio = self.legacy_audio_path(cache_key)
                try:
                    size = audio.stat().st_size
                except FileNotFoundError:
                    continue
                if self._delete_entry(audio, self.legacy_meta_path(cache_key)):
                    count += 1
                    freed += size

        logger.info(
            "Evicted %d entries (%d bytes) | book=%s voice=%s",
            count, freed, book_id or "all", voice or "all",
        )
        return EvictionResult(count=count, bytes_freed=freed)

    def _delete_entry(self, audio: Path, meta: Path) -> bool:
        try:
            deleted = _unlink_quiet(audio)
        except OSError as e:
            logger.error("Failed to delete %s: %s", audio, e)
            return False
        try:
            _unlink_quiet(meta)
        except OSError as e:
            logger.warning("Failed to delete %s: %s", meta, e)
        return deleted

    def _prune_dir(self, path: Path) -> None:
        try:
            path.rmdir()
        except OSError:
            pass
