"""Cache key derivation and book identity helpers."""
from __future__ import annotations

import hashlib
import re

DEFAULT_BOOK_ID = "_default"
TRUNCATED_KEY_LENGTH = 12

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Collapse whitespace runs to a single space and trim the ends."""
    return _WHITESPACE_RE.sub(" ", text).strip()


def derive_cache_key(text: str, voice: str) -> str:
    """Stable MD5 hex key for ``normalize_text(text) + voice``.

    Must stay byte-compatible with keys already written to disk, so the
    concatenation has no separator.
    """
    payload = normalize_text(text) + voice
    return hashlib.md5(payload.encode("utf-8")).hexdigest()


def extract_book_id(book_key: str | None) -> str:
    """Drop the per-session suffix from a ``<hash>-<suffix>`` book key."""
    if not book_key:
        return DEFAULT_BOOK_ID
    return book_key.split("-", 1)[0] or DEFAULT_BOOK_ID


def truncate_key(cache_key: str) -> str:
    return cache_key[:TRUNCATED_KEY_LENGTH]
