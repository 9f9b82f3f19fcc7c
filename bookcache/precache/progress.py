"""Pre-cache progress records and the process-wide registry the UI reads."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..cache.keys import extract_book_id


class PreCacheState(str, Enum):
    IDLE = "idle"
    EXTRACTING = "extracting"
    CHECKING = "checking"
    SYNTHESIZING = "synthesizing"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (PreCacheState.COMPLETED, PreCacheState.FAILED, PreCacheState.CANCELLED)


def percentage(current: int, total: int) -> int:
    """Whole-number percentage, rounding halves up."""
    return int(current * 100 / total + 0.5) if total > 0 else 0


@dataclass(frozen=True)
class PreCacheProgress:
    state: PreCacheState
    current: int
    total: int
    message: str
    error: Optional[str] = None

    @property
    def percentage(self) -> int:
        return percentage(self.current, self.total)

    def to_dict(self) -> dict[str, object]:
        data: dict[str, object] = {
            "state": self.state.value,
            "current": self.current,
            "total": self.total,
            "percentage": self.percentage,
            "message": self.message,
        }
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class BookCacheStatus:
    book_key: str
    cached_count: int
    total_count: int
    last_updated: float

    @property
    def percentage(self) -> int:
        return percentage(self.cached_count, self.total_count)

    def to_dict(self) -> dict[str, object]:
        return {
            "bookKey": self.book_key,
            "cachedCount": self.cached_count,
            "totalCount": self.total_count,
            "percentage": self.percentage,
            "lastUpdated": self.last_updated,
        }


class ProgressRegistry:
    """Latest progress per book identity; written only by job owners' callbacks."""

    def __init__(self):
        self._progress: dict[str, PreCacheProgress] = {}
        self._statuses: dict[str, BookCacheStatus] = {}

    def set_progress(self, book_key: str, progress: PreCacheProgress) -> None:
        self._progress[extract_book_id(book_key)] = progress

    def get_progress(self, book_key: str) -> Optional[PreCacheProgress]:
        return self._progress.get(extract_book_id(book_key))

    def remove_progress(self, book_key: str) -> None:
        self._progress.pop(extract_book_id(book_key), None)

    def set_book_status(self, book_key: str, status: BookCacheStatus) -> None:
        self._statuses[extract_book_id(book_key)] = status

    def get_book_status(self, book_key: str) -> Optional[BookCacheStatus]:
        return self._statuses.get(extract_book_id(book_key))

    def active(self) -> dict[str, PreCacheProgress]:
        return {k: p for k, p in self._progress.items() if not p.state.terminal}

    def clear(self) -> None:
        self._progress.clear()
        self._statuses.clear()


registry = ProgressRegistry()
