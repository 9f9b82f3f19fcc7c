"""Per-entry metadata records stored next to each cached audio file."""
from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CorruptMetadata(ValueError):
    """Metadata file exists but cannot be parsed."""

    def __init__(self, path: Path, reason: str):
        super().__init__(f"Corrupt cache metadata at {path}: {reason}")
        self.path = path


class CacheMetadata(BaseModel):
    """Fixed metadata record; field aliases match the on-disk JSON."""

    model_config = ConfigDict(populate_by_name=True)

    text: str = ""
    voice: str = ""
    size: int = 0
    created: datetime = EPOCH
    last_used: datetime = Field(default=EPOCH, alias="lastUsed")
    use_count: int = Field(default=0, alias="useCount")
    book_key: str | None = Field(default=None, alias="bookKey")

    @classmethod
    def new(cls, text: str, voice: str, size: int, book_key: str | None) -> "CacheMetadata":
        now = utcnow()
        return cls(
            text=text,
            voice=voice,
            size=size,
            created=now,
            last_used=now,
            use_count=1,
            book_key=book_key,
        )

    @classmethod
    def load(cls, path: Path) -> "CacheMetadata":
        """Read a metadata file. Raises FileNotFoundError or CorruptMetadata."""
        raw = path.read_bytes()
        try:
            return cls.model_validate_json(raw)
        except ValidationError as e:
            raise CorruptMetadata(path, str(e)) from e

    def dumps(self) -> bytes:
        return self.model_dump_json(by_alias=True, indent=2).encode("utf-8")

    def touched(self) -> "CacheMetadata":
        return self.model_copy(
            update={"last_used": utcnow(), "use_count": self.use_count + 1}
        )
