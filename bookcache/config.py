from pydantic_settings import BaseSettings
from pydantic import BaseModel, field_validator
from typing import Any
import os
import re
import yaml

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")


def _resolve_env_vars(value: Any) -> Any:
    if isinstance(value, str):
        return _ENV_PATTERN.sub(
            lambda m: os.environ.get(m.group(1), m.group(0)), value
        )
    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_env_vars(v) for v in value]
    return value


class BackendConfig(BaseModel):
    base_url: str = "http://localhost:7860"
    api_key: str = ""
    timeout: int = 30
    health_timeout: int = 5
    load_model_timeout: int = 60


class CacheConfig(BaseModel):
    cache_dir: str = "./tts-cache"


class PreCacheConfig(BaseModel):
    batch_size: int = 5
    default_voice: str = ""

    @field_validator("batch_size")
    @classmethod
    def _positive_batch(cls, v: int) -> int:
        if v < 1:
            raise ValueError("batch_size must be >= 1")
        return v


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8855
    log_level: str = "info"


class Settings(BaseSettings):
    model_config = {"extra": "allow"}

    server: ServerConfig = ServerConfig()
    backend: BackendConfig = BackendConfig()
    cache: CacheConfig = CacheConfig()
    precache: PreCacheConfig = PreCacheConfig()

    @classmethod
    def from_yaml(cls, path: str = "bookcache.yaml") -> "Settings":
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        data = _resolve_env_vars(data)
        return cls(**data)

    def apply_env_overrides(self) -> "Settings":
        """TTS_CACHE_DIR and VIENEU_TTS_URL win over the YAML values."""
        cache_dir = os.environ.get("TTS_CACHE_DIR")
        if cache_dir:
            self.cache.cache_dir = cache_dir
        server_url = os.environ.get("VIENEU_TTS_URL")
        if server_url:
            self.backend.base_url = server_url
        return self
