import pytest
from pydantic import ValidationError

from bookcache.config import PreCacheConfig, Settings


def test_defaults():
    settings = Settings()
    assert settings.server.port == 8855
    assert settings.cache.cache_dir == "./tts-cache"
    assert settings.backend.base_url == "http://localhost:7860"
    assert settings.precache.batch_size == 5


def test_from_yaml_resolves_env_vars(tmp_path, monkeypatch):
    monkeypatch.setenv("BOOKCACHE_TEST_KEY", "s3cret")
    config_path = tmp_path / "bookcache.yaml"
    config_path.write_text(
        "backend:\n"
        "  base_url: http://tts:7860\n"
        "  api_key: ${BOOKCACHE_TEST_KEY}\n"
        "cache:\n"
        "  cache_dir: /data/cache\n"
        "precache:\n"
        "  batch_size: 3\n"
    )
    settings = Settings.from_yaml(str(config_path))
    assert settings.backend.api_key == "s3cret"
    assert settings.backend.base_url == "http://tts:7860"
    assert settings.cache.cache_dir == "/data/cache"
    assert settings.precache.batch_size == 3


def test_unresolved_env_var_is_left_as_is(tmp_path, monkeypatch):
    monkeypatch.delenv("BOOKCACHE_MISSING", raising=False)
    config_path = tmp_path / "bookcache.yaml"
    config_path.write_text("backend:\n  api_key: ${BOOKCACHE_MISSING}\n")
    assert Settings.from_yaml(str(config_path)).backend.api_key == "${BOOKCACHE_MISSING}"


def test_empty_yaml_gives_defaults(tmp_path):
    config_path = tmp_path / "bookcache.yaml"
    config_path.write_text("")
    assert Settings.from_yaml(str(config_path)).server.port == 8855


def test_env_overrides_win(monkeypatch):
    monkeypatch.setenv("TTS_CACHE_DIR", "/override/cache")
    monkeypatch.setenv("VIENEU_TTS_URL", "http://gpu-box:7860")
    settings = Settings().apply_env_overrides()
    assert settings.cache.cache_dir == "/override/cache"
    assert settings.backend.base_url == "http://gpu-box:7860"


def test_batch_size_must_be_positive():
    with pytest.raises(ValidationError):
        PreCacheConfig(batch_size=0)
