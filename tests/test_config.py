from pathlib import Path

import pytest

from letterboxd_stats.errors import ConfigurationError


def test_env_overrides_and_validation(monkeypatch, reload_config):
    monkeypatch.setenv("LETTERBOXD_STATS_MAX_PAGES", "12")
    monkeypatch.setenv("LETTERBOXD_STATS_NATIVE_CHUNK_SIZE", "0")  # min clamp
    monkeypatch.setenv("LETTERBOXD_STATS_PROVIDER_CHUNK_DELAY", "-1")  # should clamp to min

    cfg = reload_config()

    assert cfg.DEFAULT_MAX_PAGES == 12
    assert cfg.NATIVE_CHUNK_SIZE == 1
    assert cfg.PROVIDER_CHUNK_DELAY == 0.0


def test_invalid_env_values_fall_back_to_defaults(monkeypatch, reload_config):
    monkeypatch.setenv("LETTERBOXD_STATS_MAX_PAGES", "lots")
    monkeypatch.setenv("LETTERBOXD_STATS_NATIVE_CHUNK_DELAY", "oops")
    monkeypatch.setenv("LETTERBOXD_STATS_PROVIDER_CHUNK_SIZE", "bad-int")

    cfg = reload_config()

    assert cfg.DEFAULT_MAX_PAGES == 5
    assert cfg.NATIVE_CHUNK_DELAY == 0.2
    assert cfg.PROVIDER_CHUNK_SIZE == 3


def test_cache_settings_respect_env(monkeypatch, reload_config, tmp_path):
    db_path = tmp_path / "custom.db"
    monkeypatch.setenv("LETTERBOXD_STATS_CACHE_BACKEND", " SQLite ")
    monkeypatch.setenv("LETTERBOXD_STATS_CACHE_DB", str(db_path))
    monkeypatch.setenv("LETTERBOXD_STATS_USER_TTL", "60")
    monkeypatch.setenv("LETTERBOXD_STATS_MEMORY_CACHE_SIZE", "0")

    cfg = reload_config()

    assert cfg.CACHE_BACKEND == "sqlite"
    assert cfg.CACHE_DB_PATH == Path(db_path)
    assert cfg.USER_CACHE_TTL == 60.0
    assert cfg.MEMORY_CACHE_MAX_ENTRIES == 1
    assert cfg.MEMORY_CACHE_SWEEP_INTERVAL == 60.0
    # Untouched scopes keep their defaults
    assert cfg.FILM_DETAIL_CACHE_TTL == 30 * cfg.DAY
    assert cfg.PROVIDER_NOT_FOUND_TTL == cfg.DAY


def test_require_tmdb_api_key(monkeypatch, reload_config):
    monkeypatch.delenv("TMDB_API_KEY", raising=False)
    cfg = reload_config()

    with pytest.raises(ConfigurationError, match="TMDB_API_KEY missing"):
        cfg.require_tmdb_api_key()

    monkeypatch.setenv("TMDB_API_KEY", "secret")
    cfg = reload_config()
    assert cfg.require_tmdb_api_key() == "secret"
