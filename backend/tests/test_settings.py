from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from dota_scout.env import load_env
from dota_scout.settings import DEFAULT_CACHE_TTLS, Settings
from dota_scout.upstream_client import OPENDOTA, STRATZ, ProviderConfig


def test_defaults_without_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in [f"CACHE_TTL_{ns}" for ns in DEFAULT_CACHE_TTLS] + ["ALLOW_STALE_ON_ERROR", "CACHE_MAX_ENTRIES", "USE_FIXTURES", "RATE_LIMIT_ENABLED", "RATE_LIMIT_OPENDOTA_PER_MINUTE"]:
        monkeypatch.delenv(name, raising=False)
    settings = Settings.from_env()

    assert settings.cache_ttls == DEFAULT_CACHE_TTLS
    assert settings.cache_ttls["TEAM_DATA"] == 7200
    assert settings.cache_max_entries is None
    assert settings.allow_stale_on_error is False
    assert settings.use_fixtures is False
    assert settings.analysis.min_games >= 1
    assert settings.rate_limit_enabled is True
    assert settings.rate_limit_opendota_per_minute == 60


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("CACHE_TTL_PLAYER_DATA", "60")
    monkeypatch.setenv("CACHE_MAX_ENTRIES", "500")
    monkeypatch.setenv("ALLOW_STALE_ON_ERROR", "TRUE")
    monkeypatch.setenv("FIXTURE_DIR", str(tmp_path))
    monkeypatch.setenv("ANALYSIS_MIN_GAMES", "3")
    monkeypatch.setenv("STRATZ_API_TOKEN", "abc")
    monkeypatch.setenv("STRATZ_AUTH_HEADER", "Authorization")
    monkeypatch.setenv("UPSTREAM_TOKEN_PREFIX", "Bearer")
    monkeypatch.setenv("RATE_LIMIT_OPENDOTA_PER_MINUTE", "1200")
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "false")
    settings = Settings.from_env()

    assert settings.cache_ttls["PLAYER_DATA"] == 60
    assert settings.cache_max_entries == 500
    assert settings.allow_stale_on_error is True
    assert settings.fixture_dir == tmp_path
    assert settings.analysis.min_games == 3
    assert settings.rate_limit_opendota_per_minute == 1200
    assert settings.rate_limit_enabled is False

    providers = ProviderConfig.from_settings(settings)
    assert providers[STRATZ].headers()["Authorization"] == "Bearer abc"
    assert providers[OPENDOTA].base_url == settings.opendota_api_url


def test_load_env_reads_override_file(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    env_file = tmp_path / "scout.env"
    env_file.write_text("SCOUT_TEST_VALUE=from-file\n", encoding="utf-8")
    monkeypatch.setenv("DOTA_SCOUT_ENV_FILE", str(env_file))
    monkeypatch.delenv("SCOUT_TEST_VALUE", raising=False)
    monkeypatch.delenv("UPSTREAM_TOKEN_PREFIX", raising=False)

    assert load_env() == env_file
    assert os.environ["SCOUT_TEST_VALUE"] == "from-file"
    assert os.environ["UPSTREAM_TOKEN_PREFIX"] == "Bearer"
    monkeypatch.delenv("SCOUT_TEST_VALUE")
