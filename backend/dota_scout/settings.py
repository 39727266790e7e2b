from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional


DEFAULT_CACHE_TTLS: Dict[str, int] = {
    "TEAM_DATA": 60 * 60 * 2,
    "PLAYER_DATA": 60 * 60 * 24,
    "MATCH_DATA": 60 * 60 * 24 * 14,
    "HERO_LIST": 60 * 60 * 24 * 7,
    "ITEM_LIST": 60 * 60 * 24 * 7,
}


def _bool_env(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() == "true"


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    return int(raw)


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    return float(raw)


def _optional_int_env(name: str) -> Optional[int]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    return int(raw)


def _path_env(name: str) -> Optional[Path]:
    value = os.getenv(name)
    if not value:
        return None
    return Path(value)


def _ttl_env() -> Dict[str, int]:
    return {
        namespace: _int_env(f"CACHE_TTL_{namespace}", default)
        for namespace, default in DEFAULT_CACHE_TTLS.items()
    }


@dataclass(frozen=True)
class AnalysisConfig:
    """Thresholds used by the statistics aggregator."""

    min_games: int = 5
    success_win_rate: float = 60.0
    underperform_win_rate: float = 45.0
    top_heroes_limit: int = 10
    trend_window: int = 5
    trend_delta: float = 10.0
    early_game_seconds: int = 1800
    late_game_seconds: int = 2700
    strength_threshold: float = 70.0
    weakness_threshold: float = 45.0
    team_fight_kda_target: float = 4.0
    objective_tower_damage_target: float = 15000.0
    vision_wards_target: float = 20.0

    @classmethod
    def from_env(cls) -> "AnalysisConfig":
        return cls(
            min_games=_int_env("ANALYSIS_MIN_GAMES", 5),
            success_win_rate=_float_env("ANALYSIS_SUCCESS_WIN_RATE", 60.0),
            underperform_win_rate=_float_env("ANALYSIS_UNDERPERFORM_WIN_RATE", 45.0),
            top_heroes_limit=_int_env("ANALYSIS_TOP_HEROES_LIMIT", 10),
            trend_window=_int_env("ANALYSIS_TREND_WINDOW", 5),
            trend_delta=_float_env("ANALYSIS_TREND_DELTA", 10.0),
            early_game_seconds=_int_env("ANALYSIS_EARLY_GAME_SECONDS", 1800),
            late_game_seconds=_int_env("ANALYSIS_LATE_GAME_SECONDS", 2700),
            strength_threshold=_float_env("ANALYSIS_STRENGTH_THRESHOLD", 70.0),
            weakness_threshold=_float_env("ANALYSIS_WEAKNESS_THRESHOLD", 45.0),
            team_fight_kda_target=_float_env("ANALYSIS_TEAM_FIGHT_KDA_TARGET", 4.0),
            objective_tower_damage_target=_float_env(
                "ANALYSIS_OBJECTIVE_TOWER_DAMAGE_TARGET", 15000.0
            ),
            vision_wards_target=_float_env("ANALYSIS_VISION_WARDS_TARGET", 20.0),
        )


@dataclass(frozen=True)
class Settings:
    opendota_api_url: str
    opendota_api_key: str
    stratz_api_url: str
    stratz_api_token: str
    upstream_timeout_seconds: float
    upstream_max_attempts: int
    upstream_retry_base_delay: float
    cache_ttls: Dict[str, int]
    cache_max_entries: Optional[int]
    allow_stale_on_error: bool
    capture_fixtures: bool
    use_fixtures: bool
    fixture_dir: Optional[Path]
    team_analysis_match_limit: int
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    rate_limit_enabled: bool = True
    rate_limit_opendota_per_minute: int = 60
    rate_limit_stratz_per_minute: int = 30
    rate_limit_min_interval: float = 1.0

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            opendota_api_url=os.getenv(
                "OPENDOTA_API_URL", "https://api.opendota.com/api"
            ),
            opendota_api_key=os.getenv("OPENDOTA_API_KEY", ""),
            stratz_api_url=os.getenv("STRATZ_API_URL", "https://api.stratz.com/api/v1"),
            stratz_api_token=os.getenv("STRATZ_API_TOKEN", ""),
            upstream_timeout_seconds=_float_env("UPSTREAM_TIMEOUT_SECONDS", 30.0),
            upstream_max_attempts=_int_env("UPSTREAM_MAX_ATTEMPTS", 3),
            upstream_retry_base_delay=_float_env("UPSTREAM_RETRY_BASE_DELAY", 2.0),
            cache_ttls=_ttl_env(),
            cache_max_entries=_optional_int_env("CACHE_MAX_ENTRIES"),
            allow_stale_on_error=_bool_env("ALLOW_STALE_ON_ERROR"),
            capture_fixtures=_bool_env("CAPTURE_FIXTURES"),
            use_fixtures=_bool_env("USE_FIXTURES"),
            fixture_dir=_path_env("FIXTURE_DIR"),
            team_analysis_match_limit=_int_env("TEAM_ANALYSIS_MATCH_LIMIT", 20),
            analysis=AnalysisConfig.from_env(),
            rate_limit_enabled=_bool_env("RATE_LIMIT_ENABLED", "true"),
            rate_limit_opendota_per_minute=_int_env("RATE_LIMIT_OPENDOTA_PER_MINUTE", 60),
            rate_limit_stratz_per_minute=_int_env("RATE_LIMIT_STRATZ_PER_MINUTE", 30),
            rate_limit_min_interval=_float_env("RATE_LIMIT_MIN_INTERVAL", 1.0),
        )
