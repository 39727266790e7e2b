from __future__ import annotations

import asyncio
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

from dota_scout.rate_limiter import DEFAULT_RATE_LIMITS, RateLimit, RateLimiter
from dota_scout.settings import Settings


class _Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_min_interval_spaces_out_requests() -> None:
    clock = _Clock()
    limiter = RateLimiter({"opendota": RateLimit(max_requests=60, min_interval=1.0)}, clock=clock)

    assert limiter.delay_needed("opendota") == 0.0
    assert limiter.acquire_sync("opendota") == 0.0
    assert limiter.delay_needed("opendota") == 1.0
    clock.now += 0.25
    assert limiter.delay_needed("opendota") == 0.75
    clock.now += 5
    assert limiter.delay_needed("opendota") == 0.0


def test_window_blocks_until_oldest_request_expires() -> None:
    clock = _Clock()
    limiter = RateLimiter(
        {"stratz": RateLimit(max_requests=2, window_seconds=10.0, min_interval=0.0)},
        clock=clock,
        sync_sleep=lambda delay: None,
    )
    limiter.acquire_sync("stratz")
    clock.now += 4
    limiter.acquire_sync("stratz")

    assert limiter.delay_needed("stratz") == 6.0
    clock.now += 6
    assert limiter.delay_needed("stratz") == 0.0
    assert limiter.stats()["stratz"]["requests_in_window"] == 1


def test_concurrent_waiters_queue_behind_each_other() -> None:
    clock = _Clock()
    waits = []

    async def fake_sleep(delay: float) -> None:
        waits.append(delay)

    limiter = RateLimiter({"opendota": RateLimit(max_requests=60, min_interval=1.0)}, clock=clock, sleep=fake_sleep)

    async def scenario() -> None:
        await asyncio.gather(*(limiter.acquire("opendota") for _ in range(3)))

    asyncio.run(scenario())
    assert sorted(waits) == [1.0, 2.0]


def test_rate_limit_hit_sets_backoff() -> None:
    clock = _Clock()
    limiter = RateLimiter(clock=clock)

    limiter.record_rate_limit_hit("opendota", retry_after=12)
    assert limiter.delay_needed("opendota") == 12.0
    assert limiter.delay_needed("stratz") == 0.0

    limiter.record_rate_limit_hit("stratz")
    assert limiter.delay_needed("stratz") == 60.0
    clock.now += 61
    assert limiter.delay_needed("stratz") == 0.0


def test_unknown_provider_uses_fallback_limit() -> None:
    limiter = RateLimiter(clock=_Clock())
    assert limiter.limit_for("d2pt").max_requests == 30
    assert DEFAULT_RATE_LIMITS["opendota"].max_requests == 60


def test_limits_follow_settings() -> None:
    settings = Settings(
        opendota_api_url="http://opendota.test/api",
        opendota_api_key="",
        stratz_api_url="http://stratz.test/api/v1",
        stratz_api_token="",
        upstream_timeout_seconds=5.0,
        upstream_max_attempts=1,
        upstream_retry_base_delay=0.0,
        cache_ttls={},
        cache_max_entries=None,
        allow_stale_on_error=False,
        capture_fixtures=False,
        use_fixtures=False,
        fixture_dir=None,
        team_analysis_match_limit=5,
        rate_limit_opendota_per_minute=1200,
        rate_limit_min_interval=0.05,
    )
    limiter = RateLimiter.from_settings(settings)
    assert limiter.limit_for("opendota") == RateLimit(max_requests=1200, min_interval=0.05)
    assert limiter.limit_for("stratz").max_requests == 30
