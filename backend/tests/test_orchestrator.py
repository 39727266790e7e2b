from __future__ import annotations

import asyncio
import dataclasses
import sys
from collections import Counter
from pathlib import Path
from datetime import datetime
from typing import Any, Dict, Optional

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from dota_scout.cache_store import CacheNamespace, TTLCacheStore
from dota_scout.errors import DataValidationError, NetworkError, NotFoundError, RateLimitedError
from dota_scout.fixtures import FixtureStore
from dota_scout.orchestrator import FetchOrchestrator
from dota_scout.settings import AnalysisConfig, Settings
from dota_scout.upstream_client import FixtureUpstreamClient


class FakeUpstream:
    """Serves canned payloads by path and counts every call."""

    def __init__(self, payloads: Dict[str, Any], gate: Optional[asyncio.Event] = None) -> None:
        self.payloads = payloads
        self.gate = gate
        self.calls: Counter = Counter()
        self.providers: Counter = Counter()
        self.failures: Dict[str, Exception] = {}

    async def fetch_raw(self, provider: str, path: str, params=None) -> Any:
        self.calls[path] += 1
        self.providers[provider] += 1
        if self.gate is not None:
            await self.gate.wait()
        if path in self.failures:
            raise self.failures[path]
        if path not in self.payloads:
            raise NotFoundError(f"no payload for {path}")
        return self.payloads[path]


class _Clock:
    def __init__(self) -> None:
        self.now = 10_000.0

    def __call__(self) -> float:
        return self.now


def _settings(**overrides) -> Settings:
    base = Settings(
        opendota_api_url="https://api.opendota.com/api",
        opendota_api_key="",
        stratz_api_url="https://api.stratz.com/api/v1",
        stratz_api_token="",
        upstream_timeout_seconds=5.0,
        upstream_max_attempts=3,
        upstream_retry_base_delay=0.0,
        cache_ttls={"TEAM_DATA": 7200, "PLAYER_DATA": 86400, "MATCH_DATA": 1209600},
        cache_max_entries=None,
        allow_stale_on_error=False,
        capture_fixtures=False,
        use_fixtures=False,
        fixture_dir=None,
        team_analysis_match_limit=20,
        analysis=AnalysisConfig(min_games=1),
    )
    return dataclasses.replace(base, **overrides)


def _team_payloads(team_id: int = 9517508) -> Dict[str, Any]:
    return {
        f"teams/{team_id}": {
            "team_id": team_id,
            "rating": 1450.5,
            "wins": 95,
            "losses": 55,
            "last_match_time": 1700000000,
            "name": "Team Falcons",
            "tag": "FLCN",
        },
        f"teams/{team_id}/matches": [
            {"match_id": 501, "radiant_win": True, "radiant": True, "duration": 2500, "start_time": 1700000000, "opposing_team_name": "OG"},
        ],
        f"teams/{team_id}/players": [
            {"account_id": 1, "name": "one", "games_played": 10, "wins": 7, "is_current_team_member": True},
            {"account_id": 2, "name": "two", "games_played": 10, "wins": 5, "is_current_team_member": True},
        ],
    }


def _player_payloads(account_id: int) -> Dict[str, Any]:
    return {
        f"players/{account_id}": {"profile": {"account_id": account_id, "personaname": f"p{account_id}"}},
        f"players/{account_id}/wl": {"win": 6, "lose": 4},
        f"players/{account_id}/heroes": [{"hero_id": "74", "games": 10, "win": 6}],
        f"players/{account_id}/recentMatches": [
            {"match_id": 501, "player_slot": 0, "radiant_win": True, "kills": 8, "deaths": 2, "assists": 4, "duration": 2500},
        ],
    }


def _match_payload(match_id: int = 501) -> Dict[str, Any]:
    return {
        f"matches/{match_id}": {
            "match_id": match_id,
            "radiant_win": True,
            "duration": 2500,
            "start_time": 1700000000,
            "radiant_team_id": 9517508,
            "dire_team_id": 2586976,
            "radiant_name": "Team Falcons",
            "dire_name": "OG",
            "players": [
                {"account_id": 1, "player_slot": 0, "hero_id": 74, "kills": 8, "deaths": 2, "assists": 4},
                {"account_id": 9, "player_slot": 128, "hero_id": 8, "kills": 2, "deaths": 8, "assists": 1},
            ],
            "objectives": [{"type": "CHAT_MESSAGE_FIRSTBLOOD", "time": 60, "player_slot": 0}],
            "radiant_gold_adv": [0, 500],
        }
    }


def _orchestrator(upstream: FakeUpstream, clock: Optional[_Clock] = None, **overrides) -> FetchOrchestrator:
    settings = _settings(**overrides)
    cache = TTLCacheStore(settings.cache_ttls, clock=clock or _Clock())
    return FetchOrchestrator(upstream, cache=cache, settings=settings)


def test_cold_team_fetch_caches_and_second_fetch_skips_upstream() -> None:
    async def scenario() -> None:
        upstream = FakeUpstream(_team_payloads())
        orchestrator = _orchestrator(upstream)

        first = await orchestrator.fetch(CacheNamespace.TEAM_DATA, 9517508)
        assert first.statistics.win_rate == 63.3
        assert first.processed_at is not None
        assert upstream.calls["teams/9517508"] == 1

        second = await orchestrator.fetch("TEAM_DATA", "9517508")
        assert second is first
        assert upstream.calls["teams/9517508"] == 1

    asyncio.run(scenario())


def test_force_always_calls_upstream_and_overwrites() -> None:
    async def scenario() -> None:
        payloads = _team_payloads()
        upstream = FakeUpstream(payloads)
        orchestrator = _orchestrator(upstream)

        await orchestrator.fetch_team(9517508)
        payloads["teams/9517508"] = dict(payloads["teams/9517508"], wins=96)
        refreshed = await orchestrator.fetch_team(9517508, force=True)

        assert upstream.calls["teams/9517508"] == 2
        assert refreshed.statistics.wins == 96
        assert (await orchestrator.fetch_team(9517508)).statistics.wins == 96
        assert upstream.calls["teams/9517508"] == 2

    asyncio.run(scenario())


def test_expired_entry_triggers_refetch() -> None:
    async def scenario() -> None:
        clock = _Clock()
        upstream = FakeUpstream(_team_payloads())
        orchestrator = _orchestrator(upstream, clock=clock)

        await orchestrator.fetch_team(9517508)
        clock.now += 7201
        await orchestrator.fetch_team(9517508)
        assert upstream.calls["teams/9517508"] == 2

    asyncio.run(scenario())


def test_concurrent_cold_callers_share_one_upstream_call() -> None:
    async def scenario() -> None:
        gate = asyncio.Event()
        upstream = FakeUpstream(_team_payloads(), gate=gate)
        orchestrator = _orchestrator(upstream)

        tasks = [asyncio.ensure_future(orchestrator.fetch_team(9517508)) for _ in range(10)]
        await asyncio.sleep(0)
        gate.set()
        teams = await asyncio.gather(*tasks)

        assert upstream.calls["teams/9517508"] == 1
        assert all(team is teams[0] for team in teams)

    asyncio.run(scenario())


def test_concurrent_callers_receive_identical_error_and_nothing_is_cached() -> None:
    async def scenario() -> None:
        gate = asyncio.Event()
        upstream = FakeUpstream(_team_payloads(), gate=gate)
        upstream.failures["teams/9517508"] = RateLimitedError("slow down")
        orchestrator = _orchestrator(upstream)

        tasks = [asyncio.ensure_future(orchestrator.fetch_team(9517508)) for _ in range(4)]
        await asyncio.sleep(0)
        gate.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert upstream.calls["teams/9517508"] == 1
        assert all(isinstance(result, RateLimitedError) for result in results)
        assert not orchestrator.cache.get(CacheNamespace.TEAM_DATA, 9517508).found

        del upstream.failures["teams/9517508"]
        team = await orchestrator.fetch_team(9517508)
        assert team.id == 9517508
        assert upstream.calls["teams/9517508"] == 2

    asyncio.run(scenario())


def test_player_batch_degrades_per_item() -> None:
    async def scenario() -> None:
        payloads = {**_player_payloads(1), **_player_payloads(2)}
        upstream = FakeUpstream(payloads)
        upstream.failures["players/2/wl"] = NetworkError("connection reset")
        orchestrator = _orchestrator(upstream)

        players = await orchestrator.fetch_players([1, 2])

        assert players[0].account_id == 1
        assert players[0].error is None
        assert players[0].overall_stats.average_kda == 6.0
        assert players[1].account_id == 2
        assert players[1].error == "Network error"
        assert players[1].hero_stats == []
        assert not orchestrator.cache.get(CacheNamespace.PLAYER_DATA, 2).found

    asyncio.run(scenario())


def test_stale_fallback_only_when_enabled_and_not_forced() -> None:
    async def scenario() -> None:
        clock = _Clock()
        upstream = FakeUpstream(_team_payloads())
        orchestrator = _orchestrator(upstream, clock=clock)
        cached = await orchestrator.fetch_team(9517508)

        clock.now += 7201
        upstream.failures["teams/9517508"] = NetworkError("down")

        with pytest.raises(NetworkError):
            await orchestrator.fetch_team(9517508)
        stale = await orchestrator.fetch(CacheNamespace.TEAM_DATA, 9517508, allow_stale=True)
        assert stale is cached
        with pytest.raises(NetworkError):
            await orchestrator.fetch(CacheNamespace.TEAM_DATA, 9517508, force=True, allow_stale=True)

    asyncio.run(scenario())


def test_stale_fallback_default_comes_from_settings() -> None:
    async def scenario() -> None:
        clock = _Clock()
        upstream = FakeUpstream(_team_payloads())
        orchestrator = _orchestrator(upstream, clock=clock, allow_stale_on_error=True)
        cached = await orchestrator.fetch_team(9517508)

        clock.now += 7201
        upstream.failures["teams/9517508"] = NetworkError("down")
        assert await orchestrator.fetch_team(9517508) is cached

    asyncio.run(scenario())


def test_match_fetch_builds_analysis_per_perspective() -> None:
    async def scenario() -> None:
        upstream = FakeUpstream(_match_payload())
        orchestrator = _orchestrator(upstream)

        radiant = await orchestrator.fetch_match(501)
        dire = await orchestrator.fetch_match(501, team_id=2586976)

        assert radiant.result == "win"
        assert dire.result == "loss"
        assert dire.opponent == "Team Falcons"
        assert radiant.analysis is not None
        assert radiant.analysis.key_moments[0].type == "first_blood"
        assert len(radiant.analysis.gold_graph) == 2

    asyncio.run(scenario())


def test_team_analysis_combines_roster_and_matches() -> None:
    async def scenario() -> None:
        payloads = {**_team_payloads(), **_player_payloads(1), **_match_payload()}
        upstream = FakeUpstream(payloads)
        orchestrator = _orchestrator(upstream)

        analysis = await orchestrator.team_analysis(9517508)

        assert analysis.team_id == 9517508
        assert analysis.total_matches == 1
        assert analysis.win_rate == 100.0
        # player 2 has no payloads upstream
        assert analysis.players_unavailable == [2]
        assert analysis.hero_performance.most_successful[0].hero_id == 74
        assert analysis.top_opponents[0]["opponent"] == "OG"

    asyncio.run(scenario())


def test_validation_errors_propagate_without_caching() -> None:
    async def scenario() -> None:
        payloads = _team_payloads()
        payloads["teams/9517508"] = {"team_id": 9517508}
        upstream = FakeUpstream(payloads)
        orchestrator = _orchestrator(upstream)

        with pytest.raises(DataValidationError) as excinfo:
            await orchestrator.fetch_team(9517508)
        assert excinfo.value.status_code == 422
        assert not orchestrator.cache.get(CacheNamespace.TEAM_DATA, 9517508).found

    asyncio.run(scenario())


def test_invalidate_forces_next_fetch_upstream() -> None:
    async def scenario() -> None:
        upstream = FakeUpstream({**_team_payloads(), "heroStats": [{"id": 1, "name": "npc_dota_hero_antimage", "localized_name": "Anti-Mage"}]})
        orchestrator = _orchestrator(upstream)

        await orchestrator.fetch_team(9517508)
        await orchestrator.fetch_heroes()
        assert orchestrator.invalidate(CacheNamespace.TEAM_DATA, 9517508) == 1
        assert orchestrator.invalidate("HERO_LIST") == 1
        await orchestrator.fetch_team(9517508)
        await orchestrator.fetch_heroes()

        assert upstream.calls["teams/9517508"] == 2
        assert upstream.calls["heroStats"] == 2

    asyncio.run(scenario())


def test_fixture_capture_and_offline_replay(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = FixtureStore(tmp_path)
        upstream = FakeUpstream(_team_payloads())
        settings = _settings(capture_fixtures=True, fixture_dir=tmp_path)
        orchestrator = FetchOrchestrator(upstream, settings=settings, fixture_store=store)

        await orchestrator.fetch_team(9517508)
        await orchestrator.drain_captures()
        assert store.exists("opendota", "teams/9517508/players")

        offline = FetchOrchestrator(FixtureUpstreamClient(store), settings=_settings())
        team = await offline.fetch_team(9517508)
        assert team.name == "Team Falcons"
        with pytest.raises(NotFoundError):
            await offline.fetch_team(1)

    asyncio.run(scenario())


def _hero_stats_payload() -> Dict[str, Any]:
    return {
        "heroStats": [
            {"id": 1, "name": "npc_dota_hero_antimage", "localized_name": "Anti-Mage", "roles": ["Carry", "Escape", "Nuker"], "pro_pick": 40, "pro_win": 22, "pro_ban": 30},
            {"id": 5, "name": "npc_dota_hero_crystal_maiden", "localized_name": "Crystal Maiden", "roles": ["Support", "Disabler", "Nuker"], "pro_pick": 30, "pro_win": 15, "pro_ban": 5},
            {"id": 74, "name": "npc_dota_hero_invoker", "localized_name": "Invoker", "roles": ["Carry", "Nuker", "Disabler", "Escape", "Pusher"], "pro_pick": 50, "pro_win": 24, "pro_ban": 60},
            {"id": 99, "name": "npc_dota_hero_filler", "localized_name": "Filler", "roles": [], "pro_pick": 880, "pro_win": 440, "pro_ban": 0},
        ]
    }


def test_malformed_player_payload_degrades_only_that_player() -> None:
    async def scenario() -> None:
        payloads = {**_player_payloads(1), **_player_payloads(2)}
        payloads["players/2/heroes"] = [{"hero_id": "abc", "games": 3, "win": 1}]
        upstream = FakeUpstream(payloads)
        orchestrator = _orchestrator(upstream)

        players = await orchestrator.fetch_players([1, 2])

        assert players[0].error is None
        assert players[0].hero_stats[0].hero_id == 74
        assert players[1].error == "Invalid player data"
        assert players[1].source == "placeholder"
        assert not orchestrator.cache.get(CacheNamespace.PLAYER_DATA, 2).found

        with pytest.raises(DataValidationError):
            await orchestrator.fetch(CacheNamespace.PLAYER_DATA, "abc")

    asyncio.run(scenario())


def test_ingested_team_is_stamped_and_cached() -> None:
    orchestrator = _orchestrator(FakeUpstream({}))
    team = orchestrator.ingest_team(
        {"teamName": "Evil Geniuses", "id": 39, "matches": [{"matchId": 1, "result": "won"}]}
    )

    assert team.processed_at is not None
    assert datetime.fromisoformat(team.processed_at).tzinfo is not None
    assert orchestrator.cache.get(CacheNamespace.TEAM_DATA, 39).value is team


def test_stratz_fallback_when_opendota_fails() -> None:
    async def scenario() -> None:
        payloads = {
            **_player_payloads(7),
            "Player/7": {"steamAccount": {"id": 7, "name": "seven"}, "matchCount": 20, "winCount": 12},
            "Player/7/heroPerformance": [{"heroId": 74, "matchCount": 5, "winCount": 4}],
        }
        upstream = FakeUpstream(payloads)
        upstream.failures["players/7/wl"] = NetworkError("connection reset")

        without_token = _orchestrator(upstream)
        with pytest.raises(NetworkError):
            await without_token.fetch(CacheNamespace.PLAYER_DATA, 7)
        assert upstream.providers["stratz"] == 0

        orchestrator = _orchestrator(upstream, stratz_api_token="token")
        player = await orchestrator.fetch(CacheNamespace.PLAYER_DATA, 7)
        assert player.source == "stratz"
        assert player.profile.persona_name == "seven"
        assert player.overall_stats.wins == 12
        assert player.hero_stats[0].hero_id == 74
        assert player.hero_stats[0].win_rate == 80.0
        assert upstream.providers["stratz"] == 2

    asyncio.run(scenario())


def test_opendota_error_surfaces_when_stratz_also_fails() -> None:
    async def scenario() -> None:
        upstream = FakeUpstream(_player_payloads(7))
        upstream.failures["players/7/wl"] = NetworkError("connection reset")
        orchestrator = _orchestrator(upstream, stratz_api_token="token")

        with pytest.raises(NetworkError):
            await orchestrator.fetch(CacheNamespace.PLAYER_DATA, 7)
        assert upstream.calls["Player/7"] == 1

    asyncio.run(scenario())


def test_draft_suggestions_from_team_roster() -> None:
    async def scenario() -> None:
        payloads = {**_team_payloads(), **_player_payloads(1), **_player_payloads(2), **_hero_stats_payload()}
        orchestrator = _orchestrator(FakeUpstream(payloads))

        draft = await orchestrator.draft_suggestions(9517508)

        assert draft.account_ids == [1, 2]
        assert draft.players_unavailable == []
        assert draft.hero_pool[0].name == "Invoker"
        assert draft.hero_pool[0].games == 20
        assert draft.team_strengths["carry"].hero_id == 74
        assert draft.team_strengths["mid"] is None
        assert "No mid heroes in pool" in draft.team_weaknesses
        assert "Limited carry hero pool" in draft.team_weaknesses
        first = draft.phase_recommendations["first"].heroes[0]
        assert first.hero_id == 74
        assert first.pick_priority == "High"
        assert first.reason == "60.0% win rate in 20 games"
        assert draft.phase_recommendations["third"].heroes[0].pick_priority == "Medium"

    asyncio.run(scenario())


def test_draft_suggestions_for_explicit_players() -> None:
    async def scenario() -> None:
        payloads = {**_player_payloads(1), **_hero_stats_payload()}
        orchestrator = _orchestrator(FakeUpstream(payloads))

        draft = await orchestrator.draft_suggestions(account_ids=[1, 3])
        assert draft.team_id is None
        assert draft.players_unavailable == [3]
        assert draft.hero_pool[0].games == 10

        with pytest.raises(DataValidationError):
            await orchestrator.draft_suggestions()

    asyncio.run(scenario())


def test_meta_insights_from_pro_hero_stats() -> None:
    async def scenario() -> None:
        orchestrator = _orchestrator(FakeUpstream(_hero_stats_payload()))

        meta = await orchestrator.meta_insights()

        assert meta.total_matches == 100
        assert [hero.hero_id for hero in meta.key_heroes] == [99, 74, 1, 5]
        invoker = meta.key_heroes[1]
        assert invoker.pick_rate == 50.0
        assert invoker.ban_rate == 60.0
        assert invoker.win_rate == 48.0
        assert invoker.contest_rate == 110.0
        assert [role.role for role in meta.role_stats] == ["carry", "support", "flex"]
        carry = meta.role_stats[0]
        assert carry.heroes == 2
        assert carry.picks == 90
        assert carry.win_rate == 51.1

    asyncio.run(scenario())
