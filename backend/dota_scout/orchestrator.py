from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Set, Tuple, Union

from dota_scout.aggregator import (
    aggregate_team_analysis,
    build_draft_suggestions,
    build_match_analysis,
    build_meta_insights,
    enrich_player,
    enrich_team,
    head_to_head,
)
from dota_scout.cache_store import CacheNamespace, TTLCacheStore, make_key
from dota_scout.errors import DataValidationError, ScoutDataError
from dota_scout.fixtures import FixtureStore
from dota_scout.inflight import InFlightDeduplicator
from dota_scout.models import (
    DraftSuggestions,
    Hero,
    Item,
    MatchDetails,
    MetaInsights,
    Player,
    Team,
    TeamAnalysis,
)
from dota_scout.normalizer import (
    normalize_heroes,
    normalize_items,
    normalize_match,
    normalize_player,
    normalize_team,
)
from dota_scout.settings import Settings
from dota_scout.upstream_client import OPENDOTA, STRATZ

logger = logging.getLogger(__name__)

CATALOG_ID = "all"

# (provider, path, payload) triples captured after a successful normalize.
RawCapture = List[Tuple[str, str, Any]]


class RawFetcher(Protocol):
    async def fetch_raw(
        self, provider: str, path: str, params: Optional[Dict[str, Any]] = None
    ) -> Any: ...


def _match_entity_id(match_id: int, team_id: Optional[int]) -> str:
    return str(match_id) if team_id is None else f"{match_id}:{team_id}"


def _parse_match_entity_id(entity_id: str) -> Tuple[int, Optional[int]]:
    match_part, _, team_part = str(entity_id).partition(":")
    try:
        return int(match_part), int(team_part) if team_part else None
    except ValueError as exc:
        raise DataValidationError("match", f"Invalid match key: {entity_id}") from exc


def _parse_account_id(entity_id: str) -> int:
    try:
        return int(entity_id)
    except ValueError as exc:
        raise DataValidationError("player", f"Invalid account id: {entity_id}") from exc


def _stamp_processed(team: Team) -> Team:
    return team.model_copy(update={"processed_at": datetime.now(timezone.utc).isoformat()})


class FetchOrchestrator:
    """Cache-first entity access with request coalescing.

    Reads go to the TTL store unless ``force`` is set. Misses and forced
    reads share one in-flight upstream load per cache key. Failures are
    never cached.
    """

    def __init__(
        self,
        client: RawFetcher,
        cache: Optional[TTLCacheStore] = None,
        dedup: Optional[InFlightDeduplicator] = None,
        settings: Optional[Settings] = None,
        fixture_store: Optional[FixtureStore] = None,
    ) -> None:
        self.client = client
        self.settings = settings or Settings.from_env()
        self.cache = cache or TTLCacheStore(
            self.settings.cache_ttls, max_entries=self.settings.cache_max_entries
        )
        self.dedup = dedup or InFlightDeduplicator()
        self.fixture_store = fixture_store
        self._capture_tasks: Set[asyncio.Task] = set()
        self._loaders: Dict[CacheNamespace, Callable[[str], Awaitable[Tuple[Any, RawCapture]]]] = {
            CacheNamespace.TEAM_DATA: self._load_team,
            CacheNamespace.PLAYER_DATA: self._load_player,
            CacheNamespace.MATCH_DATA: self._load_match,
            CacheNamespace.HERO_LIST: self._load_heroes,
            CacheNamespace.ITEM_LIST: self._load_items,
        }

    async def fetch(
        self,
        namespace: Union[str, CacheNamespace],
        entity_id: Any,
        force: bool = False,
        allow_stale: Optional[bool] = None,
    ) -> Any:
        ns = CacheNamespace.parse(namespace)
        entity_id = str(entity_id)
        stale_ok = self.settings.allow_stale_on_error if allow_stale is None else allow_stale

        lookup = None
        if not force:
            lookup = self.cache.get(ns, entity_id, allow_stale=stale_ok)
            if lookup.hit:
                return lookup.value

        try:
            return await self.dedup.coalesce(
                make_key(ns, entity_id), lambda: self._load(ns, entity_id)
            )
        except ScoutDataError as exc:
            if lookup is not None and lookup.stale:
                logger.warning(
                    f"[CACHE] serving stale {ns.value}:{entity_id} after {exc.error}"
                )
                return lookup.value
            raise

    async def _load(self, namespace: CacheNamespace, entity_id: str) -> Any:
        start = time.perf_counter()
        try:
            value, raws = await self._loaders[namespace](entity_id)
        except DataValidationError as exc:
            logger.warning(f"[VALIDATION] {namespace.value}:{entity_id} rejected: {exc}")
            raise
        self.cache.set(namespace, entity_id, value)
        elapsed = time.perf_counter() - start
        logger.info(f"[TIMING] loaded {namespace.value}:{entity_id} in {elapsed:.3f}s")
        self._capture(raws)
        return value

    # -- loaders ---------------------------------------------------------

    async def _gather_raw(self, paths: Sequence[str], provider: str = OPENDOTA) -> RawCapture:
        payloads = await asyncio.gather(
            *(self.client.fetch_raw(provider, path) for path in paths)
        )
        return [(provider, path, payload) for path, payload in zip(paths, payloads)]

    async def _load_team(self, entity_id: str) -> Tuple[Team, RawCapture]:
        raws = await self._gather_raw(
            [f"teams/{entity_id}", f"teams/{entity_id}/matches", f"teams/{entity_id}/players"]
        )
        bundle = {"team": raws[0][2], "matches": raws[1][2], "players": raws[2][2]}
        return _stamp_processed(enrich_team(normalize_team(bundle))), raws

    async def _load_player(self, entity_id: str) -> Tuple[Player, RawCapture]:
        account_id = _parse_account_id(entity_id)
        try:
            raws = await self._gather_raw(
                [
                    f"players/{account_id}",
                    f"players/{account_id}/wl",
                    f"players/{account_id}/heroes",
                    f"players/{account_id}/recentMatches",
                ]
            )
        except ScoutDataError as exc:
            if not self.settings.stratz_api_token:
                raise
            logger.warning(f"[UPSTREAM] opendota player {account_id} failed ({exc.error}), trying stratz")
            try:
                return await self._load_stratz_player(account_id)
            except ScoutDataError as fallback_exc:
                logger.warning(f"[UPSTREAM] stratz player {account_id} failed: {fallback_exc.error}")
                raise exc
        bundle = {
            "player": raws[0][2],
            "wl": raws[1][2],
            "heroes": raws[2][2],
            "recentMatches": raws[3][2],
        }
        player = normalize_player(bundle, account_id=account_id)
        return enrich_player(player), raws

    async def _load_stratz_player(self, account_id: int) -> Tuple[Player, RawCapture]:
        raws = await self._gather_raw(
            [f"Player/{account_id}", f"Player/{account_id}/heroPerformance"], provider=STRATZ
        )
        summary = raws[0][2] if isinstance(raws[0][2], dict) else {}
        bundle = {**summary, "heroesPerformance": raws[1][2]}
        player = normalize_player(bundle, account_id=account_id)
        return enrich_player(player), raws

    async def _load_match(self, entity_id: str) -> Tuple[MatchDetails, RawCapture]:
        match_id, team_id = _parse_match_entity_id(entity_id)
        raws = await self._gather_raw([f"matches/{match_id}"])
        match = normalize_match(raws[0][2], team_id=team_id)
        return match.model_copy(update={"analysis": build_match_analysis(match)}), raws

    async def _load_heroes(self, entity_id: str) -> Tuple[List[Hero], RawCapture]:
        raws = await self._gather_raw(["heroStats"])
        return normalize_heroes(raws[0][2]), raws

    async def _load_items(self, entity_id: str) -> Tuple[List[Item], RawCapture]:
        raws = await self._gather_raw(["constants/items"])
        return normalize_items(raws[0][2]), raws

    # -- fixture capture -------------------------------------------------

    def _capture(self, raws: RawCapture) -> None:
        if self.fixture_store is None or not self.settings.capture_fixtures:
            return
        for provider, path, payload in raws:
            task = asyncio.ensure_future(
                asyncio.to_thread(self.fixture_store.save, provider, path, payload)
            )
            self._capture_tasks.add(task)
            task.add_done_callback(self._capture_done)

    def _capture_done(self, task: asyncio.Task) -> None:
        self._capture_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(f"[FIXTURE] capture failed: {exc}")

    async def drain_captures(self) -> None:
        if self._capture_tasks:
            await asyncio.gather(*list(self._capture_tasks), return_exceptions=True)

    # -- entity helpers --------------------------------------------------

    async def fetch_team(self, team_id: int, force: bool = False) -> Team:
        return await self.fetch(CacheNamespace.TEAM_DATA, team_id, force=force)

    def ingest_team(self, raw: Dict[str, Any]) -> Team:
        """Normalize a team payload obtained out of band (e.g. a Dotabuff export)."""
        team = _stamp_processed(enrich_team(normalize_team(raw)))
        self.cache.set(CacheNamespace.TEAM_DATA, team.id, team)
        return team

    async def fetch_player(self, account_id: int, force: bool = False) -> Player:
        try:
            return await self.fetch(CacheNamespace.PLAYER_DATA, account_id, force=force)
        except ScoutDataError as exc:
            logger.warning(f"Player {account_id} unavailable: {exc.error} ({exc})")
            return Player.placeholder(int(account_id), exc.error)

    async def fetch_players(
        self, account_ids: Sequence[int], force: bool = False
    ) -> List[Player]:
        return list(
            await asyncio.gather(
                *(self.fetch_player(account_id, force=force) for account_id in account_ids)
            )
        )

    async def fetch_match(
        self, match_id: int, team_id: Optional[int] = None, force: bool = False
    ) -> MatchDetails:
        return await self.fetch(
            CacheNamespace.MATCH_DATA, _match_entity_id(match_id, team_id), force=force
        )

    async def fetch_heroes(self, force: bool = False) -> List[Hero]:
        return await self.fetch(CacheNamespace.HERO_LIST, CATALOG_ID, force=force)

    async def fetch_items(self, force: bool = False) -> List[Item]:
        return await self.fetch(CacheNamespace.ITEM_LIST, CATALOG_ID, force=force)

    async def _match_or_none(
        self, match_id: int, team_id: int, force: bool
    ) -> Optional[MatchDetails]:
        try:
            return await self.fetch_match(match_id, team_id=team_id, force=force)
        except ScoutDataError as exc:
            logger.warning(f"Skipping match {match_id} in analysis: {exc.error}")
            return None

    async def team_analysis(self, team_id: int, force: bool = False) -> TeamAnalysis:
        team = await self.fetch_team(team_id, force=force)
        account_ids = sorted({entry.account_id for entry in team.roster if entry.is_current})
        recent = team.recent_matches[: self.settings.team_analysis_match_limit]

        players, matches = await asyncio.gather(
            self.fetch_players(account_ids, force=force),
            asyncio.gather(*(self._match_or_none(m.id, team.id, force) for m in recent)),
        )
        analysis = aggregate_team_analysis(
            [match for match in matches if match is not None],
            players,
            self.settings.analysis,
            team_id=team.id,
        )
        return analysis.model_copy(update={"top_opponents": head_to_head(team.recent_matches)})

    async def draft_suggestions(
        self,
        team_id: Optional[int] = None,
        account_ids: Optional[Sequence[int]] = None,
        force: bool = False,
    ) -> DraftSuggestions:
        """Draft advice for explicit ``account_ids`` or the current roster of ``team_id``."""
        if account_ids is None:
            if team_id is None:
                raise DataValidationError("player", "Either a team id or account ids are required.")
            team = await self.fetch_team(team_id, force=force)
            account_ids = sorted({entry.account_id for entry in team.roster if entry.is_current})
        players, heroes = await asyncio.gather(
            self.fetch_players(account_ids, force=force),
            self.fetch_heroes(force=force),
        )
        return build_draft_suggestions(players, heroes, self.settings.analysis, team_id=team_id)

    async def meta_insights(self, force: bool = False) -> MetaInsights:
        heroes = await self.fetch_heroes(force=force)
        return build_meta_insights(heroes, limit=self.settings.analysis.top_heroes_limit)

    def invalidate(
        self, namespace: Union[str, CacheNamespace], entity_id: Optional[Any] = None
    ) -> int:
        if entity_id is None:
            return self.cache.invalidate_namespace(namespace)
        return int(self.cache.invalidate(namespace, entity_id))
