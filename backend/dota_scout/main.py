from __future__ import annotations

import logging
import time
from typing import Any, List, Optional

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dota_scout.aggregator import aggregate_hero_stats
from dota_scout.cache_store import CacheNamespace, TTLCacheStore
from dota_scout.env import load_env
from dota_scout.errors import DataValidationError, ScoutDataError, to_error_payload
from dota_scout.fixtures import FixtureStore
from dota_scout.inflight import InFlightDeduplicator
from dota_scout.models import InvalidateRequest, PlayerBatchResponse
from dota_scout.orchestrator import FetchOrchestrator
from dota_scout.roles import detect_roles
from dota_scout.settings import Settings
from dota_scout.upstream_client import AsyncUpstreamClient, FixtureUpstreamClient, with_backoff

load_env()

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

app = FastAPI(title="Dota Scout Data API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:3001"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

settings = Settings.from_env()
fixture_store = FixtureStore(settings.fixture_dir)

if settings.use_fixtures:
    upstream_client = FixtureUpstreamClient(fixture_store)
else:
    upstream_client = AsyncUpstreamClient.from_settings(settings)

orchestrator = FetchOrchestrator(
    upstream_client,
    cache=TTLCacheStore(settings.cache_ttls, max_entries=settings.cache_max_entries),
    dedup=InFlightDeduplicator(),
    settings=settings,
    fixture_store=fixture_store,
)


def _envelope(data: Any, status: int = 200) -> dict:
    if hasattr(data, "model_dump"):
        data = data.model_dump(mode="json")
    elif isinstance(data, list):
        data = [
            item.model_dump(mode="json") if hasattr(item, "model_dump") else item
            for item in data
        ]
    return {"data": data, "status": status}


@app.exception_handler(ScoutDataError)
async def scout_error_handler(request: Request, exc: ScoutDataError) -> JSONResponse:
    logger.warning(f"{request.url.path} failed: {exc.error} ({exc})")
    return JSONResponse(status_code=exc.status_code, content=to_error_payload(exc))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"{request.url.path} failed with an unexpected error")
    return JSONResponse(status_code=500, content=to_error_payload(exc))


def _parse_ids(raw: str) -> List[int]:
    ids: List[int] = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        if not part.isdigit():
            raise DataValidationError("player", f"Invalid account id: {part}")
        ids.append(int(part))
    if not ids:
        raise DataValidationError("player", "At least one account id is required.")
    return ids


@app.get("/api/teams/{team_id}")
async def get_team(team_id: int, force: bool = Query(False)) -> dict:
    team = await orchestrator.fetch_team(team_id, force=force)
    return _envelope(team)


@app.get("/api/teams/{team_id}/analysis")
async def get_team_analysis(team_id: int, force: bool = Query(False)) -> dict:
    start_time = time.perf_counter()
    analysis = await with_backoff(
        lambda: orchestrator.team_analysis(team_id, force=force),
        attempts=settings.upstream_max_attempts,
        base_delay=settings.upstream_retry_base_delay,
    )
    logger.info(f"[TIMING] team analysis {team_id}: {time.perf_counter() - start_time:.3f}s")
    return _envelope(analysis)


@app.post("/api/teams/import")
async def import_team(payload: dict) -> dict:
    team = orchestrator.ingest_team(payload)
    return _envelope(team)


@app.get("/api/teams/{team_id}/draft-suggestions")
async def get_draft_suggestions(
    team_id: int,
    account_ids: Optional[str] = Query(None),
    force: bool = Query(False),
) -> dict:
    ids = _parse_ids(account_ids) if account_ids else None
    suggestions = await orchestrator.draft_suggestions(team_id, account_ids=ids, force=force)
    return _envelope(suggestions)


@app.get("/api/meta/insights")
async def get_meta_insights(force: bool = Query(False)) -> dict:
    return _envelope(await orchestrator.meta_insights(force=force))


@app.get("/api/players/{account_id}")
async def get_player(account_id: int, force: bool = Query(False)) -> dict:
    player = await orchestrator.fetch(CacheNamespace.PLAYER_DATA, account_id, force=force)
    return _envelope(player)


@app.get("/api/players")
async def get_players(ids: str = Query(..., min_length=1), force: bool = Query(False)) -> dict:
    players = await orchestrator.fetch_players(_parse_ids(ids), force=force)
    response = PlayerBatchResponse(players=players, hero_stats=aggregate_hero_stats(players))
    return _envelope(response)


@app.get("/api/matches/{match_id}")
async def get_match(
    match_id: int,
    team_id: Optional[int] = Query(None),
    force: bool = Query(False),
) -> dict:
    match = await orchestrator.fetch_match(match_id, team_id=team_id, force=force)
    payload = match.model_dump(mode="json")
    payload["roles"] = {
        str(account_id): role.value for account_id, role in detect_roles(match.all_players()).items()
    }
    return _envelope(payload)


@app.get("/api/heroes")
async def get_heroes(force: bool = Query(False)) -> dict:
    return _envelope(await orchestrator.fetch_heroes(force=force))


@app.get("/api/items")
async def get_items(force: bool = Query(False)) -> dict:
    return _envelope(await orchestrator.fetch_items(force=force))


@app.post("/api/cache/invalidate")
async def invalidate_cache(request: InvalidateRequest) -> dict:
    try:
        namespace = CacheNamespace.parse(request.namespace)
    except KeyError as exc:
        raise DataValidationError("cache", exc.args[0]) from exc
    removed = orchestrator.invalidate(namespace, request.entity_id)
    return _envelope({"namespace": namespace.value, "removed": removed})


@app.get("/api/health")
async def health_check() -> dict:
    limiter = getattr(orchestrator.client, "rate_limiter", None)
    return {
        "status": "healthy",
        "use_fixtures": settings.use_fixtures,
        "capture_fixtures": settings.capture_fixtures,
        "fixture_dir": str(fixture_store.root),
        "cache": orchestrator.cache.stats(),
        "inflight": orchestrator.dedup.pending_count(),
        "rate_limits": limiter.stats() if limiter is not None else {},
    }
