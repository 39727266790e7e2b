from __future__ import annotations

import functools
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

from pydantic import ValidationError

from dota_scout.errors import DataValidationError
from dota_scout.models import (
    DraftAction,
    Hero,
    HeroStat,
    Item,
    MatchDetails,
    MatchPlayer,
    MatchSide,
    MatchSummary,
    MatchTimeline,
    Player,
    PlayerMatchSummary,
    PlayerOverallStats,
    PlayerProfile,
    RosterEntry,
    Team,
    TeamStatistics,
)

logger = logging.getLogger(__name__)

RADIANT = "radiant"
DIRE = "dire"

PROVIDER_OPENDOTA = "opendota"
PROVIDER_DOTABUFF = "dotabuff"
PROVIDER_STRATZ = "stratz"

T = TypeVar("T")


def win_rate(wins: int, losses: int) -> float:
    total = wins + losses
    if total <= 0:
        return 0.0
    return round(wins / total * 100, 1)


def to_iso(value: Any) -> Optional[str]:
    """Convert provider timestamps (unix seconds or ISO strings) to ISO-8601 UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return _from_timestamp(value)
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return _from_timestamp(int(text))
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return text
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc).isoformat()
    return None


def _from_timestamp(value: float) -> Optional[str]:
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc).isoformat()
    except (OverflowError, OSError, ValueError):
        logger.warning(f"[VALIDATION] timestamp out of range: {value!r}")
        return None


def side_for_slot(player_slot: int) -> str:
    return RADIANT if player_slot < 128 else DIRE


def extract_tag_from_name(name: str) -> str:
    parts = name.split()
    if not parts:
        return ""
    if len(parts) == 1:
        return parts[0][:3].upper()
    if "evil geniuses" in name.lower():
        return "EG"
    short_part = next((part for part in parts if 2 <= len(part) <= 4), None)
    if short_part and len(parts) <= 2:
        return short_part.upper()
    return "".join(part[0] for part in parts)[:3].upper()


def _rejects_invalid(kind: str) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Surface model validation failures as DataValidationError for ``kind``."""

    def decorator(fn: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            try:
                return fn(*args, **kwargs)
            except ValidationError as exc:
                errors = exc.errors()
                field = ".".join(str(part) for part in errors[0]["loc"]) if errors else "?"
                logger.warning(f"[VALIDATION] {kind} payload rejected by model: {exc.error_count()} error(s), first at {field}")
                raise DataValidationError(kind, f"Field {field} has an invalid value") from exc

        return wrapper

    return decorator


# ---------------------------------------------------------------------------
# Teams
# ---------------------------------------------------------------------------


def detect_team_provider(raw: Any) -> str:
    if not isinstance(raw, dict):
        raise DataValidationError("team", "Team payload must be an object.")
    if isinstance(raw.get("team"), dict) or "team_id" in raw:
        return PROVIDER_OPENDOTA
    if isinstance(raw.get("matches"), list) and (
        "teamName" in raw or "name" in raw
    ):
        return PROVIDER_DOTABUFF
    raise DataValidationError("team", "Unrecognized team payload shape.")


@_rejects_invalid("team")
def normalize_team(raw: Any) -> Team:
    provider = detect_team_provider(raw)
    if provider == PROVIDER_OPENDOTA:
        if isinstance(raw.get("team"), dict):
            return _normalize_opendota_team(
                raw["team"], raw.get("matches") or [], raw.get("players") or []
            )
        return _normalize_opendota_team(raw, [], [])
    return _normalize_dotabuff_team(raw)


def _normalize_opendota_team(
    team: Dict[str, Any], matches: List[Any], players: List[Any]
) -> Team:
    team_id = _require_int(team, ("team_id", "id"), "team")
    name = _require_str(team, ("name",), "team")
    wins = _as_int(team.get("wins"))
    losses = _as_int(team.get("losses"))
    recent = [
        summary
        for summary in (_opendota_team_match(item, team_id) for item in matches)
        if summary is not None
    ]
    roster = [
        entry for entry in (_opendota_roster_entry(item) for item in players) if entry
    ]
    rating = team.get("rating")
    return Team(
        id=team_id,
        name=name,
        tag=(team.get("tag") or "").strip() or extract_tag_from_name(name),
        logo_url=team.get("logo_url") or None,
        source=PROVIDER_OPENDOTA,
        statistics=TeamStatistics(
            wins=wins,
            losses=losses,
            total_matches=wins + losses,
            win_rate=win_rate(wins, losses),
            rating=float(rating) if isinstance(rating, (int, float)) else None,
            last_match_time=to_iso(team.get("last_match_time")),
        ),
        roster=roster,
        recent_matches=recent,
    )


def _opendota_team_match(raw: Any, team_id: int) -> Optional[MatchSummary]:
    if not isinstance(raw, dict) or raw.get("match_id") is None:
        return None
    radiant_win = raw.get("radiant_win")
    is_radiant = raw.get("radiant")
    if radiant_win is None or is_radiant is None:
        result = "unknown"
    else:
        result = "win" if bool(is_radiant) == bool(radiant_win) else "loss"
    return MatchSummary(
        id=_require_int(raw, ("match_id",), "team"),
        team_id=team_id,
        opponent=raw.get("opposing_team_name"),
        result=result,
        date=to_iso(raw.get("start_time")),
        duration=_as_int(raw.get("duration")),
        league_id=_optional_int(raw.get("leagueid")),
    )


def _opendota_roster_entry(raw: Any) -> Optional[RosterEntry]:
    if not isinstance(raw, dict) or raw.get("account_id") is None:
        return None
    games = _as_int(raw.get("games_played"))
    wins = _as_int(raw.get("wins"))
    return RosterEntry(
        account_id=_require_int(raw, ("account_id",), "team"),
        name=raw.get("name"),
        games_played=games,
        wins=wins,
        win_rate=win_rate(wins, games - wins),
        is_current=bool(raw.get("is_current_team_member", True)),
    )


def _normalize_dotabuff_team(raw: Dict[str, Any]) -> Team:
    team_id = _require_int(raw, ("id", "teamId", "team_id"), "team")
    name = _require_str(raw, ("teamName", "name"), "team")
    recent: List[MatchSummary] = []
    for item in raw.get("matches") or []:
        if not isinstance(item, dict):
            continue
        match_id = item.get("matchId") or item.get("match_id")
        if match_id is None:
            continue
        outcome = str(item.get("result") or "").lower()
        recent.append(
            MatchSummary(
                id=_require_int(item, ("matchId", "match_id"), "team"),
                team_id=team_id,
                opponent=item.get("opponentName"),
                result="win" if outcome == "won" else "loss" if outcome == "lost" else "unknown",
                date=to_iso(item.get("startTime")),
                duration=_as_int(item.get("duration")),
                league_id=_optional_int(item.get("leagueId")),
            )
        )
    wins = sum(1 for match in recent if match.result == "win")
    losses = sum(1 for match in recent if match.result == "loss")
    dates = [match.date for match in recent if match.date]
    return Team(
        id=team_id,
        name=name,
        tag=(raw.get("tag") or "").strip() or extract_tag_from_name(name),
        logo_url=raw.get("logoUrl") or None,
        source=PROVIDER_DOTABUFF,
        statistics=TeamStatistics(
            wins=wins,
            losses=losses,
            total_matches=wins + losses,
            win_rate=win_rate(wins, losses),
            last_match_time=max(dates) if dates else None,
        ),
        recent_matches=recent,
    )


# ---------------------------------------------------------------------------
# Players
# ---------------------------------------------------------------------------


def detect_player_provider(raw: Any) -> str:
    if not isinstance(raw, dict):
        raise DataValidationError("player", "Player payload must be an object.")
    if "steamAccount" in raw:
        return PROVIDER_STRATZ
    if "player" in raw or "profile" in raw:
        return PROVIDER_OPENDOTA
    raise DataValidationError("player", "Unrecognized player payload shape.")


@_rejects_invalid("player")
def normalize_player(raw: Any, account_id: Optional[int] = None) -> Player:
    provider = detect_player_provider(raw)
    if provider == PROVIDER_STRATZ:
        return _normalize_stratz_player(raw, account_id)
    return _normalize_opendota_player(raw, account_id)


def _normalize_opendota_player(raw: Dict[str, Any], account_id: Optional[int]) -> Player:
    summary = raw.get("player") if isinstance(raw.get("player"), dict) else raw
    profile = summary.get("profile")
    if not isinstance(profile, dict):
        profile = {}
    resolved_id = _optional_int(profile.get("account_id"))
    if resolved_id is None:
        resolved_id = account_id
    if resolved_id is None:
        raise DataValidationError("player", "Missing required field: account_id")

    wl = raw.get("wl") if isinstance(raw.get("wl"), dict) else {}
    wins = _as_int(wl.get("win"))
    losses = _as_int(wl.get("lose"))
    hero_stats = []
    for item in raw.get("heroes") or []:
        if not isinstance(item, dict) or item.get("hero_id") in (None, ""):
            continue
        games = _as_int(item.get("games"))
        hero_wins = _as_int(item.get("win"))
        hero_stats.append(
            HeroStat(
                hero_id=_require_int(item, ("hero_id",), "player"),
                games=games,
                wins=hero_wins,
                win_rate=win_rate(hero_wins, games - hero_wins),
                last_played=to_iso(item.get("last_played")),
            )
        )
    recent = [
        match
        for match in (_opendota_recent_match(item) for item in raw.get("recentMatches") or [])
        if match is not None
    ]
    return Player(
        account_id=resolved_id,
        source=PROVIDER_OPENDOTA,
        profile=PlayerProfile(
            name=profile.get("name"),
            persona_name=profile.get("personaname"),
            avatar_url=profile.get("avatarfull"),
            profile_url=profile.get("profileurl"),
            country_code=profile.get("loccountrycode"),
            rank_tier=_optional_int(summary.get("rank_tier")),
            leaderboard_rank=_optional_int(summary.get("leaderboard_rank")),
        ),
        hero_stats=hero_stats,
        overall_stats=PlayerOverallStats(
            total_matches=wins + losses,
            wins=wins,
            losses=losses,
            win_rate=win_rate(wins, losses),
        ),
        recent_matches=recent,
        recent_match_ids=[match.match_id for match in recent],
    )


def _opendota_recent_match(raw: Any) -> Optional[PlayerMatchSummary]:
    if not isinstance(raw, dict) or raw.get("match_id") is None:
        return None
    slot = _optional_int(raw.get("player_slot"))
    radiant_win = raw.get("radiant_win")
    won = None
    if slot is not None and radiant_win is not None:
        won = (side_for_slot(slot) == RADIANT) == bool(radiant_win)
    return PlayerMatchSummary(
        match_id=_require_int(raw, ("match_id",), "player"),
        hero_id=_optional_int(raw.get("hero_id")),
        won=won,
        kills=_as_int(raw.get("kills")),
        deaths=_as_int(raw.get("deaths")),
        assists=_as_int(raw.get("assists")),
        gold_per_min=_as_int(raw.get("gold_per_min")),
        xp_per_min=_as_int(raw.get("xp_per_min")),
        duration=_as_int(raw.get("duration")),
        start_time=to_iso(raw.get("start_time")),
        lane_role=_optional_int(raw.get("lane_role")),
    )


def _normalize_stratz_player(raw: Dict[str, Any], account_id: Optional[int]) -> Player:
    account = raw.get("steamAccount")
    if not isinstance(account, dict):
        raise DataValidationError("player", "steamAccount must be an object.")
    resolved_id = _optional_int(account.get("id"))
    if resolved_id is None:
        resolved_id = account_id
    if resolved_id is None:
        raise DataValidationError("player", "Missing required field: steamAccount.id")
    total = _as_int(raw.get("matchCount"))
    wins = _as_int(raw.get("winCount"))
    hero_stats = []
    for item in raw.get("heroesPerformance") or []:
        if not isinstance(item, dict) or item.get("heroId") is None:
            continue
        games = _as_int(item.get("matchCount"))
        hero_wins = _as_int(item.get("winCount"))
        hero_stats.append(
            HeroStat(
                hero_id=_require_int(item, ("heroId",), "player"),
                games=games,
                wins=hero_wins,
                win_rate=win_rate(hero_wins, games - hero_wins),
                last_played=to_iso(item.get("lastPlayedDateTime")),
            )
        )
    return Player(
        account_id=resolved_id,
        source=PROVIDER_STRATZ,
        profile=PlayerProfile(
            name=account.get("proSteamAccount", {}).get("name")
            if isinstance(account.get("proSteamAccount"), dict)
            else None,
            persona_name=account.get("name"),
            avatar_url=account.get("avatar"),
            profile_url=account.get("profileUri"),
            country_code=account.get("countryCode"),
            rank_tier=_optional_int(account.get("seasonRank")),
            leaderboard_rank=_optional_int(account.get("seasonLeaderboardRank")),
        ),
        hero_stats=hero_stats,
        overall_stats=PlayerOverallStats(
            total_matches=total,
            wins=wins,
            losses=max(total - wins, 0),
            win_rate=win_rate(wins, max(total - wins, 0)),
        ),
    )


# ---------------------------------------------------------------------------
# Matches
# ---------------------------------------------------------------------------


@_rejects_invalid("match")
def normalize_match(raw: Any, team_id: Optional[int] = None) -> MatchDetails:
    if not isinstance(raw, dict):
        raise DataValidationError("match", "Match payload must be an object.")
    match_id = _require_int(raw, ("match_id",), "match")
    if raw.get("radiant_win") is None:
        raise DataValidationError("match", "Missing required field: radiant_win")
    raw_players = raw.get("players")
    if not isinstance(raw_players, list):
        raise DataValidationError("match", "Missing required field: players")

    radiant_win = bool(raw["radiant_win"])
    players = [
        player for player in (_match_player(item) for item in raw_players) if player
    ]
    radiant_team_id = _optional_int(raw.get("radiant_team_id"))
    dire_team_id = _optional_int(raw.get("dire_team_id"))
    radiant = MatchSide(
        side=RADIANT,
        team_id=radiant_team_id,
        name=_side_name(raw, RADIANT),
        score=_as_int(raw.get("radiant_score")),
        players=[player for player in players if player.side == RADIANT],
    )
    dire = MatchSide(
        side=DIRE,
        team_id=dire_team_id,
        name=_side_name(raw, DIRE),
        score=_as_int(raw.get("dire_score")),
        players=[player for player in players if player.side == DIRE],
    )

    perspective, opponent = radiant, dire
    if team_id is not None and dire_team_id == team_id:
        perspective, opponent = dire, radiant
    won = radiant_win if perspective.side == RADIANT else not radiant_win

    picks_bans = []
    for index, item in enumerate(raw.get("picks_bans") or []):
        if not isinstance(item, dict) or item.get("hero_id") is None:
            continue
        picks_bans.append(
            DraftAction(
                hero_id=_require_int(item, ("hero_id",), "match"),
                is_pick=bool(item.get("is_pick")),
                side=RADIANT if _as_int(item.get("team")) == 0 else DIRE,
                order=_as_int(item.get("order", index)),
            )
        )

    return MatchDetails(
        id=match_id,
        team_id=perspective.team_id if team_id is None else team_id,
        opponent=opponent.name,
        result="win" if won else "loss",
        date=to_iso(raw.get("start_time")),
        duration=_as_int(raw.get("duration")),
        heroes=[player.hero_id for player in perspective.players if player.hero_id],
        players=players,
        league_id=_optional_int(raw.get("leagueid")),
        radiant_win=radiant_win,
        radiant=radiant,
        dire=dire,
        picks_bans=picks_bans,
        timeline=MatchTimeline(
            objectives=[item for item in raw.get("objectives") or [] if isinstance(item, dict)],
            teamfights=[item for item in raw.get("teamfights") or [] if isinstance(item, dict)],
            radiant_gold_adv=[_as_int(value) for value in raw.get("radiant_gold_adv") or []],
            radiant_xp_adv=[_as_int(value) for value in raw.get("radiant_xp_adv") or []],
        ),
    )


def _side_name(raw: Dict[str, Any], side: str) -> Optional[str]:
    name = raw.get(f"{side}_name")
    if name:
        return name
    team = raw.get(f"{side}_team")
    if isinstance(team, dict):
        return team.get("name") or team.get("tag")
    return None


def _match_player(raw: Any) -> Optional[MatchPlayer]:
    if not isinstance(raw, dict) or raw.get("player_slot") is None:
        return None
    slot = _require_int(raw, ("player_slot",), "match")
    purchase_time = raw.get("purchase_time")
    if isinstance(purchase_time, dict):
        purchase_time = {str(key): _as_int(value) for key, value in purchase_time.items()}
    else:
        purchase_time = None
    roaming = raw.get("is_roaming")
    return MatchPlayer(
        account_id=_optional_int(raw.get("account_id")),
        player_slot=slot,
        side=side_for_slot(slot),
        hero_id=_optional_int(raw.get("hero_id")),
        name=raw.get("name") or raw.get("personaname"),
        kills=_as_int(raw.get("kills")),
        deaths=_as_int(raw.get("deaths")),
        assists=_as_int(raw.get("assists")),
        last_hits=_as_int(raw.get("last_hits")),
        denies=_as_int(raw.get("denies")),
        gold_per_min=_as_int(raw.get("gold_per_min")),
        xp_per_min=_as_int(raw.get("xp_per_min")),
        net_worth=_as_int(raw.get("net_worth")),
        level=_as_int(raw.get("level")),
        hero_damage=_as_int(raw.get("hero_damage")),
        tower_damage=_as_int(raw.get("tower_damage")),
        hero_healing=_as_int(raw.get("hero_healing")),
        observer_uses=_as_int(raw.get("observer_uses")),
        sentry_uses=_as_int(raw.get("sentry_uses")),
        lane=_optional_int(raw.get("lane")),
        lane_role=_optional_int(raw.get("lane_role")),
        is_roaming=None if roaming is None else bool(roaming),
        purchase_time=purchase_time,
    )


# ---------------------------------------------------------------------------
# Catalogs
# ---------------------------------------------------------------------------


@_rejects_invalid("hero")
def normalize_heroes(raw: Any) -> List[Hero]:
    if isinstance(raw, dict):
        raw = list(raw.values())
    if not isinstance(raw, list):
        raise DataValidationError("hero", "Hero list payload must be a list.")
    heroes = []
    for item in raw:
        if not isinstance(item, dict) or item.get("id") is None:
            continue
        name = str(item.get("name") or "")
        heroes.append(
            Hero(
                id=_require_int(item, ("id",), "hero"),
                name=name,
                localized_name=item.get("localized_name") or name.replace("npc_dota_hero_", ""),
                primary_attr=item.get("primary_attr"),
                attack_type=item.get("attack_type"),
                roles=[str(role) for role in item.get("roles") or []],
                pro_pick=_optional_int(item.get("pro_pick")),
                pro_win=_optional_int(item.get("pro_win")),
                pro_ban=_optional_int(item.get("pro_ban")),
            )
        )
    return sorted(heroes, key=lambda hero: hero.id)


@_rejects_invalid("item")
def normalize_items(raw: Any) -> List[Item]:
    if not isinstance(raw, dict):
        raise DataValidationError("item", "Item constants payload must be an object.")
    items = []
    for key, item in raw.items():
        if not isinstance(item, dict) or item.get("id") is None:
            continue
        items.append(
            Item(
                id=_require_int(item, ("id",), "item"),
                key=str(key),
                name=item.get("dname") or str(key),
                cost=_optional_int(item.get("cost")),
            )
        )
    return sorted(items, key=lambda entry: entry.id)


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------


def _first_present(raw: Dict[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None and value != "":
            return value
    return None


def _require_int(raw: Dict[str, Any], keys: Iterable[str], kind: str) -> int:
    keys = tuple(keys)
    value = _first_present(raw, keys)
    if value is None:
        logger.warning(f"[VALIDATION] {kind} payload missing {keys[0]}")
        raise DataValidationError(kind, f"Missing required field: {keys[0]}")
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError) as exc:
        logger.warning(f"[VALIDATION] {kind} payload has non-numeric {keys[0]}: {value!r}")
        raise DataValidationError(kind, f"Field {keys[0]} must be numeric") from exc


def _require_str(raw: Dict[str, Any], keys: Iterable[str], kind: str) -> str:
    keys = tuple(keys)
    value = _first_present(raw, keys)
    if not isinstance(value, str) or not value.strip():
        logger.warning(f"[VALIDATION] {kind} payload missing {keys[0]}")
        raise DataValidationError(kind, f"Missing required field: {keys[0]}")
    return value.strip()


def _as_int(value: Any) -> int:
    if value is None:
        return 0
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return 0


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return None
