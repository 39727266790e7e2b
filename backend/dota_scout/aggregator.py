from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from dota_scout.models import (
    DraftPick,
    DraftSuggestions,
    GraphPoint,
    Hero,
    HeroPerformance,
    HeroStat,
    KeyMoment,
    MatchAnalysis,
    MatchDetails,
    MatchSide,
    MatchSummary,
    MetaHero,
    MetaInsights,
    PhasePerformance,
    PhaseRecommendation,
    Player,
    PlayerOverallStats,
    PoolHero,
    RoleMeta,
    StrengthMetric,
    Team,
    TeamAnalysis,
    TeamFight,
    TeamStreaks,
)
from dota_scout.settings import AnalysisConfig

logger = logging.getLogger(__name__)

IMPROVING = "improving"
DECLINING = "declining"
STABLE = "stable"

BUILDING_KILL = "building_kill"
OBJECTIVE_TYPES = {
    "CHAT_MESSAGE_FIRSTBLOOD": "first_blood",
    "CHAT_MESSAGE_ROSHAN_KILL": "roshan_kill",
    "CHAT_MESSAGE_AEGIS": "aegis",
    BUILDING_KILL: "building_kill",
}


def _int_or_zero(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError, OverflowError):
        return 0


def _rate(wins: float, games: float) -> float:
    if games <= 0:
        return 0.0
    return round(float(wins) / float(games) * 100, 1)


# ---------------------------------------------------------------------------
# Hero statistics
# ---------------------------------------------------------------------------


def aggregate_hero_stats(players: Sequence[Player]) -> List[HeroStat]:
    """Sum per-hero games and wins across players.

    Placeholder players contribute nothing. Output is ordered by descending
    games, then ascending hero id, so permuting ``players`` does not change it.
    """
    rows = [
        {
            "hero_id": stat.hero_id,
            "games": stat.games,
            "wins": stat.wins,
            "last_played": stat.last_played,
        }
        for player in players
        if not player.is_placeholder
        for stat in player.hero_stats
    ]
    if not rows:
        return []

    df = pd.DataFrame(rows)
    agg_df = (
        df.groupby("hero_id")
        .agg(
            games=("games", "sum"),
            wins=("wins", "sum"),
            last_played=("last_played", lambda x: x.dropna().max() if not x.dropna().empty else None),
        )
        .reset_index()
    )

    stats = [
        HeroStat(
            hero_id=int(row["hero_id"]),
            games=int(row["games"]),
            wins=int(row["wins"]),
            win_rate=_rate(row["wins"], row["games"]),
            last_played=row["last_played"] if isinstance(row["last_played"], str) else None,
        )
        for _, row in agg_df.iterrows()
    ]
    stats.sort(key=lambda stat: (-stat.games, stat.hero_id))
    return stats


def top_heroes(stats: Sequence[HeroStat], limit: int, by: str = "games") -> List[HeroStat]:
    if by == "win_rate":
        ordered = sorted(stats, key=lambda s: (-s.win_rate, -s.games, s.hero_id))
    elif by == "games":
        ordered = sorted(stats, key=lambda s: (-s.games, s.hero_id))
    else:
        raise ValueError(f"Unsupported hero ordering: {by}")
    return ordered[: max(limit, 0)]


# ---------------------------------------------------------------------------
# Team enrichment
# ---------------------------------------------------------------------------


def _newest_first(matches: Sequence[MatchSummary]) -> List[MatchSummary]:
    dated = sorted((m for m in matches if m.date), key=lambda m: m.date, reverse=True)
    return dated + [m for m in matches if not m.date]


def compute_streaks(results: Sequence[str]) -> TeamStreaks:
    """Streaks over results ordered newest first ("win" / "loss")."""
    decided = [result for result in results if result in ("win", "loss")]
    current_win = current_loss = 0
    if decided:
        head = decided[0]
        run = 0
        for result in decided:
            if result != head:
                break
            run += 1
        if head == "win":
            current_win = run
        else:
            current_loss = run

    longest_win = longest_loss = 0
    run_win = run_loss = 0
    for result in decided:
        if result == "win":
            run_win += 1
            run_loss = 0
        else:
            run_loss += 1
            run_win = 0
        longest_win = max(longest_win, run_win)
        longest_loss = max(longest_loss, run_loss)

    return TeamStreaks(
        current_win_streak=current_win,
        current_loss_streak=current_loss,
        longest_win_streak=longest_win,
        longest_loss_streak=longest_loss,
    )


def fallback_rating(win_rate: float) -> float:
    return round(1000 + (win_rate / 100 - 0.5) * 1000, 1)


def enrich_team(team: Team) -> Team:
    """Fill derived team statistics from the normalized match list."""
    ordered = _newest_first(team.recent_matches)
    durations = [m.duration for m in ordered if m.duration > 0]
    statistics = team.statistics.model_copy(
        update={
            "streaks": compute_streaks([m.result for m in ordered]),
            "average_match_duration": round(float(np.mean(durations)), 1) if durations else 0.0,
            "rating": team.statistics.rating
            if team.statistics.rating is not None
            else fallback_rating(team.statistics.win_rate),
        }
    )
    return team.model_copy(update={"statistics": statistics, "recent_matches": ordered})


def head_to_head(matches: Sequence[MatchSummary], limit: int = 5) -> List[Dict[str, Any]]:
    rows = [
        {"opponent": m.opponent, "won": int(m.result == "win"), "lost": int(m.result == "loss")}
        for m in matches
        if m.opponent
    ]
    if not rows:
        return []
    agg_df = (
        pd.DataFrame(rows)
        .groupby("opponent")
        .agg(matches=("won", "size"), wins=("won", "sum"), losses=("lost", "sum"))
        .reset_index()
    )
    records = [
        {
            "opponent": str(row["opponent"]),
            "matches": int(row["matches"]),
            "wins": int(row["wins"]),
            "losses": int(row["losses"]),
            "win_rate": _rate(row["wins"], row["wins"] + row["losses"]),
        }
        for _, row in agg_df.iterrows()
    ]
    records.sort(key=lambda item: (-item["matches"], item["opponent"]))
    return records[:limit]


# ---------------------------------------------------------------------------
# Player enrichment
# ---------------------------------------------------------------------------


def player_overall_stats(player: Player) -> PlayerOverallStats:
    base = player.overall_stats
    if not player.recent_matches:
        return base
    df = pd.DataFrame([match.model_dump() for match in player.recent_matches])
    kda = (df["kills"] + df["assists"]) / df["deaths"].clip(lower=1)
    durations = df.loc[df["duration"] > 0, "duration"]
    return base.model_copy(
        update={
            "average_kda": round(float(kda.mean()), 2),
            "average_gpm": round(float(df["gold_per_min"].mean()), 1),
            "average_xpm": round(float(df["xp_per_min"].mean()), 1),
            "average_duration": round(float(durations.mean()), 1) if not durations.empty else 0.0,
        }
    )


def enrich_player(player: Player) -> Player:
    return player.model_copy(update={"overall_stats": player_overall_stats(player)})


# ---------------------------------------------------------------------------
# Team analysis
# ---------------------------------------------------------------------------


def _team_side(match: MatchDetails) -> MatchSide:
    if match.team_id is not None and match.dire.team_id == match.team_id:
        return match.dire
    return match.radiant


def _match_rows(matches: Sequence[MatchDetails]) -> pd.DataFrame:
    rows = []
    for match in matches:
        side = _team_side(match)
        players = side.players
        kills = sum(p.kills for p in players)
        deaths = sum(p.deaths for p in players)
        assists = sum(p.assists for p in players)
        rows.append(
            {
                "match_id": match.id,
                "date": match.date or "",
                "duration": match.duration,
                "won": int(match.result == "win"),
                "kda": (kills + assists) / max(deaths, 1),
                "tower_damage": sum(p.tower_damage for p in players),
                "wards": sum(p.observer_uses + p.sentry_uses for p in players),
                "has_players": bool(players),
            }
        )
    return pd.DataFrame(rows)


def _capped_score(value: float, target: float) -> float:
    if target <= 0:
        return 0.0
    return round(min(value / target * 100, 100.0), 1)


def _strength_metrics(
    df: pd.DataFrame, matches: Sequence[MatchDetails], config: AnalysisConfig
) -> List[StrengthMetric]:
    metrics: List[StrengthMetric] = []
    with_players = df[df["has_players"]]
    if not with_players.empty:
        avg_kda = float(with_players["kda"].mean())
        metrics.append(
            StrengthMetric(
                category="team_fight",
                score=_capped_score(avg_kda, config.team_fight_kda_target),
                description=f"Average team KDA {avg_kda:.2f}",
            )
        )
        avg_tower = float(with_players["tower_damage"].mean())
        metrics.append(
            StrengthMetric(
                category="objective_control",
                score=_capped_score(avg_tower, config.objective_tower_damage_target),
                description=f"Average tower damage {avg_tower:.0f} per match",
            )
        )
        avg_wards = float(with_players["wards"].mean())
        metrics.append(
            StrengthMetric(
                category="vision",
                score=_capped_score(avg_wards, config.vision_wards_target),
                description=f"Average {avg_wards:.1f} wards placed per match",
            )
        )

    early = df[df["duration"] < config.early_game_seconds]
    late = df[df["duration"] >= config.late_game_seconds]
    if not early.empty:
        early_rate = _rate(early["won"].sum(), len(early))
        metrics.append(
            StrengthMetric(
                category="early_aggression",
                score=early_rate,
                description=f"{early_rate}% win rate in games decided before "
                f"{config.early_game_seconds // 60} minutes",
            )
        )
    if not late.empty:
        late_rate = _rate(late["won"].sum(), len(late))
        metrics.append(
            StrengthMetric(
                category="late_game",
                score=late_rate,
                description=f"{late_rate}% win rate in games past "
                f"{config.late_game_seconds // 60} minutes",
            )
        )

    picks = [hero for match in matches for hero in match.heroes]
    if picks:
        unique = len(set(picks))
        metrics.append(
            StrengthMetric(
                category="draft_flexibility",
                score=_rate(unique, len(picks)),
                description=f"{unique} unique heroes across {len(picks)} picks",
            )
        )
    return metrics


def _trend(won: pd.Series, config: AnalysisConfig) -> str:
    """``won`` is ordered newest first."""
    window = max(config.trend_window, 1)
    recent = won.iloc[:window]
    older = won.iloc[window : window * 2]
    if recent.empty or older.empty:
        return STABLE
    delta = recent.mean() * 100 - older.mean() * 100
    if delta > config.trend_delta:
        return IMPROVING
    if delta < -config.trend_delta:
        return DECLINING
    return STABLE


def _phase_performance(df: pd.DataFrame, config: AnalysisConfig) -> List[PhasePerformance]:
    phases = pd.cut(
        df["duration"],
        bins=[-np.inf, config.early_game_seconds, config.late_game_seconds, np.inf],
        labels=["early", "mid", "late"],
        right=False,
    )
    results = []
    for phase in ("early", "mid", "late"):
        group = df[phases == phase]
        wins = int(group["won"].sum())
        results.append(
            PhasePerformance(
                phase=phase,
                matches=len(group),
                wins=wins,
                win_rate=_rate(wins, len(group)),
                trend=_trend(group["won"], config) if not group.empty else STABLE,
            )
        )
    return results


def _hero_performance(players: Sequence[Player], config: AnalysisConfig) -> HeroPerformance:
    eligible = [s for s in aggregate_hero_stats(players) if s.games >= config.min_games]
    successful = sorted(
        (s for s in eligible if s.win_rate >= config.success_win_rate),
        key=lambda s: (-s.win_rate, -s.games, s.hero_id),
    )
    underperforming = sorted(
        (s for s in eligible if s.win_rate < config.underperform_win_rate),
        key=lambda s: (s.win_rate, -s.games, s.hero_id),
    )
    return HeroPerformance(
        most_successful=successful[: config.top_heroes_limit],
        underperforming=underperforming[: config.top_heroes_limit],
    )


def aggregate_team_analysis(
    matches: Sequence[MatchDetails],
    players: Sequence[Player],
    config: Optional[AnalysisConfig] = None,
    team_id: Optional[int] = None,
) -> TeamAnalysis:
    config = config or AnalysisConfig()
    analysis = TeamAnalysis(
        team_id=team_id,
        hero_performance=_hero_performance(players, config),
        players_unavailable=sorted(p.account_id for p in players if p.is_placeholder),
    )
    if not matches:
        return analysis

    df = _match_rows(matches).sort_values(["date", "match_id"], ascending=False)
    df = df.reset_index(drop=True)
    wins = int(df["won"].sum())
    metrics = _strength_metrics(df, matches, config)
    return analysis.model_copy(
        update={
            "total_matches": len(df),
            "wins": wins,
            "losses": len(df) - wins,
            "win_rate": _rate(wins, len(df)),
            "strengths": sorted(
                (m for m in metrics if m.score >= config.strength_threshold),
                key=lambda m: (-m.score, m.category),
            ),
            "weaknesses": sorted(
                (m for m in metrics if m.score < config.weakness_threshold),
                key=lambda m: (m.score, m.category),
            ),
            "phase_performance": _phase_performance(df, config),
            "overall_trend": _trend(df["won"], config),
        }
    )


# ---------------------------------------------------------------------------
# Match analysis
# ---------------------------------------------------------------------------


def _objective_side(objective: Dict[str, Any]) -> str:
    slot = objective.get("player_slot")
    if isinstance(slot, int):
        return "radiant" if slot < 128 else "dire"
    team = objective.get("team")
    if team in (2, 3):
        return "radiant" if team == 2 else "dire"
    key = str(objective.get("key") or "")
    # a destroyed goodguys building was taken by dire and vice versa
    if "goodguys" in key:
        return "dire"
    if "badguys" in key:
        return "radiant"
    return "unknown"


def _key_moment(objective: Dict[str, Any]) -> Optional[KeyMoment]:
    kind = OBJECTIVE_TYPES.get(str(objective.get("type")))
    if kind is None:
        return None
    details: Dict[str, object] = {}
    if kind == BUILDING_KILL:
        key = str(objective.get("key") or "")
        if "tower" in key:
            kind = "tower_kill"
        elif "rax" in key:
            kind = "barracks_kill"
        else:
            return None
        details["building"] = key
    if objective.get("player_slot") is not None:
        details["player_slot"] = objective.get("player_slot")
    return KeyMoment(
        timestamp=_int_or_zero(objective.get("time")),
        type=kind,
        side=_objective_side(objective),
        details=details,
    )


def _team_fight(fight: Dict[str, Any]) -> TeamFight:
    deltas = [_int_or_zero(p.get("gold_delta")) for p in fight.get("players") or [] if isinstance(p, dict)]
    radiant_delta = sum(deltas[:5])
    dire_delta = sum(deltas[5:10])
    if radiant_delta > dire_delta:
        winner = "radiant"
    elif dire_delta > radiant_delta:
        winner = "dire"
    else:
        winner = "even"
    return TeamFight(
        start=_int_or_zero(fight.get("start")),
        end=_int_or_zero(fight.get("end")),
        deaths=_int_or_zero(fight.get("deaths")),
        radiant_gold_delta=radiant_delta,
        dire_gold_delta=dire_delta,
        winner=winner,
    )


def _graph(values: Sequence[int]) -> List[GraphPoint]:
    return [
        GraphPoint(minute=minute, radiant_advantage=value, dire_advantage=-value)
        for minute, value in enumerate(values)
    ]


def build_match_analysis(match: MatchDetails) -> MatchAnalysis:
    moments = [m for m in (_key_moment(o) for o in match.timeline.objectives) if m]
    moments.sort(key=lambda m: m.timestamp)
    return MatchAnalysis(
        key_moments=moments,
        team_fights=[_team_fight(fight) for fight in match.timeline.teamfights],
        gold_graph=_graph(match.timeline.radiant_gold_adv),
        xp_graph=_graph(match.timeline.radiant_xp_adv),
    )


# ---------------------------------------------------------------------------
# Draft suggestions
# ---------------------------------------------------------------------------

DRAFT_ROLES = ("carry", "mid", "offlane", "support")
FLEX = "flex"

# First matching OpenDota role tag wins; tags are listed most-defining first.
_DRAFT_ROLE_BY_TAG = {
    "Carry": "carry",
    "Support": "support",
    "Initiator": "offlane",
    "Durable": "offlane",
    "Nuker": "mid",
    "Escape": "mid",
    "Pusher": "mid",
}

DRAFT_MIN_GAMES = 3
DRAFT_MIN_WIN_RATE = 50.0
DRAFT_PICKS_PER_PHASE = 5
# (phase, win rate for the higher priority, higher, lower)
DRAFT_PHASES = (
    ("first", 60.0, "High", "Medium"),
    ("second", 55.0, "High", "Medium"),
    ("third", 50.0, "Medium", "Low"),
)


def draft_role(hero: Optional[Hero]) -> str:
    if hero is None:
        return FLEX
    for tag in hero.roles:
        role = _DRAFT_ROLE_BY_TAG.get(tag)
        if role is not None:
            return role
    return FLEX


def build_hero_pool(players: Sequence[Player], heroes: Sequence[Hero]) -> List[PoolHero]:
    catalog = {hero.id: hero for hero in heroes}
    pool = []
    for stat in aggregate_hero_stats(players):
        hero = catalog.get(stat.hero_id)
        pool.append(
            PoolHero(
                hero_id=stat.hero_id,
                name=hero.localized_name if hero else str(stat.hero_id),
                role=draft_role(hero),
                games=stat.games,
                wins=stat.wins,
                win_rate=stat.win_rate,
            )
        )
    return pool


def _best_by_role(pool: Sequence[PoolHero]) -> Dict[str, Optional[PoolHero]]:
    strengths: Dict[str, Optional[PoolHero]] = {}
    for role in DRAFT_ROLES:
        candidates = [hero for hero in pool if hero.role == role]
        strengths[role] = (
            min(candidates, key=lambda h: (-h.win_rate, -h.games, h.hero_id)) if candidates else None
        )
    return strengths


def _pool_weaknesses(pool: Sequence[PoolHero], config: AnalysisConfig) -> List[str]:
    weaknesses = []
    for role in DRAFT_ROLES:
        count = sum(1 for hero in pool if hero.role == role)
        if count == 0:
            weaknesses.append(f"No {role} heroes in pool")
        elif count < 3:
            weaknesses.append(f"Limited {role} hero pool")
    struggling = [
        hero
        for hero in pool
        if hero.games >= config.min_games and hero.win_rate < config.underperform_win_rate
    ]
    if struggling:
        weaknesses.append(f"{len(struggling)} heroes with low win rates")
    return weaknesses


def _phase_recommendations(pool: Sequence[PoolHero]) -> Dict[str, PhaseRecommendation]:
    candidates = sorted(
        (h for h in pool if h.games >= DRAFT_MIN_GAMES and h.win_rate >= DRAFT_MIN_WIN_RATE),
        key=lambda h: (-h.win_rate, -h.games, h.hero_id),
    )[:DRAFT_PICKS_PER_PHASE]
    return {
        phase: PhaseRecommendation(
            title=f"{phase.capitalize()} Phase Recommendations",
            description=f"Top performing heroes for {phase} phase picks",
            heroes=[
                DraftPick(
                    hero_id=hero.hero_id,
                    name=hero.name,
                    role=hero.role,
                    reason=f"{hero.win_rate:.1f}% win rate in {hero.games} games",
                    pick_priority=higher if hero.win_rate >= threshold else lower,
                    win_rate=hero.win_rate,
                    games=hero.games,
                )
                for hero in candidates
            ],
        )
        for phase, threshold, higher, lower in DRAFT_PHASES
    }


def build_draft_suggestions(
    players: Sequence[Player],
    heroes: Sequence[Hero],
    config: Optional[AnalysisConfig] = None,
    team_id: Optional[int] = None,
) -> DraftSuggestions:
    """Draft advice from the combined hero pool of ``players``.

    Placeholder players are reported in ``players_unavailable`` and add
    nothing to the pool.
    """
    config = config or AnalysisConfig()
    pool = build_hero_pool(players, heroes)
    return DraftSuggestions(
        team_id=team_id,
        account_ids=[player.account_id for player in players],
        hero_pool=pool,
        team_strengths=_best_by_role(pool),
        team_weaknesses=_pool_weaknesses(pool, config),
        phase_recommendations=_phase_recommendations(pool),
        players_unavailable=sorted(p.account_id for p in players if p.is_placeholder),
    )


# ---------------------------------------------------------------------------
# Meta insights
# ---------------------------------------------------------------------------

PICKS_PER_MATCH = 10


def build_meta_insights(heroes: Sequence[Hero], limit: int = 10) -> MetaInsights:
    """Professional pick, ban and win rates from the hero catalog."""
    rows = [
        {
            "hero_id": hero.id,
            "name": hero.localized_name,
            "role": draft_role(hero),
            "picks": hero.pro_pick or 0,
            "bans": hero.pro_ban or 0,
            "wins": hero.pro_win or 0,
        }
        for hero in heroes
        if hero.pro_pick is not None or hero.pro_ban is not None
    ]
    if not rows:
        return MetaInsights()

    df = pd.DataFrame(rows)
    total_matches = int(df["picks"].sum()) // PICKS_PER_MATCH
    if total_matches <= 0:
        return MetaInsights()

    df["contested"] = df["picks"] + df["bans"]
    key_df = df.sort_values(["contested", "hero_id"], ascending=[False, True]).head(max(limit, 0))
    key_heroes = [
        MetaHero(
            hero_id=int(row["hero_id"]),
            name=str(row["name"]),
            picks=int(row["picks"]),
            bans=int(row["bans"]),
            wins=int(row["wins"]),
            pick_rate=_rate(row["picks"], total_matches),
            ban_rate=_rate(row["bans"], total_matches),
            win_rate=_rate(row["wins"], row["picks"]),
            contest_rate=_rate(row["contested"], total_matches),
        )
        for _, row in key_df.iterrows()
    ]

    role_df = (
        df.groupby("role")
        .agg(heroes=("hero_id", "count"), picks=("picks", "sum"), wins=("wins", "sum"))
        .reset_index()
    )
    order = {role: index for index, role in enumerate(DRAFT_ROLES + (FLEX,))}
    role_stats = sorted(
        (
            RoleMeta(
                role=str(row["role"]),
                heroes=int(row["heroes"]),
                picks=int(row["picks"]),
                win_rate=_rate(row["wins"], row["picks"]),
            )
            for _, row in role_df.iterrows()
        ),
        key=lambda meta: order.get(meta.role, len(order)),
    )
    logger.info(f"[META] {len(df)} heroes over {total_matches} pro matches")
    return MetaInsights(total_matches=total_matches, key_heroes=key_heroes, role_stats=role_stats)
