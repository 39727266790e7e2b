from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class Role(str, Enum):
    CARRY = "carry"
    MID = "mid"
    OFFLANE = "offlane"
    SUPPORT = "support"
    HARD_SUPPORT = "hard_support"
    ROAMING = "roaming"
    UNKNOWN = "unknown"


class HeroStat(BaseModel):
    hero_id: int
    games: int = 0
    wins: int = 0
    win_rate: float = 0.0
    last_played: Optional[str] = None


class TeamStreaks(BaseModel):
    current_win_streak: int = 0
    current_loss_streak: int = 0
    longest_win_streak: int = 0
    longest_loss_streak: int = 0


class TeamStatistics(BaseModel):
    wins: int = 0
    losses: int = 0
    total_matches: int = 0
    win_rate: float = 0.0
    rating: Optional[float] = None
    last_match_time: Optional[str] = None
    streaks: TeamStreaks = Field(default_factory=TeamStreaks)
    average_match_duration: float = 0.0


class RosterEntry(BaseModel):
    account_id: int
    name: Optional[str] = None
    games_played: int = 0
    wins: int = 0
    win_rate: float = 0.0
    is_current: bool = True


class MatchSummary(BaseModel):
    id: int
    team_id: Optional[int] = None
    opponent: Optional[str] = None
    result: str
    date: Optional[str] = None
    duration: int = 0
    league_id: Optional[int] = None


class Team(BaseModel):
    id: int
    name: str
    tag: str
    logo_url: Optional[str] = None
    source: str
    statistics: TeamStatistics = Field(default_factory=TeamStatistics)
    roster: List[RosterEntry] = Field(default_factory=list)
    recent_matches: List[MatchSummary] = Field(default_factory=list)
    processed_at: Optional[str] = None


class PlayerProfile(BaseModel):
    name: Optional[str] = None
    persona_name: Optional[str] = None
    avatar_url: Optional[str] = None
    profile_url: Optional[str] = None
    country_code: Optional[str] = None
    rank_tier: Optional[int] = None
    leaderboard_rank: Optional[int] = None


class PlayerOverallStats(BaseModel):
    total_matches: int = 0
    wins: int = 0
    losses: int = 0
    win_rate: float = 0.0
    average_kda: float = 0.0
    average_gpm: float = 0.0
    average_xpm: float = 0.0
    average_duration: float = 0.0


class PlayerMatchSummary(BaseModel):
    match_id: int
    hero_id: Optional[int] = None
    won: Optional[bool] = None
    kills: int = 0
    deaths: int = 0
    assists: int = 0
    gold_per_min: int = 0
    xp_per_min: int = 0
    duration: int = 0
    start_time: Optional[str] = None
    lane_role: Optional[int] = None


class Player(BaseModel):
    account_id: int
    source: str = "opendota"
    profile: PlayerProfile = Field(default_factory=PlayerProfile)
    hero_stats: List[HeroStat] = Field(default_factory=list)
    overall_stats: PlayerOverallStats = Field(default_factory=PlayerOverallStats)
    recent_matches: List[PlayerMatchSummary] = Field(default_factory=list)
    recent_match_ids: List[int] = Field(default_factory=list)
    error: Optional[str] = None

    @classmethod
    def placeholder(cls, account_id: int, error: str) -> "Player":
        return cls(account_id=account_id, source="placeholder", error=error)

    @property
    def is_placeholder(self) -> bool:
        return self.error is not None


class MatchPlayer(BaseModel):
    account_id: Optional[int] = None
    player_slot: int
    side: str
    hero_id: Optional[int] = None
    name: Optional[str] = None
    kills: int = 0
    deaths: int = 0
    assists: int = 0
    last_hits: int = 0
    denies: int = 0
    gold_per_min: int = 0
    xp_per_min: int = 0
    net_worth: int = 0
    level: int = 0
    hero_damage: int = 0
    tower_damage: int = 0
    hero_healing: int = 0
    observer_uses: int = 0
    sentry_uses: int = 0
    lane: Optional[int] = None
    lane_role: Optional[int] = None
    is_roaming: Optional[bool] = None
    purchase_time: Optional[Dict[str, int]] = None


class MatchSide(BaseModel):
    side: str
    team_id: Optional[int] = None
    name: Optional[str] = None
    score: int = 0
    players: List[MatchPlayer] = Field(default_factory=list)


class DraftAction(BaseModel):
    hero_id: int
    is_pick: bool
    side: str
    order: int


class MatchTimeline(BaseModel):
    objectives: List[Dict] = Field(default_factory=list)
    teamfights: List[Dict] = Field(default_factory=list)
    radiant_gold_adv: List[int] = Field(default_factory=list)
    radiant_xp_adv: List[int] = Field(default_factory=list)


class KeyMoment(BaseModel):
    timestamp: int
    type: str
    side: str
    details: Dict[str, object] = Field(default_factory=dict)


class TeamFight(BaseModel):
    start: int
    end: int
    deaths: int
    radiant_gold_delta: int = 0
    dire_gold_delta: int = 0
    winner: str


class GraphPoint(BaseModel):
    minute: int
    radiant_advantage: int
    dire_advantage: int


class MatchAnalysis(BaseModel):
    key_moments: List[KeyMoment] = Field(default_factory=list)
    team_fights: List[TeamFight] = Field(default_factory=list)
    gold_graph: List[GraphPoint] = Field(default_factory=list)
    xp_graph: List[GraphPoint] = Field(default_factory=list)


class Match(BaseModel):
    id: int
    team_id: Optional[int] = None
    opponent: Optional[str] = None
    result: str
    date: Optional[str] = None
    duration: int = 0
    heroes: List[int] = Field(default_factory=list)
    players: List[MatchPlayer] = Field(default_factory=list)


class MatchDetails(Match):
    league_id: Optional[int] = None
    radiant_win: bool
    radiant: MatchSide
    dire: MatchSide
    picks_bans: List[DraftAction] = Field(default_factory=list)
    timeline: MatchTimeline = Field(default_factory=MatchTimeline)
    analysis: Optional[MatchAnalysis] = None

    def all_players(self) -> List[MatchPlayer]:
        return list(self.radiant.players) + list(self.dire.players)


class Hero(BaseModel):
    id: int
    name: str
    localized_name: str
    primary_attr: Optional[str] = None
    attack_type: Optional[str] = None
    roles: List[str] = Field(default_factory=list)
    pro_pick: Optional[int] = None
    pro_win: Optional[int] = None
    pro_ban: Optional[int] = None


class Item(BaseModel):
    id: int
    key: str
    name: str
    cost: Optional[int] = None


class StrengthMetric(BaseModel):
    category: str
    score: float
    description: str


class HeroPerformance(BaseModel):
    most_successful: List[HeroStat] = Field(default_factory=list)
    underperforming: List[HeroStat] = Field(default_factory=list)


class PhasePerformance(BaseModel):
    phase: str
    matches: int = 0
    wins: int = 0
    win_rate: float = 0.0
    trend: str = "stable"


class TeamAnalysis(BaseModel):
    team_id: Optional[int] = None
    total_matches: int = 0
    wins: int = 0
    losses: int = 0
    win_rate: float = 0.0
    strengths: List[StrengthMetric] = Field(default_factory=list)
    weaknesses: List[StrengthMetric] = Field(default_factory=list)
    hero_performance: HeroPerformance = Field(default_factory=HeroPerformance)
    phase_performance: List[PhasePerformance] = Field(default_factory=list)
    overall_trend: str = "stable"
    players_unavailable: List[int] = Field(default_factory=list)
    top_opponents: List[Dict[str, object]] = Field(default_factory=list)


class PoolHero(BaseModel):
    hero_id: int
    name: str
    role: str
    games: int = 0
    wins: int = 0
    win_rate: float = 0.0


class DraftPick(BaseModel):
    hero_id: int
    name: str
    role: str
    reason: str
    pick_priority: str
    win_rate: float
    games: int


class PhaseRecommendation(BaseModel):
    title: str
    description: str
    heroes: List[DraftPick] = Field(default_factory=list)


class DraftSuggestions(BaseModel):
    team_id: Optional[int] = None
    account_ids: List[int] = Field(default_factory=list)
    hero_pool: List[PoolHero] = Field(default_factory=list)
    team_strengths: Dict[str, Optional[PoolHero]] = Field(default_factory=dict)
    team_weaknesses: List[str] = Field(default_factory=list)
    phase_recommendations: Dict[str, PhaseRecommendation] = Field(default_factory=dict)
    players_unavailable: List[int] = Field(default_factory=list)


class MetaHero(BaseModel):
    hero_id: int
    name: str
    picks: int = 0
    bans: int = 0
    wins: int = 0
    pick_rate: float = 0.0
    ban_rate: float = 0.0
    win_rate: float = 0.0
    contest_rate: float = 0.0


class RoleMeta(BaseModel):
    role: str
    heroes: int = 0
    picks: int = 0
    win_rate: float = 0.0


class MetaInsights(BaseModel):
    total_matches: int = 0
    key_heroes: List[MetaHero] = Field(default_factory=list)
    role_stats: List[RoleMeta] = Field(default_factory=list)


class InvalidateRequest(BaseModel):
    namespace: str = Field(..., min_length=1)
    entity_id: Optional[str] = None


class PlayerBatchResponse(BaseModel):
    players: List[Player]
    hero_stats: List[HeroStat]
