from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from dota_scout.models import MatchPlayer, Role

SUPPORT_ITEMS = ("ward_observer", "ward_sentry", "smoke_of_deceit", "dust")
FARMING_ITEMS = (
    "power_treads",
    "hand_of_midas",
    "bfury",
    "maelstrom",
    "radiance",
    "manta",
    "mask_of_madness",
    "desolator",
)

SAFE_LANE = 1
MID_LANE = 2
OFF_LANE = 3

# (3+ players, 2 players, 1 player) by descending support lean.
_SAFE_LANE_ROLES = (
    (Role.HARD_SUPPORT, Role.SUPPORT, Role.CARRY),
    (Role.HARD_SUPPORT, Role.CARRY),
    (Role.CARRY,),
)
_OFF_LANE_ROLES = (
    (Role.HARD_SUPPORT, Role.SUPPORT, Role.OFFLANE),
    (Role.SUPPORT, Role.OFFLANE),
    (Role.OFFLANE,),
)


@dataclass(frozen=True)
class _PlayerSignal:
    account_id: int
    lane_role: Optional[int]
    support_score: int
    farm_score: int
    first_support_purchase: float
    is_roaming: bool
    raw_lane_role: Optional[int]


def has_purchase_data(player: MatchPlayer) -> bool:
    return bool(player.purchase_time)


def support_score(player: MatchPlayer) -> int:
    purchases = player.purchase_time or {}
    return sum(1 for item in SUPPORT_ITEMS if item in purchases)


def farm_score(player: MatchPlayer) -> int:
    purchases = player.purchase_time or {}
    return sum(1 for item in FARMING_ITEMS if item in purchases)


def _first_support_purchase(player: MatchPlayer) -> float:
    purchases = player.purchase_time or {}
    times = [purchases[item] for item in SUPPORT_ITEMS if item in purchases]
    return float(min(times)) if times else float("inf")


def _effective_lane_role(player: MatchPlayer) -> Optional[int]:
    if player.lane_role in (SAFE_LANE, MID_LANE, OFF_LANE):
        return player.lane_role
    if player.lane_role is not None:
        return None
    # lane is map-relative: radiant safe lane is bottom (1), dire safe lane is top (3)
    if player.lane == MID_LANE:
        return MID_LANE
    if player.lane in (1, 3):
        safe = 1 if player.side == "radiant" else 3
        return SAFE_LANE if player.lane == safe else OFF_LANE
    return None


def _signal(player: MatchPlayer) -> _PlayerSignal:
    return _PlayerSignal(
        account_id=int(player.account_id),
        lane_role=_effective_lane_role(player),
        support_score=support_score(player),
        farm_score=farm_score(player),
        first_support_purchase=_first_support_purchase(player),
        is_roaming=bool(player.is_roaming),
        raw_lane_role=player.lane_role,
    )


def _lean(signal: _PlayerSignal) -> Tuple[int, float]:
    return signal.support_score - signal.farm_score, signal.first_support_purchase


def _most_supportive_first(signals: Iterable[_PlayerSignal]) -> List[_PlayerSignal]:
    return sorted(signals, key=lambda s: (-_lean(s)[0], _lean(s)[1], s.account_id))


def _assign_lane(
    signals: Sequence[_PlayerSignal],
    table: Sequence[Sequence[Role]],
    overflow: Role,
    roles: Dict[int, Role],
) -> None:
    ordered = _most_supportive_first(signals)
    if not ordered:
        return
    leans = [_lean(signal) for signal in ordered]
    if len(set(leans)) < len(leans):
        # identical purchase signals give no basis for ordering the lane
        for signal in ordered:
            roles[signal.account_id] = Role.UNKNOWN
        return
    pattern = table[0] if len(ordered) >= 3 else table[3 - len(ordered)]
    for index, signal in enumerate(ordered):
        roles[signal.account_id] = pattern[index] if index < len(pattern) else overflow


def _detect_side(players: Sequence[MatchPlayer], roles: Dict[int, Role]) -> None:
    signals = []
    for player in players:
        if not has_purchase_data(player):
            roles[int(player.account_id)] = Role.UNKNOWN
            continue
        signals.append(_signal(player))

    for signal in signals:
        if signal.lane_role == MID_LANE:
            roles[signal.account_id] = Role.MID
    _assign_lane(
        [s for s in signals if s.lane_role == SAFE_LANE], _SAFE_LANE_ROLES, Role.CARRY, roles
    )
    _assign_lane(
        [s for s in signals if s.lane_role == OFF_LANE], _OFF_LANE_ROLES, Role.OFFLANE, roles
    )

    for signal in signals:
        if signal.account_id in roles:
            continue
        if signal.is_roaming:
            roles[signal.account_id] = Role.ROAMING
        elif signal.raw_lane_role == 4:
            roles[signal.account_id] = Role.SUPPORT
        elif signal.raw_lane_role == 5:
            roles[signal.account_id] = Role.HARD_SUPPORT
        else:
            roles[signal.account_id] = Role.UNKNOWN


def detect_roles(players: Sequence[MatchPlayer]) -> Dict[int, Role]:
    """Infer a lane role for every identified player in a match.

    Players are grouped per side, then by lane role. Inside a shared lane
    each player leans support by the number of support consumables bought
    (observer and sentry wards, smoke, dust) minus the number of farming
    items bought. The strongest lean is the hardest support and an earlier
    first support purchase breaks equal leans. When two lane members have
    the same lean and the same first support purchase the whole lane is
    ``unknown``. Players without any ``purchase_time`` data are ``unknown``. Anonymous players (no account
    id) are skipped since they cannot be keyed.
    """
    identified = [player for player in players if player.account_id is not None]
    roles: Dict[int, Role] = {}
    for side in ("radiant", "dire"):
        _detect_side(
            sorted(
                (player for player in identified if player.side == side),
                key=lambda player: player.player_slot,
            ),
            roles,
        )
    return roles
