from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

from dota_scout.env import load_env  # noqa: E402
from dota_scout.errors import ScoutDataError  # noqa: E402
from dota_scout.fixtures import FixtureStore  # noqa: E402
from dota_scout.settings import Settings  # noqa: E402
from dota_scout.upstream_client import OPENDOTA, UpstreamClient, retry_sync  # noqa: E402


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Capture raw OpenDota payloads into the fixture store.")
    parser.add_argument("--teams", nargs="*", default=None, help="Team ids, comma or space separated.")
    parser.add_argument("--players", nargs="*", default=None, help="Player account ids.")
    parser.add_argument("--matches", nargs="*", default=None, help="Match ids.")
    parser.add_argument(
        "--catalogs",
        action="store_true",
        help="Also capture the hero and item catalogs.",
    )
    parser.add_argument(
        "--team-matches",
        type=int,
        default=int(os.getenv("TEAM_ANALYSIS_MATCH_LIMIT", "20")),
        help="Capture details for this many recent matches of each team.",
    )
    parser.add_argument(
        "--max-retries",
        type=int,
        default=int(os.getenv("UPSTREAM_MAX_ATTEMPTS", "3")),
        help="Attempts per request on rate limits and network failures.",
    )
    parser.add_argument(
        "--retry-delay",
        type=float,
        default=float(os.getenv("UPSTREAM_RETRY_BASE_DELAY", "2")),
        help="Base delay in seconds for retry backoff.",
    )
    parser.add_argument("--overwrite", action="store_true", help="Refetch payloads already captured.")
    return parser.parse_args()


def _parse_ids(raw: object) -> list[int]:
    if not raw:
        return []
    values = raw if isinstance(raw, list) else [raw]
    ids: list[int] = []
    for value in values:
        for part in str(value).split(","):
            part = part.strip()
            if part.isdigit():
                ids.append(int(part))
    return ids


def team_paths(team_id: int) -> list[str]:
    return [f"teams/{team_id}", f"teams/{team_id}/matches", f"teams/{team_id}/players"]


def player_paths(account_id: int) -> list[str]:
    return [
        f"players/{account_id}",
        f"players/{account_id}/wl",
        f"players/{account_id}/heroes",
        f"players/{account_id}/recentMatches",
    ]


def capture(
    client: UpstreamClient,
    store: FixtureStore,
    path: str,
    args: argparse.Namespace,
) -> object:
    if not args.overwrite:
        cached = store.load(OPENDOTA, path)
        if cached is not None:
            print(f"  ✓ {path} already captured")
            return cached
    payload = retry_sync(
        lambda: client.fetch_raw(OPENDOTA, path),
        attempts=max(args.max_retries, 1),
        base_delay=args.retry_delay,
    )
    store.save(OPENDOTA, path, payload)
    print(f"  ✓ {path}")
    return payload


def seed_fixtures(args: argparse.Namespace) -> None:
    load_env()
    settings = Settings.from_env()
    client = UpstreamClient.from_settings(settings)
    store = FixtureStore(settings.fixture_dir)

    paths: list[str] = []
    if args.catalogs:
        paths.extend(["heroStats", "constants/items"])
    for account_id in _parse_ids(args.players):
        paths.extend(player_paths(account_id))
    match_ids = _parse_ids(args.matches)

    failures: dict[str, str] = {}
    for team_id in _parse_ids(args.teams):
        print(f"Team {team_id}")
        try:
            _, matches, players = [capture(client, store, path, args) for path in team_paths(team_id)]
        except ScoutDataError as exc:
            failures[f"teams/{team_id}"] = exc.error
            continue
        for entry in players or []:
            if entry.get("is_current_team_member") and entry.get("account_id"):
                paths.extend(player_paths(int(entry["account_id"])))
        match_ids.extend(int(m["match_id"]) for m in (matches or [])[: args.team_matches])

    paths.extend(f"matches/{match_id}" for match_id in match_ids)
    unique_paths = list(dict.fromkeys(paths))
    print(f"Capturing {len(unique_paths)} payloads into {store.root}")
    for i, path in enumerate(unique_paths, 1):
        print(f"[{i}/{len(unique_paths)}] {path}")
        try:
            capture(client, store, path, args)
        except ScoutDataError as exc:
            print(f"  ✗ {exc.error}: {exc}")
            failures[path] = exc.error
        except KeyboardInterrupt:
            print("\n  ⚠ Interrupted by user. Continuing with summary...")
            break

    print(f"\n{'='*60}")
    print("Fixture capture complete.")
    succeeded = sum(1 for path in unique_paths if path not in failures)
    print(f"Success: {succeeded}/{len(unique_paths)} payloads")
    if failures:
        print("Failed payloads:")
        for path, error in failures.items():
            print(f"  - {path}: {error}")
    print(f"{'='*60}")


if __name__ == "__main__":
    seed_fixtures(_parse_args())
