"""
backend/metegol/services/match_mapper.py

Purpose:
    Conversion between the caller-facing Match shape (fixture/league/teams/
    goals + optional statistics/events/lineups) and the stored match record.

Dependencies:
    - metegol.utils
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from metegol.utils import as_utc, parse_utc

# Fields that describe the match itself; equal values mean nothing new to write.
CONTENT_FIELDS = ("league_id", "league", "kickoff", "status", "home_team", "away_team", "goals")


def match_id(match: dict[str, Any]) -> int:
    return int(match["fixture"]["id"])


def match_status(match: dict[str, Any]) -> str | None:
    return ((match.get("fixture") or {}).get("status") or {}).get("short")


def match_kickoff(match: dict[str, Any]) -> datetime | None:
    raw = (match.get("fixture") or {}).get("date")
    return parse_utc(raw) if raw else None


def non_empty_sides(value: Any) -> bool:
    return isinstance(value, dict) and (bool(value.get("home")) or bool(value.get("away")))


def clean_statistics(stats: dict[str, Any]) -> dict[str, list]:
    """Drop {type, value} entries with no value."""
    return {
        side: [s for s in (stats.get(side) or []) if s.get("value") is not None]
        for side in ("home", "away")
    }


def record_fields(match: dict[str, Any]) -> dict[str, Any]:
    """Core record fields from a Match (no enrichment, no freshness metadata)."""
    fixture = match.get("fixture") or {}
    league = match.get("league") or {}
    teams = match.get("teams") or {}
    goals = match.get("goals") or {}
    status = fixture.get("status") or {}
    return {
        "league_id": league.get("id"),
        "league": {
            "id": league.get("id"),
            "name": league.get("name"),
            "logo": league.get("logo"),
            "country": league.get("country"),
            "season": league.get("season"),
        },
        "kickoff": match_kickoff(match),
        "status": {
            "long": status.get("long"),
            "short": status.get("short"),
            "elapsed": status.get("elapsed"),
        },
        "home_team": dict(teams.get("home") or {}),
        "away_team": dict(teams.get("away") or {}),
        "goals": {"home": goals.get("home"), "away": goals.get("away")},
    }


def match_from_record(record: dict[str, Any], lineups: dict[str, Any] | None = None) -> dict[str, Any]:
    kickoff = as_utc(record.get("kickoff"))
    league = dict(record.get("league") or {})
    league.setdefault("id", record.get("league_id"))
    match: dict[str, Any] = {
        "fixture": {
            "id": record.get("_id"),
            "date": kickoff.isoformat() if kickoff else None,
            "status": dict(record.get("status") or {}),
        },
        "league": league,
        "teams": {
            "home": dict(record.get("home_team") or {}),
            "away": dict(record.get("away_team") or {}),
        },
        "goals": dict(record.get("goals") or {"home": None, "away": None}),
    }
    if non_empty_sides(record.get("statistics")):
        match["statistics"] = record["statistics"]
    if non_empty_sides(record.get("events")):
        match["events"] = record["events"]
    if lineups and lineups.get("home") and lineups.get("away"):
        match["lineups"] = lineups
    return match


def lineup_record_id(team_id: int, match_id_: int, day: str) -> str:
    return f"form_{team_id}_{match_id_}_{day}"


def sort_by_kickoff(matches: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return sorted(matches, key=lambda m: str((m.get("fixture") or {}).get("date") or ""))
