"""
backend/metegol/providers/api_football.py

Purpose:
    api-football v3 adapter. Normalizes fixtures, statistics, events,
    lineups, standings, teams and leagues into the shapes the synchronizer
    stores. Endpoint-level failures (HTTP status, non-JSON body, API
    ``errors`` payload) raise UpstreamEndpointError; transport failures
    raise UpstreamTransportError. An empty ``response`` list is the only
    "no data" answer.

Dependencies:
    - metegol.providers.http_client
    - metegol.services.request_rate_limiter
    - metegol.services.quota_tracker
    - metegol.config
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from metegol.config import settings
from metegol.providers.base import UpstreamProvider
from metegol.providers.http_client import CircuitOpenError, ResilientClient
from metegol.services.quota_tracker import QuotaTracker, quota_tracker
from metegol.services.request_rate_limiter import request_rate_limiter
from metegol.utils import parse_day

logger = logging.getLogger("metegol.api_football")

PROVIDER_NAME = "api_football"

# Leagues whose season is the calendar year (South America, club world cup).
CALENDAR_YEAR_LEAGUES = {128, 129, 130, 13, 11, 71, 73, 15}


class UpstreamError(RuntimeError):
    """The upstream gave no usable answer; says nothing about whether data exists."""


class UpstreamTransportError(UpstreamError):
    """The upstream could not be reached after retries."""


class UpstreamEndpointError(UpstreamError):
    """The upstream answered with an HTTP error or an API ``errors`` payload."""


def season_for(day: str, league_id: int | None) -> int:
    """api-football season key for a league on a given day.

    Calendar-year leagues use the year; split-season leagues start in July.
    """
    parsed = parse_day(day)
    if league_id is None or int(league_id) in CALENDAR_YEAR_LEAGUES:
        return parsed.year
    return parsed.year if parsed.month >= 7 else parsed.year - 1


def _team(raw: dict | None) -> dict[str, Any]:
    raw = raw or {}
    return {"id": raw.get("id"), "name": raw.get("name"), "logo": raw.get("logo")}


def normalize_fixture(raw: dict[str, Any]) -> dict[str, Any]:
    fixture = raw.get("fixture") or {}
    status = fixture.get("status") or {}
    league = raw.get("league") or {}
    teams = raw.get("teams") or {}
    goals = raw.get("goals") or {}
    return {
        "fixture": {
            "id": fixture.get("id"),
            "date": fixture.get("date"),
            "status": {
                "long": status.get("long"),
                "short": status.get("short"),
                "elapsed": status.get("elapsed"),
            },
        },
        "league": {
            "id": league.get("id"),
            "name": league.get("name"),
            "logo": league.get("logo"),
            "country": league.get("country"),
            "season": league.get("season"),
        },
        "teams": {"home": _team(teams.get("home")), "away": _team(teams.get("away"))},
        "goals": {"home": goals.get("home"), "away": goals.get("away")},
    }


def normalize_event(raw: dict[str, Any]) -> dict[str, Any]:
    time_info = raw.get("time") or {}
    player = raw.get("player") or {}
    assist = raw.get("assist") or {}
    return {
        "type": raw.get("type"),
        "time": {"elapsed": time_info.get("elapsed"), "extra": time_info.get("extra")},
        "team": _team(raw.get("team")),
        "player": {"id": player.get("id"), "name": player.get("name")},
        "assist": {"id": assist.get("id"), "name": assist.get("name")},
        "detail": raw.get("detail"),
        "comments": raw.get("comments"),
    }


def _lineup_player(entry: dict[str, Any]) -> dict[str, Any]:
    player = entry.get("player") or entry
    return {
        "id": player.get("id"),
        "name": player.get("name"),
        "number": player.get("number"),
        "pos": player.get("pos"),
        "grid": player.get("grid"),
    }


def normalize_lineup(raw: dict[str, Any]) -> dict[str, Any]:
    team = raw.get("team") or {}
    coach = raw.get("coach") or {}
    return {
        "team": _team(team),
        "colors": team.get("colors"),
        "formation": raw.get("formation"),
        "coach": {"id": coach.get("id"), "name": coach.get("name"), "photo": coach.get("photo")},
        "start_xi": [_lineup_player(p) for p in raw.get("startXI") or []],
        "substitutes": [_lineup_player(p) for p in raw.get("substitutes") or []],
    }


def _kickoff_sort_key(match: dict[str, Any]) -> str:
    return str(((match.get("fixture") or {}).get("date")) or "")


class ApiFootballProvider(UpstreamProvider):
    """api-football.com v3 (x-apisports-key)."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        quota: QuotaTracker | None = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._api_key = settings.FOOTBALL_API_KEY if api_key is None else api_key
        self._base_url = (base_url or settings.FOOTBALL_API_BASE_URL).rstrip("/")
        self._quota = quota or quota_tracker
        self.call_count = 0
        self._client = ResilientClient(
            PROVIDER_NAME,
            timeout=settings.FOOTBALL_API_TIMEOUT_SECONDS,
            max_retries=settings.FOOTBALL_API_MAX_RETRIES,
            base_delay=settings.FOOTBALL_API_RETRY_BASE_DELAY,
            on_attempt=self._on_attempt,
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def _on_attempt(self) -> None:
        await request_rate_limiter.acquire(PROVIDER_NAME, settings.FOOTBALL_API_RATE_LIMIT_RPM)
        self.call_count += 1
        self._quota.record()

    async def _request(self, endpoint: str, params: dict[str, Any]) -> list[Any]:
        """GET an endpoint and return its ``response`` list."""
        try:
            resp = await self._client.get(
                f"{self._base_url}{endpoint}",
                params=params,
                headers={"x-apisports-key": self._api_key, "Accept": "application/json"},
            )
        except (httpx.TransportError, CircuitOpenError) as exc:
            raise UpstreamTransportError(f"{endpoint}: {exc}") from exc

        if resp.status_code >= 400:
            logger.error("api-football %s returned HTTP %d", endpoint, resp.status_code)
            raise UpstreamEndpointError(f"{endpoint}: HTTP {resp.status_code}")
        try:
            payload = resp.json()
        except ValueError:
            logger.error("api-football %s returned a non-JSON body", endpoint)
            raise UpstreamEndpointError(f"{endpoint}: non-JSON body") from None

        errors = payload.get("errors")
        if errors:
            logger.error("api-football %s errors: %s", endpoint, errors)
            raise UpstreamEndpointError(f"{endpoint}: {errors}")
        return list(payload.get("response") or [])

    # ---- Fixtures ----

    async def fetch_fixtures(self, date: str, league_id: int) -> list[dict[str, Any]]:
        rows = await self._request(
            "/fixtures",
            {"date": date, "league": league_id, "season": season_for(date, league_id)},
        )
        return sorted((normalize_fixture(r) for r in rows), key=_kickoff_sort_key)

    async def fetch_fixtures_in_range(
        self, date_from: str, date_to: str, league_id: int
    ) -> list[dict[str, Any]]:
        rows = await self._request(
            "/fixtures",
            {
                "from": date_from,
                "to": date_to,
                "league": league_id,
                "season": season_for(date_from, league_id),
            },
        )
        return sorted((normalize_fixture(r) for r in rows), key=_kickoff_sort_key)

    async def fetch_team_fixtures(self, team_id: int, season: int) -> list[dict[str, Any]]:
        rows = await self._request("/fixtures", {"team": team_id, "season": season})
        matches = [normalize_fixture(r) for r in rows]
        return sorted(matches, key=_kickoff_sort_key, reverse=True)

    # ---- Match details ----

    async def fetch_statistics(self, match: dict[str, Any]) -> dict[str, list]:
        rows = await self._request("/fixtures/statistics", {"fixture": match["fixture"]["id"]})
        home_id = match["teams"]["home"]["id"]
        away_id = match["teams"]["away"]["id"]
        out: dict[str, list] = {"home": [], "away": []}
        for row in rows:
            team_id = (row.get("team") or {}).get("id")
            stats = [
                {"type": s.get("type"), "value": s.get("value")}
                for s in row.get("statistics") or []
            ]
            if team_id == home_id:
                out["home"] = stats
            elif team_id == away_id:
                out["away"] = stats
        return out

    async def fetch_events(self, match: dict[str, Any]) -> dict[str, list]:
        rows = await self._request("/fixtures/events", {"fixture": match["fixture"]["id"]})
        home_id = match["teams"]["home"]["id"]
        away_id = match["teams"]["away"]["id"]
        out: dict[str, list] = {"home": [], "away": []}
        for row in rows:
            team_id = (row.get("team") or {}).get("id")
            if team_id == home_id:
                out["home"].append(normalize_event(row))
            elif team_id == away_id:
                out["away"].append(normalize_event(row))
        return out

    async def fetch_lineups(
        self, match_id: int, home_team_id: int, away_team_id: int
    ) -> dict[str, Any]:
        rows = await self._request("/fixtures/lineups", {"fixture": match_id})
        out: dict[str, Any] = {"home": None, "away": None}
        for row in rows:
            team_id = (row.get("team") or {}).get("id")
            if team_id == home_team_id:
                out["home"] = normalize_lineup(row)
            elif team_id == away_team_id:
                out["away"] = normalize_lineup(row)
        return out

    # ---- Reference data ----

    async def fetch_standings(self, league_id: int, season: int) -> dict[str, Any]:
        rows = await self._request("/standings", {"league": league_id, "season": season})
        if not rows:
            return {}
        league = dict(rows[0].get("league") or {})
        standings = league.pop("standings", None) or []
        return {"league": league, "standings": standings}

    async def fetch_teams(self, league_id: int, season: int) -> list[dict[str, Any]]:
        rows = await self._request("/teams", {"league": league_id, "season": season})
        teams: list[dict[str, Any]] = []
        for row in rows:
            team = dict(row.get("team") or {})
            if team.get("id") is None:
                continue
            team["venue"] = row.get("venue")
            teams.append(team)
        return teams

    async def fetch_leagues(self, country: str | None = None) -> list[dict[str, Any]]:
        params = {"country": country} if country else {}
        rows = await self._request("/leagues", params)
        leagues: list[dict[str, Any]] = []
        for row in rows:
            league = row.get("league") or {}
            if league.get("id") is None:
                continue
            country_info = row.get("country") or {}
            current = next(
                (s.get("year") for s in row.get("seasons") or [] if s.get("current")),
                None,
            )
            leagues.append({
                "id": league.get("id"),
                "name": league.get("name"),
                "type": league.get("type"),
                "logo": league.get("logo"),
                "country": country_info.get("name"),
                "country_code": country_info.get("code"),
                "flag": country_info.get("flag"),
                "current_season": current,
            })
        return leagues

    async def aclose(self) -> None:
        await self._client.aclose()


def build_default_provider(quota: QuotaTracker | None = None) -> ApiFootballProvider | None:
    """The configured upstream, or None when no API key is set."""
    if not settings.FOOTBALL_API_KEY:
        return None
    return ApiFootballProvider(quota=quota)
