"""
backend/metegol/routers/fixtures.py

Purpose:
    Public read-through endpoints: fixtures by date/league, standings,
    leagues and teams. Every handler delegates to the synchronizer; store and
    upstream failures surface through the app-level exception handlers.

Dependencies:
    - metegol.services.fixture_sync_service
"""

from datetime import timedelta

from fastapi import APIRouter, HTTPException, Query

from metegol import utils
from metegol.config import settings
from metegol.services.fixture_sync_service import get_sync_service

router = APIRouter(prefix="/api", tags=["fixtures"])

# Most recent team matches checked for missing details on a team page.
TEAM_RECENT_ENRICH = 10


def _parse_league_list(raw: str) -> list[int]:
    try:
        ids = [int(part) for part in raw.split(",") if part.strip()]
    except ValueError:
        raise HTTPException(status_code=400, detail="leagues must be comma separated ids.")
    if not ids:
        raise HTTPException(status_code=400, detail="leagues must not be empty.")
    return ids


@router.get("/fixtures")
async def list_fixtures(
    date: str | None = Query(None, description="YYYY-MM-DD, defaults to today (UTC)"),
    date_from: str | None = Query(None, alias="from"),
    date_to: str | None = Query(None, alias="to"),
    league: int | None = Query(None),
    leagues: str | None = Query(None, description="Comma separated league ids"),
):
    """Fixtures for one day or a range; without a league filter the default leagues are used."""
    today = utils.day_str(utils.utcnow())
    day_from = date_from or date or today
    day_to = date_to or date or day_from
    if utils.parse_day(day_to) < utils.parse_day(day_from):
        raise HTTPException(status_code=400, detail="'to' must not be before 'from'.")
    if utils.parse_day(day_to) - utils.parse_day(day_from) > timedelta(days=31):
        raise HTTPException(status_code=400, detail="Date range is limited to 31 days.")

    service = get_sync_service()
    if league is not None:
        matches = await service.get_fixtures(day_from, day_to, league)
    else:
        league_ids = _parse_league_list(leagues) if leagues else settings.sync_default_leagues
        matches = await service.get_fixtures_for_multiple_leagues(day_from, day_to, league_ids)
    return {"matches": matches, "from": day_from, "to": day_to}


@router.get("/standings")
async def standings(
    league: int = Query(..., gt=0),
    season: int | None = Query(None, ge=1900, le=2100),
):
    if season is None:
        season = utils.utcnow().year
    return await get_sync_service().get_standings(league, season)


@router.get("/leagues")
async def leagues(country: str | None = Query(None, max_length=64)):
    return {"leagues": await get_sync_service().get_leagues(country)}


@router.get("/teams")
async def teams(league: int | None = Query(None, gt=0)):
    return {"teams": await get_sync_service().get_teams(league)}


@router.get("/teams/{team_id}")
async def team_detail(team_id: int, season: int | None = Query(None, ge=1900, le=2100)):
    """Team profile plus its matches, newest first; the latest few get missing details filled in."""
    service = get_sync_service()
    season = season or utils.utcnow().year
    team = await service.get_team_by_id(team_id)
    matches = await service.get_team_matches(team_id, season)
    if team is None and not matches:
        raise HTTPException(status_code=404, detail="Team not found.")

    recent = await service.enrich_matches_if_missing(matches[:TEAM_RECENT_ENRICH])
    return {"team": team, "matches": recent + matches[TEAM_RECENT_ENRICH:]}


@router.get("/teams/{team_id}/matches")
async def team_matches(team_id: int, season: int | None = Query(None, ge=1900, le=2100)):
    return {"matches": await get_sync_service().get_team_matches(team_id, season)}
