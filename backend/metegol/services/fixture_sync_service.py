"""
backend/metegol/services/fixture_sync_service.py

Purpose:
    Read-through / write-back synchronizer between the Mongo cache and the
    football-statistics upstream. Decides per (date range, league) whether
    cached matches can be served, refreshes stale leagues, skips queries
    known to be empty, enriches live/finished matches with statistics,
    events and lineups, and merges everything back in one batched write.

    Known over-fetch: a single stale record in a (league, range) query
    refreshes the whole league/range from upstream; the upstream has no
    finer-grained "changed since" filter.

Dependencies:
    - metegol.database
    - metegol.providers.api_football
    - metegol.services.freshness
    - metegol.services.negative_cache
    - metegol.services.match_mapper
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Iterable

from pymongo.errors import PyMongoError

import metegol.database as _db
from metegol import utils
from metegol.config import settings
from metegol.database import batch_merge, is_missing_index_error
from metegol.providers.api_football import UpstreamError, build_default_provider, season_for
from metegol.providers.base import UpstreamProvider
from metegol.services.freshness import (
    DEFAULT_TTL,
    LINEUPS_TTL,
    details_expiry,
    fixture_ttl,
    is_details_stale,
    is_fixture_stale,
    needs_details,
)
from metegol.services.match_mapper import (
    CONTENT_FIELDS,
    clean_statistics,
    lineup_record_id,
    match_from_record,
    match_id,
    match_kickoff,
    match_status,
    non_empty_sides,
    record_fields,
    sort_by_kickoff,
)
from metegol.services.negative_cache import NegativeResultCache, negative_cache

logger = logging.getLogger("metegol.sync")

# Queried when no league filter is given and nothing is cached.
FALLBACK_LEAGUES = (128, 39, 140, 135, 78, 61)
UNINDEXED_SCAN_LIMIT = 1000
TEAMS_PAGE_LIMIT = 100


class MissingCredentialsError(RuntimeError):
    """Nothing cached and no upstream configured."""


class DataAccessError(RuntimeError):
    """A store failure that is not a missing-index condition."""


class StandingsNotFoundError(LookupError):
    """Upstream has no standings for the requested league/season."""


def _league_out(doc: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": doc.get("_id", doc.get("id")),
        "name": doc.get("name"),
        "logo": doc.get("logo"),
        "country": doc.get("country"),
    }


def _team_out(doc: dict[str, Any]) -> dict[str, Any]:
    return {"id": doc.get("_id", doc.get("id")), "name": doc.get("name"), "logo": doc.get("logo")}


def _standing_row(row: dict[str, Any]) -> dict[str, Any]:
    team = row.get("team") or {}
    totals = row.get("all") or {}
    goals = totals.get("goals") or {}
    return {
        "rank": row.get("rank"),
        "team": {"id": team.get("id"), "name": team.get("name"), "logo": team.get("logo")},
        "points": row.get("points"),
        "played": totals.get("played"),
        "win": totals.get("win"),
        "draw": totals.get("draw"),
        "lose": totals.get("lose"),
        "goals": {"for": goals.get("for"), "against": goals.get("against")},
        "goals_diff": row.get("goalsDiff"),
        "group": row.get("group"),
        "form": row.get("form") or "",
        "description": row.get("description"),
    }


def _same_kickoff(a: Any, b: Any) -> bool:
    if isinstance(a, datetime) and isinstance(b, datetime):
        return utils.ensure_utc(a) == utils.ensure_utc(b)
    return a == b


class FixtureSyncService:
    """Cache-first access to fixtures, details and reference data."""

    def __init__(
        self,
        upstream: UpstreamProvider | None = None,
        negative: NegativeResultCache | None = None,
        fallback_leagues: Iterable[int] = FALLBACK_LEAGUES,
    ) -> None:
        self._upstream = upstream
        self._negative = negative or negative_cache
        self._fallback_leagues = tuple(int(x) for x in fallback_leagues)

    @property
    def upstream(self) -> UpstreamProvider | None:
        return self._upstream

    # ------------------------------------------------------------------
    # Fixtures
    # ------------------------------------------------------------------

    async def get_fixtures(
        self,
        date_from: str,
        date_to: str,
        league_id: int | None = None,
    ) -> list[dict[str, Any]]:
        day_from = utils.day_str(utils.parse_day(date_from))
        day_to = utils.day_str(utils.parse_day(date_to))
        start, end = utils.day_bounds(day_from, day_to)
        query: dict[str, Any] = {"kickoff": {"$gte": start, "$lte": end}}
        if league_id is not None:
            league_id = int(league_id)
            query["league_id"] = league_id

        records: list[dict[str, Any]] = []
        try:
            records = await self._find_matches(query)
        except PyMongoError as exc:
            if not is_missing_index_error(exc):
                raise DataAccessError(f"match query failed: {exc}") from exc
            logger.warning("Match query needs an index (%s); falling back to upstream", exc)

        if records:
            return await self._serve_cached(records, day_from, day_to, league_id)
        return await self._fetch_missing(day_from, day_to, league_id)

    async def _serve_cached(
        self,
        records: list[dict[str, Any]],
        day_from: str,
        day_to: str,
        league_id: int | None,
    ) -> list[dict[str, Any]]:
        now = utils.utcnow()
        if league_id is not None and any(is_fixture_stale(r, now) for r in records):
            refreshed = await self._refresh_league(day_from, day_to, league_id, records)
            if refreshed:
                return refreshed

        matches = await self._records_to_matches(records)
        return sort_by_kickoff(await self._enrich_due(records, matches, now))

    async def _fetch_missing(
        self,
        day_from: str,
        day_to: str,
        league_id: int | None,
    ) -> list[dict[str, Any]]:
        days = utils.days_between(day_from, day_to)
        if league_id is not None and await self._all_days_suppressed(league_id, days):
            logger.info("League %s has no matches %s..%s (cached); skipping upstream", league_id, day_from, day_to)
            return []

        if self._upstream is None:
            raise MissingCredentialsError("FOOTBALL_API_KEY not configured")

        fetched: list[dict[str, Any]] = []
        if league_id is not None:
            try:
                fetched = await self._fetch_league_window(day_from, day_to, league_id)
            except UpstreamError as exc:
                logger.error("Upstream fetch for league %s %s..%s failed: %s", league_id, day_from, day_to, exc)
                return []
            await self._record_days(league_id, days, fetched)
        else:
            for fallback_id in self._fallback_leagues:
                try:
                    fetched.extend(await self._upstream.fetch_fixtures(day_from, fallback_id))
                except UpstreamError as exc:
                    logger.error("Upstream fetch for league %s on %s failed: %s", fallback_id, day_from, exc)

        if not fetched:
            return []
        enriched = await self.enrich_matches_with_details(fetched)
        await self.save_matches(enriched)
        return sort_by_kickoff(enriched)

    async def _fetch_league_window(self, day_from: str, day_to: str, league_id: int) -> list[dict[str, Any]]:
        if day_from == day_to:
            return await self._upstream.fetch_fixtures(day_from, league_id)
        return await self._upstream.fetch_fixtures_in_range(day_from, day_to, league_id)

    async def _all_days_suppressed(self, league_id: int, days: list[str]) -> bool:
        for day in days:
            if not await self._negative.should_skip_upstream(league_id, day):
                return False
        return bool(days)

    async def _record_days(self, league_id: int, days: list[str], fetched: list[dict[str, Any]]) -> None:
        seen_days = set()
        for match in fetched:
            kickoff = match_kickoff(match)
            if kickoff is not None:
                seen_days.add(utils.day_str(kickoff))
        for day in days:
            had_matches = day in seen_days if len(days) > 1 else bool(fetched)
            await self._negative.record_result(league_id, day, had_matches)

    async def _refresh_league(
        self,
        day_from: str,
        day_to: str,
        league_id: int,
        cached: list[dict[str, Any]],
    ) -> list[dict[str, Any]] | None:
        """Refetch a whole league/range; None means "serve the cache instead"."""
        if self._upstream is None:
            return None
        try:
            fresh = await self._upstream.fetch_fixtures_in_range(day_from, day_to, league_id)
        except UpstreamError as exc:
            logger.error("Refresh of league %s %s..%s failed: %s", league_id, day_from, day_to, exc)
            return None
        if not fresh:
            return None

        carried = await self._carry_stored_details(fresh, cached)
        enriched = await self.enrich_matches_with_details(carried)
        await self.save_matches(enriched)
        logger.info("Refreshed league %s %s..%s: %d matches", league_id, day_from, day_to, len(enriched))
        return sort_by_kickoff(enriched)

    async def _carry_stored_details(
        self,
        fresh: list[dict[str, Any]],
        cached: list[dict[str, Any]],
    ) -> list[dict[str, Any]]:
        """Copy stored details onto refetched matches so only gaps are fetched.

        Statistics and events are carried while the record's details are
        still valid; stored lineups are carried whenever both sides exist.
        """
        now = utils.utcnow()
        by_id = {r.get("_id"): r for r in cached}
        lineups = await self._load_lineups([mid for mid in (match_id(m) for m in fresh) if mid in by_id])

        carried: list[dict[str, Any]] = []
        for match in fresh:
            mid = match_id(match)
            record = by_id.get(mid)
            if record is None:
                carried.append(match)
                continue
            match = dict(match)
            if not is_details_stale(record, now):
                if non_empty_sides(record.get("statistics")):
                    match.setdefault("statistics", record["statistics"])
                if non_empty_sides(record.get("events")):
                    match.setdefault("events", record["events"])
            stored_lineups = lineups.get(mid) or {}
            if stored_lineups.get("home") and stored_lineups.get("away") and not match.get("lineups"):
                match["lineups"] = stored_lineups
            carried.append(match)
        return carried

    async def _enrich_due(
        self,
        records: list[dict[str, Any]],
        matches: list[dict[str, Any]],
        now: datetime,
    ) -> list[dict[str, Any]]:
        """Enrich matches whose details are stale-retry; others pass through."""
        if self._upstream is None:
            return matches
        due_ids = {r.get("_id") for r in records if is_details_stale(r, now)}
        due = [m for m in matches if match_id(m) in due_ids]
        if not due:
            return matches
        enriched = await self.enrich_matches_with_details(due, refresh=True)
        await self.save_matches(enriched)
        by_id = {match_id(m): m for m in enriched}
        return [by_id.get(match_id(m), m) for m in matches]

    async def get_fixtures_for_multiple_leagues(
        self,
        date_from: str,
        date_to: str,
        league_ids: Iterable[int],
    ) -> list[dict[str, Any]]:
        requested = list(dict.fromkeys(int(x) for x in league_ids))
        try:
            return await self._multi_league(date_from, date_to, requested)
        except PyMongoError as exc:
            if not is_missing_index_error(exc):
                raise DataAccessError(f"multi-league query failed: {exc}") from exc
            logger.warning("Multi-league query needs an index (%s); querying leagues one by one", exc)
            out: list[dict[str, Any]] = []
            for league_id in requested:
                out.extend(await self.get_fixtures(date_from, date_to, league_id))
            return out

    async def _multi_league(
        self,
        date_from: str,
        date_to: str,
        requested: list[int],
    ) -> list[dict[str, Any]]:
        day_from = utils.day_str(utils.parse_day(date_from))
        day_to = utils.day_str(utils.parse_day(date_to))
        start, end = utils.day_bounds(day_from, day_to)
        wanted = set(requested)

        try:
            records = await self._find_matches(
                {"kickoff": {"$gte": start, "$lte": end}, "league_id": {"$in": requested}}
            )
        except PyMongoError as exc:
            if not is_missing_index_error(exc):
                raise
            logger.warning("Range query needs an index (%s); scanning up to %d matches", exc, UNINDEXED_SCAN_LIMIT)
            records = await self._scan_matches(start, end)
        records = [r for r in records if r.get("league_id") in wanted]

        now = utils.utcnow()
        stale_leagues = {r.get("league_id") for r in records if is_fixture_stale(r, now)}
        if self._upstream is None:
            stale_leagues = set()

        fresh_records = [r for r in records if r.get("league_id") not in stale_leagues]
        fresh_matches = await self._records_to_matches(fresh_records)
        fresh_matches = await self._enrich_due(fresh_records, fresh_matches, now)

        by_league: dict[int, list[dict[str, Any]]] = {}
        for match in fresh_matches:
            by_league.setdefault(int(match["league"]["id"]), []).append(match)

        stale_cache: dict[int, list[dict[str, Any]]] = {}
        if stale_leagues:
            for match in await self._records_to_matches([r for r in records if r.get("league_id") in stale_leagues]):
                stale_cache.setdefault(int(match["league"]["id"]), []).append(match)

        missing = [lid for lid in requested if lid not in by_league]
        if missing and self._upstream is not None:
            days = utils.days_between(day_from, day_to)
            fetched: list[dict[str, Any]] = []
            for league_id in missing:
                stale = league_id in stale_leagues
                if not stale and await self._all_days_suppressed(league_id, days):
                    continue
                try:
                    league_matches = await self._fetch_league_window(day_from, day_to, league_id)
                except UpstreamError as exc:
                    logger.error("Upstream fetch for league %s failed: %s", league_id, exc)
                    continue
                if stale:
                    # Matches are cached for this league; never record it as empty.
                    league_records = [r for r in records if r.get("league_id") == league_id]
                    league_matches = await self._carry_stored_details(league_matches, league_records)
                else:
                    await self._record_days(league_id, days, league_matches)
                fetched.extend(league_matches)

            if fetched:
                enriched = await self.enrich_matches_with_details(fetched)
                await self.save_matches(enriched)
                for match in enriched:
                    lid = int(match["league"]["id"])
                    if lid in wanted:
                        by_league.setdefault(lid, []).append(match)

        out: list[dict[str, Any]] = []
        for league_id in requested:
            rows = by_league.get(league_id) or stale_cache.get(league_id) or []
            out.extend(sort_by_kickoff(rows))
        return out

    # ------------------------------------------------------------------
    # Enrichment
    # ------------------------------------------------------------------

    async def enrich_matches_with_details(
        self,
        matches: list[dict[str, Any]],
        refresh: bool = False,
    ) -> list[dict[str, Any]]:
        """Attach missing statistics/events/lineups to live or finished matches.

        ``refresh`` refetches statistics/events even when present (live
        updates); what was there stays when the refetch comes back empty.
        Output order matches input order.
        """
        out = list(matches)
        if self._upstream is None:
            return out

        targets = [
            (idx, match)
            for idx, match in enumerate(matches)
            if needs_details(match_status(match)) and self._wanted_facets(match, refresh)
        ]
        if not targets:
            return out

        new_lineups: list[dict[str, Any]] = []
        batch_size = max(1, int(settings.ENRICH_BATCH_SIZE))
        for offset in range(0, len(targets), batch_size):
            batch = targets[offset:offset + batch_size]
            results = await asyncio.gather(*(self._enrich_one(m, refresh) for _, m in batch))
            for (idx, original), enriched in zip(batch, results):
                out[idx] = enriched
                if enriched.get("lineups") and not original.get("lineups"):
                    new_lineups.append(enriched)
            if offset + batch_size < len(targets):
                await asyncio.sleep(settings.ENRICH_BATCH_PAUSE_SECONDS)

        if new_lineups:
            try:
                await self.save_lineups(new_lineups)
            except PyMongoError as exc:
                logger.error("Saving lineups for %d matches failed: %s", len(new_lineups), exc)
        return out

    @staticmethod
    def _wanted_facets(match: dict[str, Any], refresh: bool) -> list[str]:
        wanted: list[str] = []
        if refresh or not non_empty_sides(match.get("statistics")):
            wanted.append("statistics")
        if refresh or not non_empty_sides(match.get("events")):
            wanted.append("events")
        lineups = match.get("lineups") or {}
        if not (lineups.get("home") and lineups.get("away")):
            wanted.append("lineups")
        return wanted

    async def _enrich_one(self, match: dict[str, Any], refresh: bool) -> dict[str, Any]:
        facets = self._wanted_facets(match, refresh)
        calls = []
        for facet in facets:
            if facet == "statistics":
                calls.append(self._upstream.fetch_statistics(match))
            elif facet == "events":
                calls.append(self._upstream.fetch_events(match))
            else:
                calls.append(self._upstream.fetch_lineups(
                    match_id(match),
                    match["teams"]["home"]["id"],
                    match["teams"]["away"]["id"],
                ))
        results = await asyncio.gather(*calls, return_exceptions=True)

        enriched = dict(match)
        for facet, result in zip(facets, results):
            if isinstance(result, Exception):
                logger.warning("Fetching %s for match %s failed: %s", facet, match_id(match), result)
                continue
            if facet == "statistics" and non_empty_sides(result):
                enriched["statistics"] = clean_statistics(result)
            elif facet == "events" and non_empty_sides(result):
                enriched["events"] = {"home": result.get("home") or [], "away": result.get("away") or []}
            elif facet == "lineups" and isinstance(result, dict) and result.get("home") and result.get("away"):
                enriched["lineups"] = result
        return enriched

    async def enrich_matches_if_missing(self, matches: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Prefer stored records that already carry statistics and events."""
        if not matches:
            return []
        ids = [match_id(m) for m in matches]
        stored = {r["_id"]: r for r in await self._find_matches({"_id": {"$in": ids}})}
        lineups = await self._load_lineups(list(stored))

        out: list[dict[str, Any] | None] = []
        pending: list[tuple[int, dict[str, Any]]] = []
        for match in matches:
            record = stored.get(match_id(match))
            if record and non_empty_sides(record.get("statistics")) and non_empty_sides(record.get("events")):
                out.append(match_from_record(record, lineups.get(record["_id"])))
            else:
                pending.append((len(out), match))
                out.append(None)

        if pending:
            enriched = await self.enrich_matches_with_details([m for _, m in pending])
            await self.save_matches(enriched)
            for (idx, _), match in zip(pending, enriched):
                out[idx] = match
        return [m for m in out if m is not None]

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def save_matches(self, matches: list[dict[str, Any]]) -> int:
        """Merge matches into stored records in one batched write.

        Existing records are read first: created_at, statistics and events
        survive writes that do not carry non-empty replacements. Records
        whose content and fixture window are unchanged are not rewritten.
        """
        unique: dict[int, dict[str, Any]] = {}
        for match in matches:
            unique[match_id(match)] = match
        if not unique:
            return 0

        existing = {r["_id"]: r for r in await self._find_matches({"_id": {"$in": list(unique)}})}
        now = utils.utcnow()
        rows = []
        for mid, match in unique.items():
            row = self._merge_row(mid, match, existing.get(mid), now)
            if row is not None:
                rows.append(row)
        if not rows:
            return 0
        await batch_merge(_db.db.matches, rows)
        logger.debug("Saved %d/%d matches", len(rows), len(unique))
        return len(rows)

    def _merge_row(
        self,
        mid: int,
        match: dict[str, Any],
        existing: dict[str, Any] | None,
        now: datetime,
    ) -> tuple[int, dict, dict] | None:
        fields = record_fields(match)
        statistics = None
        if non_empty_sides(match.get("statistics")):
            statistics = clean_statistics(match["statistics"])
            if not non_empty_sides(statistics):
                statistics = None
        events = match.get("events") if non_empty_sides(match.get("events")) else None

        if existing is not None and self._unchanged(existing, fields, statistics, events, now):
            return None

        status = match_status(match)
        kickoff = fields["kickoff"]
        payload = dict(fields)
        if statistics is not None:
            payload["statistics"] = statistics
        if events is not None:
            payload["events"] = events
        payload["fixture_expires_at"] = now + (fixture_ttl(kickoff, status, now) if kickoff else DEFAULT_TTL)
        expires_at, state = details_expiry(
            status=status,
            kickoff=kickoff,
            incoming_details=statistics is not None or events is not None,
            existing=existing,
            now=now,
        )
        if expires_at is not None:
            payload["details_expires_at"] = expires_at
            payload["details_state"] = state
        payload["updated_at"] = now
        return mid, payload, {"created_at": now}

    @staticmethod
    def _unchanged(
        existing: dict[str, Any],
        fields: dict[str, Any],
        statistics: dict | None,
        events: dict | None,
        now: datetime,
    ) -> bool:
        expires_at = utils.as_utc(existing.get("fixture_expires_at"))
        if expires_at is None or expires_at <= now:
            return False
        for key in CONTENT_FIELDS:
            if key == "kickoff":
                if not _same_kickoff(existing.get(key), fields.get(key)):
                    return False
            elif existing.get(key) != fields.get(key):
                return False
        if statistics is not None and statistics != existing.get("statistics"):
            return False
        if events is not None and events != existing.get("events"):
            return False
        return True

    async def save_lineups(self, matches: list[dict[str, Any]]) -> int:
        now = utils.utcnow()
        rows = []
        for match in matches:
            lineups = match.get("lineups") or {}
            kickoff = match_kickoff(match)
            day = utils.day_str(kickoff) if kickoff else utils.day_str(now)
            for side in ("home", "away"):
                lineup = lineups.get(side)
                if not lineup:
                    continue
                team_id = (lineup.get("team") or {}).get("id") or match["teams"][side]["id"]
                rows.append((
                    lineup_record_id(team_id, match_id(match), day),
                    {
                        "match_id": match_id(match),
                        "team_id": team_id,
                        "league_id": (match.get("league") or {}).get("id"),
                        "side": side,
                        "date": day,
                        "team": lineup.get("team"),
                        "formation": lineup.get("formation"),
                        "coach": lineup.get("coach"),
                        "start_xi": lineup.get("start_xi") or [],
                        "substitutes": lineup.get("substitutes") or [],
                        "colors": lineup.get("colors"),
                        "expires_at": now + LINEUPS_TTL,
                        "updated_at": now,
                    },
                    {"created_at": now},
                ))
        if not rows:
            return 0
        return await batch_merge(_db.db.lineups, rows)

    async def save_standings(self, league_id: int, season: int, league: dict, rows: list[dict]) -> None:
        now = utils.utcnow()
        await _db.db.standings.update_one(
            {"_id": f"standings_{league_id}_{season}"},
            {
                "$set": {
                    "league_id": league_id,
                    "season": season,
                    "league": league,
                    "standings": rows,
                    "updated_at": now,
                },
                "$setOnInsert": {"created_at": now},
            },
            upsert=True,
        )

    async def save_teams(self, teams: list[dict[str, Any]], league_id: int | None) -> int:
        now = utils.utcnow()
        rows = [
            (
                int(team["id"]),
                {
                    "name": team.get("name"),
                    "logo": team.get("logo"),
                    "code": team.get("code"),
                    "country": team.get("country"),
                    "founded": team.get("founded"),
                    "venue": team.get("venue"),
                    "league_id": league_id,
                    "updated_at": now,
                },
                {"created_at": now},
            )
            for team in teams
            if team.get("id") is not None
        ]
        return await batch_merge(_db.db.teams, rows)

    async def save_leagues(self, leagues: list[dict[str, Any]]) -> int:
        now = utils.utcnow()
        rows = [
            (
                int(league["id"]),
                {
                    "name": league.get("name"),
                    "type": league.get("type"),
                    "logo": league.get("logo"),
                    "country": league.get("country"),
                    "country_code": league.get("country_code"),
                    "flag": league.get("flag"),
                    "current_season": league.get("current_season"),
                    "updated_at": now,
                },
                {"created_at": now},
            )
            for league in leagues
            if league.get("id") is not None
        ]
        return await batch_merge(_db.db.leagues, rows)

    # ------------------------------------------------------------------
    # Reference data
    # ------------------------------------------------------------------

    async def get_standings(self, league_id: int, season: int) -> dict[str, Any]:
        league_id, season = int(league_id), int(season)
        doc = await _db.db.standings.find_one({"_id": f"standings_{league_id}_{season}"})
        if doc:
            return {"standings": doc.get("standings") or [], "league": doc.get("league") or {"id": league_id, "season": season}}

        if self._upstream is None:
            raise MissingCredentialsError("FOOTBALL_API_KEY not configured")
        payload = await self._upstream.fetch_standings(league_id, season)
        groups = payload.get("standings") or []
        if not groups or not groups[0]:
            raise StandingsNotFoundError(f"No standings for league {league_id} season {season}")

        raw_league = payload.get("league") or {}
        league = {
            "id": raw_league.get("id") or league_id,
            "name": raw_league.get("name"),
            "logo": raw_league.get("logo"),
            "country": raw_league.get("country"),
            "season": raw_league.get("season") or season,
        }
        rows = [_standing_row(r) for r in groups[0]]
        await self.save_standings(league_id, season, league, rows)
        return {"standings": rows, "league": league}

    async def get_teams(self, league_id: int | None = None) -> list[dict[str, Any]]:
        query = {"league_id": int(league_id)} if league_id is not None else {}
        try:
            docs = await _db.db.teams.find(query).limit(TEAMS_PAGE_LIMIT).to_list(length=TEAMS_PAGE_LIMIT)
        except PyMongoError as exc:
            logger.error("Team lookup failed: %s", exc)
            return []
        if docs:
            return [_team_out(d) for d in docs]
        if self._upstream is None or league_id is None:
            return []

        season = season_for(utils.day_str(utils.utcnow()), league_id)
        try:
            teams = await self._upstream.fetch_teams(int(league_id), season)
        except UpstreamError as exc:
            logger.error("Fetching teams for league %s failed: %s", league_id, exc)
            return []
        if not teams:
            return []
        await self.save_teams(teams, int(league_id))
        return [_team_out(t) for t in teams]

    async def get_team_by_id(self, team_id: int) -> dict[str, Any] | None:
        doc = await _db.db.teams.find_one({"_id": int(team_id)})
        return _team_out(doc) if doc else None

    async def get_team_matches(self, team_id: int, season: int | None = None) -> list[dict[str, Any]]:
        team_id = int(team_id)
        try:
            home = await self._find_matches({"home_team.id": team_id})
            away = await self._find_matches({"away_team.id": team_id})
        except PyMongoError as exc:
            logger.error("Team match lookup for %s failed: %s", team_id, exc)
            return []

        unique: dict[int, dict[str, Any]] = {}
        for record in home + away:
            unique.setdefault(record["_id"], record)
        records = list(unique.values())
        if season is not None:
            records = [
                r for r in records
                if r.get("kickoff") is not None and utils.ensure_utc(r["kickoff"]).year == int(season)
            ]

        if records:
            matches = await self._records_to_matches(records)
        elif season is not None and self._upstream is not None:
            try:
                matches = await self._upstream.fetch_team_fixtures(team_id, int(season))
            except UpstreamError as exc:
                logger.error("Fetching fixtures for team %s failed: %s", team_id, exc)
                return []
            if matches:
                await self.save_matches(matches)
        else:
            matches = []
        return list(reversed(sort_by_kickoff(matches)))

    async def get_leagues(self, country: str | None = None) -> list[dict[str, Any]]:
        query = {"country": country} if country else {}
        try:
            docs = await _db.db.leagues.find(query).to_list(length=None)
        except PyMongoError as exc:
            logger.error("League lookup failed: %s", exc)
            return []
        if docs:
            return [_league_out(d) for d in docs]
        if self._upstream is None:
            return []

        try:
            leagues = await self._upstream.fetch_leagues(country)
        except UpstreamError as exc:
            logger.error("Fetching leagues (%s) failed: %s", country or "all", exc)
            return []
        if not leagues:
            return []
        await self.save_leagues(leagues)
        return [_league_out(league) for league in leagues]

    # ------------------------------------------------------------------
    # Store helpers
    # ------------------------------------------------------------------

    async def _find_matches(self, query: dict[str, Any]) -> list[dict[str, Any]]:
        return await _db.db.matches.find(query).to_list(length=None)

    async def _scan_matches(self, start: datetime, end: datetime) -> list[dict[str, Any]]:
        docs = await _db.db.matches.find({}).limit(UNINDEXED_SCAN_LIMIT).to_list(length=UNINDEXED_SCAN_LIMIT)
        out = []
        for doc in docs:
            kickoff = utils.as_utc(doc.get("kickoff"))
            if kickoff is not None and start <= kickoff <= end:
                out.append(doc)
        return out

    async def _load_lineups(self, match_ids: list[int]) -> dict[int, dict[str, Any]]:
        if not match_ids:
            return {}
        try:
            docs = await _db.db.lineups.find({"match_id": {"$in": match_ids}}).to_list(length=None)
        except PyMongoError as exc:
            logger.warning("Lineup lookup failed: %s", exc)
            return {}
        out: dict[int, dict[str, Any]] = {}
        for doc in docs:
            side = doc.get("side")
            if side not in ("home", "away"):
                continue
            out.setdefault(doc["match_id"], {})[side] = {
                "team": doc.get("team"),
                "colors": doc.get("colors"),
                "formation": doc.get("formation"),
                "coach": doc.get("coach"),
                "start_xi": doc.get("start_xi") or [],
                "substitutes": doc.get("substitutes") or [],
            }
        return out

    async def _records_to_matches(self, records: list[dict[str, Any]]) -> list[dict[str, Any]]:
        lineups = await self._load_lineups([r["_id"] for r in records])
        return [match_from_record(r, lineups.get(r["_id"])) for r in records]


_service: FixtureSyncService | None = None


def get_sync_service() -> FixtureSyncService:
    """Process-wide synchronizer wired to the configured upstream."""
    global _service
    if _service is None:
        _service = FixtureSyncService(upstream=build_default_provider())
    return _service


def set_sync_service(service: FixtureSyncService | None) -> None:
    global _service
    _service = service
