"""
backend/tests/test_fixture_sync_service.py

Purpose:
    Read-through/write-back behaviour of FixtureSyncService against an
    in-memory store and a scripted upstream:
    - cache miss fetches, stores and returns; repeat calls are served locally
    - empty upstream results are remembered and suppress later calls
    - idempotent, non-destructive batched writes
    - multi-league partitioning and missing-index fallbacks
    - per-facet enrichment failures do not sink the match
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import httpx
import pytest
from pymongo.errors import OperationFailure

from fakes import FakeUpstream, events_for, lineups_for, make_match, stats_for
from metegol.config import settings
from metegol.providers import http_client
from metegol.providers.api_football import ApiFootballProvider, UpstreamEndpointError, UpstreamTransportError
from metegol.services.fixture_sync_service import (
    DataAccessError,
    FixtureSyncService,
    MissingCredentialsError,
    StandingsNotFoundError,
)
from metegol.services.negative_cache import negative_cache
from metegol.services.quota_tracker import quota_tracker

TOMORROW_3PM = datetime(2025, 3, 16, 15, 0, tzinfo=timezone.utc)
TODAY_11AM = datetime(2025, 3, 15, 11, 0, tzinfo=timezone.utc)


@pytest.fixture
def upstream():
    return FakeUpstream(quota=quota_tracker)


@pytest.fixture
def service(fake_db, clock, upstream, monkeypatch):
    monkeypatch.setattr(settings, "ENRICH_BATCH_PAUSE_SECONDS", 0.0, raising=False)
    return FixtureSyncService(upstream=upstream)


def _index_error() -> OperationFailure:
    return OperationFailure("error processing query: planner returned error: no index", code=291)


# ---------------------------------------------------------------------------
# get_fixtures scenarios
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_cache_miss_fetches_stores_and_returns(service, upstream, fake_db):
    upstream.fixtures[(39, "2025-03-16")] = [
        make_match(1, 39, TOMORROW_3PM),
        make_match(2, 39, TOMORROW_3PM + timedelta(hours=2)),
    ]

    matches = await service.get_fixtures("2025-03-16", "2025-03-16", 39)

    assert [m["fixture"]["id"] for m in matches] == [1, 2]
    assert set(fake_db.matches.docs) == {1, 2}
    stored = fake_db.matches.docs[1]
    assert stored["league_id"] == 39
    assert stored["kickoff"] == TOMORROW_3PM
    assert stored["fixture_expires_at"] > stored["updated_at"]
    assert len(upstream.calls_of("fixtures")) == 1


@pytest.mark.asyncio
async def test_repeat_call_is_served_from_cache(service, upstream):
    upstream.fixtures[(39, "2025-03-16")] = [
        make_match(1, 39, TOMORROW_3PM),
        make_match(2, 39, TOMORROW_3PM + timedelta(hours=2)),
    ]
    await service.get_fixtures("2025-03-16", "2025-03-16", 39)
    calls_after_first = upstream.call_count

    again = await service.get_fixtures("2025-03-16", "2025-03-16", 39)

    assert [m["fixture"]["id"] for m in again] == [1, 2]
    assert upstream.call_count == calls_after_first


@pytest.mark.asyncio
async def test_empty_upstream_is_remembered(service, upstream, fake_db):
    first = await service.get_fixtures("2025-03-16", "2025-03-16", 140)
    second = await service.get_fixtures("2025-03-16", "2025-03-16", 140)

    assert first == [] and second == []
    assert len(upstream.calls_of("fixtures")) == 1
    record = fake_db.empty_queries.docs["empty_fixtures_140_2025-03-16"]
    assert record["has_matches"] is False


@pytest.mark.asyncio
async def test_range_records_each_empty_day(service, upstream, fake_db):
    upstream.fixtures[(39, "2025-03-17")] = [make_match(5, 39, TOMORROW_3PM + timedelta(days=1))]

    matches = await service.get_fixtures("2025-03-16", "2025-03-18", 39)

    assert [m["fixture"]["id"] for m in matches] == [5]
    assert len(upstream.calls_of("fixtures_range")) == 1
    docs = fake_db.empty_queries.docs
    assert docs["empty_fixtures_39_2025-03-16"]["has_matches"] is False
    assert docs["empty_fixtures_39_2025-03-17"]["has_matches"] is True
    assert docs["empty_fixtures_39_2025-03-18"]["has_matches"] is False


@pytest.mark.asyncio
async def test_no_upstream_and_nothing_cached_raises(fake_db, clock):
    service = FixtureSyncService(upstream=None)
    with pytest.raises(MissingCredentialsError):
        await service.get_fixtures("2025-03-16", "2025-03-16", 39)


@pytest.mark.asyncio
async def test_no_upstream_serves_cache(fake_db, clock, upstream):
    await FixtureSyncService(upstream=upstream).save_matches([make_match(1, 39, TOMORROW_3PM)])

    offline = FixtureSyncService(upstream=None)
    matches = await offline.get_fixtures("2025-03-16", "2025-03-16", 39)
    assert [m["fixture"]["id"] for m in matches] == [1]


@pytest.mark.asyncio
async def test_upstream_transport_failure_returns_empty_without_negative_record(service, upstream, fake_db):
    upstream.failures["fixtures"] = UpstreamTransportError("connection refused")

    assert await service.get_fixtures("2025-03-16", "2025-03-16", 39) == []
    assert fake_db.empty_queries.docs == {}


@pytest.mark.asyncio
@pytest.mark.parametrize("status,body", [
    (429, None),
    (200, {"errors": {"rateLimit": "Too many requests."}, "response": []}),
    (200, {"errors": {"requests": "You have reached the request limit for the day"}, "response": []}),
])
async def test_failed_upstream_answer_is_not_remembered_as_empty(fake_db, clock, monkeypatch, status, body):
    async def _no_backoff(seconds):
        return None

    monkeypatch.setattr(http_client.asyncio, "sleep", _no_backoff)
    provider = ApiFootballProvider(
        api_key="test-key",
        base_url="https://football.test",
        quota=quota_tracker,
        transport=httpx.MockTransport(lambda request: httpx.Response(status, json=body)),
    )
    service = FixtureSyncService(upstream=provider)

    assert await service.get_fixtures("2024-12-01", "2024-12-01", 39) == []

    assert fake_db.empty_queries.docs == {}
    clock.advance(timedelta(days=200))
    negative_cache.clear_memory()
    assert await negative_cache.should_skip_upstream(39, "2024-12-01") is False
    await provider.aclose()


@pytest.mark.asyncio
async def test_endpoint_error_in_multi_league_records_nothing(service, upstream, fake_db):
    upstream.failures["fixtures"] = UpstreamEndpointError("/fixtures: HTTP 500")

    assert await service.get_fixtures_for_multiple_leagues("2025-03-16", "2025-03-16", [39, 140]) == []
    assert len(upstream.calls_of("fixtures")) == 2
    assert fake_db.empty_queries.docs == {}


@pytest.mark.asyncio
async def test_store_failure_is_data_access_error(service, fake_db):
    fake_db.matches.find_errors.append(OperationFailure("not authorized on metegol", code=13))
    with pytest.raises(DataAccessError):
        await service.get_fixtures("2025-03-16", "2025-03-16", 39)


@pytest.mark.asyncio
async def test_missing_index_falls_back_to_upstream(service, upstream, fake_db):
    upstream.fixtures[(39, "2025-03-16")] = [make_match(1, 39, TOMORROW_3PM)]
    fake_db.matches.find_errors.append(_index_error())

    matches = await service.get_fixtures("2025-03-16", "2025-03-16", 39)

    assert [m["fixture"]["id"] for m in matches] == [1]
    assert len(upstream.calls_of("fixtures")) == 1


@pytest.mark.asyncio
async def test_stale_league_is_refreshed_and_keeps_valid_details(service, upstream, fake_db, clock):
    live = make_match(7, 39, TODAY_11AM, status="2H")
    live["events"] = events_for(live)
    await service.save_matches([live])
    clock.advance(timedelta(minutes=3))
    fake_db.matches.docs[7]["fixture_expires_at"] = clock.now - timedelta(seconds=1)
    fake_db.matches.docs[7]["details_expires_at"] = clock.now + timedelta(minutes=1)

    finished = make_match(7, 39, TODAY_11AM, status="FT")
    finished["goals"] = {"home": 2, "away": 1}
    upstream.fixtures[(39, "2025-03-15")] = [finished]

    matches = await service.get_fixtures("2025-03-15", "2025-03-15", 39)

    assert len(upstream.calls_of("fixtures_range")) == 1
    assert matches[0]["fixture"]["status"]["short"] == "FT"
    assert matches[0]["events"] == live["events"]
    stored = fake_db.matches.docs[7]
    assert stored["goals"] == {"home": 2, "away": 1}
    assert stored["events"] == live["events"]
    assert upstream.calls_of("events") == []


async def _stale_live_match_with_details(service, fake_db, clock):
    live = make_match(7, 39, TODAY_11AM, status="2H")
    live["statistics"] = stats_for(live)
    live["events"] = events_for(live)
    live["lineups"] = lineups_for(live)
    await service.save_matches([live])
    await service.save_lineups([live])
    clock.advance(timedelta(minutes=3))
    fake_db.matches.docs[7]["fixture_expires_at"] = clock.now - timedelta(seconds=1)
    fake_db.matches.docs[7]["details_expires_at"] = clock.now + timedelta(minutes=1)
    return live


@pytest.mark.asyncio
async def test_league_refresh_reuses_stored_lineups(service, upstream, fake_db, clock):
    live = await _stale_live_match_with_details(service, fake_db, clock)
    upstream.fixtures[(39, "2025-03-15")] = [make_match(7, 39, TODAY_11AM, status="2H")]

    matches = await service.get_fixtures("2025-03-15", "2025-03-15", 39)

    assert len(upstream.calls_of("fixtures_range")) == 1
    assert [c[0] for c in upstream.calls if c[0] in ("statistics", "events", "lineups")] == []
    assert matches[0]["lineups"]["home"]["formation"] == "4-4-2"
    assert matches[0]["statistics"] == live["statistics"]


@pytest.mark.asyncio
async def test_multi_league_refresh_reuses_stored_details(service, upstream, fake_db, clock):
    live = await _stale_live_match_with_details(service, fake_db, clock)
    upstream.fixtures[(39, "2025-03-15")] = [make_match(7, 39, TODAY_11AM, status="2H")]

    matches = await service.get_fixtures_for_multiple_leagues("2025-03-15", "2025-03-15", [39])

    assert upstream.calls_of("fixtures") == [("fixtures", "2025-03-15", 39)]
    assert [c[0] for c in upstream.calls if c[0] in ("statistics", "events", "lineups")] == []
    assert matches[0]["events"] == live["events"]
    assert matches[0]["lineups"]["away"]["formation"] == "4-4-2"
    assert fake_db.empty_queries.docs == {}


@pytest.mark.asyncio
async def test_empty_refetch_of_stale_league_serves_cache_without_negative_record(service, upstream, fake_db, clock):
    await _stale_live_match_with_details(service, fake_db, clock)

    matches = await service.get_fixtures_for_multiple_leagues("2025-03-15", "2025-03-15", [39])

    assert [m["fixture"]["id"] for m in matches] == [7]
    assert fake_db.empty_queries.docs == {}
    assert await negative_cache.should_skip_upstream(39, "2025-03-15") is False


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_save_is_idempotent(service, fake_db):
    match = make_match(1, 39, TOMORROW_3PM)
    assert await service.save_matches([match]) == 1
    snapshot = dict(fake_db.matches.docs[1])

    assert await service.save_matches([match]) == 0
    assert len(fake_db.matches.bulk_calls) == 1
    assert fake_db.matches.docs[1] == snapshot


@pytest.mark.asyncio
async def test_save_deduplicates_within_a_batch(service, fake_db):
    match = make_match(1, 39, TOMORROW_3PM)
    updated = make_match(1, 39, TOMORROW_3PM, status="PST")

    assert await service.save_matches([match, updated]) == 1
    assert fake_db.matches.docs[1]["status"]["short"] == "PST"


@pytest.mark.asyncio
async def test_merge_keeps_details_and_created_at(service, fake_db, clock):
    match = make_match(1, 39, TODAY_11AM, status="FT")
    match["statistics"] = stats_for(match)
    match["events"] = events_for(match)
    await service.save_matches([match])
    created_at = fake_db.matches.docs[1]["created_at"]

    clock.advance(timedelta(days=2))
    bare = make_match(1, 39, TODAY_11AM, status="FT")
    bare["goals"] = {"home": 3, "away": 0}
    assert await service.save_matches([bare]) == 1

    stored = fake_db.matches.docs[1]
    assert stored["goals"] == {"home": 3, "away": 0}
    assert stored["statistics"] == match["statistics"]
    assert stored["events"] == match["events"]
    assert stored["created_at"] == created_at
    assert stored["updated_at"] == clock.now


@pytest.mark.asyncio
async def test_empty_statistics_never_replace_stored_ones(service, fake_db, clock):
    match = make_match(1, 39, TODAY_11AM, status="FT")
    match["statistics"] = stats_for(match)
    await service.save_matches([match])

    clock.advance(timedelta(days=2))
    empty = make_match(1, 39, TODAY_11AM, status="FT")
    empty["statistics"] = {"home": [{"type": "Shots", "value": None}], "away": []}
    await service.save_matches([empty])

    assert fake_db.matches.docs[1]["statistics"] == match["statistics"]


# ---------------------------------------------------------------------------
# Enrichment
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_failed_facet_does_not_sink_the_match(service, upstream, fake_db):
    match = make_match(3, 39, TODAY_11AM, status="FT")
    upstream.fixtures[(39, "2025-03-15")] = [match]
    upstream.failures["statistics"] = UpstreamTransportError("timeout")
    upstream.events[3] = events_for(match)
    upstream.lineups[3] = lineups_for(match)

    matches = await service.get_fixtures("2025-03-15", "2025-03-15", 39)

    assert "statistics" not in matches[0]
    assert matches[0]["events"] == events_for(match)
    assert matches[0]["lineups"]["home"]["formation"] == "4-4-2"
    stored = fake_db.matches.docs[3]
    assert stored["events"] == events_for(match)
    assert "statistics" not in stored
    assert set(fake_db.lineups.docs) == {"form_31_3_2025-03-15", "form_32_3_2025-03-15"}


@pytest.mark.asyncio
async def test_scheduled_matches_are_not_enriched(service, upstream):
    matches = [make_match(i, 39, TOMORROW_3PM) for i in range(1, 4)]
    out = await service.enrich_matches_with_details(matches)
    assert out == matches
    assert upstream.calls == []


@pytest.mark.asyncio
async def test_enrichment_preserves_input_order(service, upstream):
    matches = [make_match(i, 39, TODAY_11AM, status="FT" if i % 2 else "NS") for i in range(1, 13)]
    for match in matches:
        upstream.statistics[match["fixture"]["id"]] = stats_for(match)

    out = await service.enrich_matches_with_details(matches)

    assert [m["fixture"]["id"] for m in out] == list(range(1, 13))
    assert all(("statistics" in m) == bool(m["fixture"]["id"] % 2) for m in out)


@pytest.mark.asyncio
async def test_enrich_if_missing_prefers_stored_details(service, upstream):
    match = make_match(4, 39, TODAY_11AM, status="FT")
    match["statistics"] = stats_for(match)
    match["events"] = events_for(match)
    await service.save_matches([match])

    out = await service.enrich_matches_if_missing([make_match(4, 39, TODAY_11AM, status="FT")])

    assert out[0]["statistics"] == match["statistics"]
    assert upstream.calls == []


# ---------------------------------------------------------------------------
# Multiple leagues
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_multi_league_partitions_cached_missing_and_known_empty(service, upstream, fake_db):
    await service.save_matches([make_match(1, 39, TOMORROW_3PM)])
    upstream.fixtures[(140, "2025-03-16")] = [make_match(2, 140, TOMORROW_3PM)]
    await negative_cache.record_result(78, "2025-03-16", had_matches=False)

    matches = await service.get_fixtures_for_multiple_leagues("2025-03-16", "2025-03-16", [140, 39, 78])

    assert [m["fixture"]["id"] for m in matches] == [2, 1]
    assert upstream.calls_of("fixtures") == [("fixtures", "2025-03-16", 140)]
    assert 2 in fake_db.matches.docs


@pytest.mark.asyncio
async def test_multi_league_scans_when_range_index_is_missing(service, upstream, fake_db):
    await service.save_matches([
        make_match(1, 39, TOMORROW_3PM),
        make_match(2, 61, TOMORROW_3PM),
        make_match(3, 39, TOMORROW_3PM + timedelta(days=3)),
    ])
    fake_db.matches.find_errors.append(_index_error())

    matches = await service.get_fixtures_for_multiple_leagues("2025-03-16", "2025-03-16", [39])

    assert [m["fixture"]["id"] for m in matches] == [1]
    assert {} in fake_db.matches.find_calls
    assert upstream.calls == []


# ---------------------------------------------------------------------------
# Reference data
# ---------------------------------------------------------------------------

def _standings_payload():
    return {
        "league": {"id": 39, "name": "Premier League", "logo": None, "country": "England", "season": 2024},
        "standings": [[{
            "rank": 1,
            "team": {"id": 50, "name": "City", "logo": None},
            "points": 60,
            "goalsDiff": 40,
            "form": "WWWDW",
            "all": {"played": 25, "win": 19, "draw": 3, "lose": 3, "goals": {"for": 60, "against": 20}},
        }]],
    }


@pytest.mark.asyncio
async def test_standings_fetched_once_then_cached(service, upstream, fake_db):
    upstream.standings[(39, 2024)] = _standings_payload()

    first = await service.get_standings(39, 2024)
    second = await service.get_standings(39, 2024)

    assert first["standings"][0]["team"]["name"] == "City"
    assert first["standings"][0]["goals"] == {"for": 60, "against": 20}
    assert second == first
    assert len(upstream.calls_of("standings")) == 1
    assert "standings_39_2024" in fake_db.standings.docs


@pytest.mark.asyncio
async def test_missing_standings_raise(service):
    with pytest.raises(StandingsNotFoundError):
        await service.get_standings(39, 1990)


@pytest.mark.asyncio
async def test_teams_fetched_for_league_and_found_by_id(service, upstream):
    upstream.teams[39] = [{"id": 50, "name": "City", "logo": "c.png"}, {"id": 42, "name": "Arsenal", "logo": None}]

    teams = await service.get_teams(39)
    assert {t["id"] for t in teams} == {50, 42}
    assert upstream.calls_of("teams") == [("teams", 39, 2024)]

    assert await service.get_team_by_id(50) == {"id": 50, "name": "City", "logo": "c.png"}
    assert await service.get_team_by_id(999) is None


@pytest.mark.asyncio
async def test_team_matches_home_and_away_newest_first(service, upstream):
    older = make_match(1, 39, datetime(2025, 2, 1, 15, tzinfo=timezone.utc), status="FT", home_id=50, away_id=42)
    newer = make_match(2, 39, datetime(2025, 3, 1, 15, tzinfo=timezone.utc), status="FT", home_id=33, away_id=50)
    last_season = make_match(3, 39, datetime(2024, 5, 1, 15, tzinfo=timezone.utc), status="FT", home_id=50, away_id=33)
    await service.save_matches([older, newer, last_season])

    matches = await service.get_team_matches(50, 2025)

    assert [m["fixture"]["id"] for m in matches] == [2, 1]
    assert upstream.calls_of("team_fixtures") == []


@pytest.mark.asyncio
async def test_leagues_fetched_once(service, upstream):
    upstream.leagues = [{"id": 39, "name": "Premier League", "country": "England", "logo": None}]

    assert (await service.get_leagues())[0]["id"] == 39
    assert (await service.get_leagues())[0]["name"] == "Premier League"
    assert len(upstream.calls_of("leagues")) == 1
