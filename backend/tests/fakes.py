"""
backend/tests/fakes.py

Purpose:
    In-memory stand-ins shared by the sync tests: a Motor-like database with
    just enough query support for the synchronizer and maintenance code, a
    scripted upstream provider, and a match factory.
"""

from __future__ import annotations

import copy
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any

from metegol.providers.base import UpstreamProvider


def _get_nested(doc: dict, dotted_key: str):
    target: Any = doc
    for part in dotted_key.split("."):
        if not isinstance(target, dict):
            return None
        target = target.get(part)
    return target


def _set_nested(doc: dict, dotted_key: str, value) -> None:
    parts = dotted_key.split(".")
    target = doc
    for part in parts[:-1]:
        node = target.get(part)
        if not isinstance(node, dict):
            node = {}
            target[part] = node
        target = node
    target[parts[-1]] = copy.deepcopy(value)


def _cmp(actual, op: str, expected) -> bool:
    if actual is None:
        return False
    if op == "$gte":
        return actual >= expected
    if op == "$gt":
        return actual > expected
    if op == "$lte":
        return actual <= expected
    return actual < expected


def matches_query(doc: dict, query: dict | None) -> bool:
    if not query:
        return True
    for key, expected in query.items():
        if key == "$or":
            if not any(matches_query(doc, sub) for sub in expected):
                return False
            continue
        if key == "$and":
            if not all(matches_query(doc, sub) for sub in expected):
                return False
            continue
        actual = _get_nested(doc, key)
        if isinstance(expected, dict) and any(k.startswith("$") for k in expected):
            for op, value in expected.items():
                if op == "$in":
                    if actual not in value:
                        return False
                elif op == "$nin":
                    if actual in value:
                        return False
                elif op == "$ne":
                    if actual == value:
                        return False
                elif op == "$exists":
                    if bool(value) != (actual is not None):
                        return False
                elif op in ("$gte", "$gt", "$lte", "$lt"):
                    if not _cmp(actual, op, value):
                        return False
                else:
                    raise NotImplementedError(op)
            continue
        if actual != expected:
            return False
    return True


class FakeCursor:
    def __init__(self, items: list[dict]):
        self._items = items
        self._limit: int | None = None

    def limit(self, value: int):
        self._limit = int(value)
        return self

    def sort(self, key, direction=1):
        self._items.sort(key=lambda d: (_get_nested(d, key) is None, _get_nested(d, key)), reverse=direction < 0)
        return self

    async def to_list(self, length=None):
        items = self._items if self._limit is None else self._items[: self._limit]
        if length is None:
            return list(items)
        return list(items)[: int(length)]

    def __aiter__(self):
        async def _gen():
            for item in await self.to_list():
                yield item
        return _gen()


class FakeCollection:
    def __init__(self, name: str) -> None:
        self.name = name
        self.docs: dict[Any, dict] = {}
        self.find_calls: list[dict] = []
        self.bulk_calls: list[list] = []
        self.update_calls: list[dict] = []
        # Exceptions raised by the next find() calls, in order.
        self.find_errors: list[Exception] = []

    def insert(self, *docs: dict) -> None:
        for doc in docs:
            self.docs[doc["_id"]] = copy.deepcopy(doc)

    def find(self, query=None, _projection=None):
        self.find_calls.append(query or {})
        if self.find_errors:
            raise self.find_errors.pop(0)
        rows = [copy.deepcopy(d) for d in self.docs.values() if matches_query(d, query)]
        return FakeCursor(rows)

    async def find_one(self, query=None, _projection=None):
        for doc in self.docs.values():
            if matches_query(doc, query):
                return copy.deepcopy(doc)
        return None

    async def count_documents(self, query):
        return sum(1 for d in self.docs.values() if matches_query(d, query))

    def _apply(self, query: dict, update: dict, upsert: bool) -> tuple[bool, bool]:
        target = next((d for d in self.docs.values() if matches_query(d, query)), None)
        inserted = False
        if target is None:
            if not upsert:
                return False, False
            target = {"_id": query["_id"]}
            self.docs[query["_id"]] = target
            for key, value in (update.get("$setOnInsert") or {}).items():
                _set_nested(target, key, value)
            inserted = True
        for key, value in (update.get("$set") or {}).items():
            _set_nested(target, key, value)
        return inserted, not inserted

    async def update_one(self, query, update, upsert=False):
        self.update_calls.append({"query": query, "update": update, "upsert": upsert})
        inserted, modified = self._apply(query, update, upsert)
        return SimpleNamespace(
            upserted_id=query.get("_id") if inserted else None,
            modified_count=int(modified),
        )

    async def bulk_write(self, ops, ordered=True, session=None):
        self.bulk_calls.append(list(ops))
        upserted = modified = 0
        for op in ops:
            inserted, changed = self._apply(op._filter, op._doc, op._upsert)
            upserted += int(inserted)
            modified += int(changed)
        return SimpleNamespace(upserted_count=upserted, modified_count=modified)

    async def delete_many(self, query):
        doomed = [key for key, d in self.docs.items() if matches_query(d, query)]
        for key in doomed:
            del self.docs[key]
        return SimpleNamespace(deleted_count=len(doomed))


class FakeDB:
    def __init__(self) -> None:
        self._collections: dict[str, FakeCollection] = {}
        self.name = "metegol_test"

    def __getattr__(self, name: str) -> FakeCollection:
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]

    def __getitem__(self, name: str) -> FakeCollection:
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]

    async def command(self, name: str):
        return {"ok": 1.0}


def make_match(
    match_id: int,
    league_id: int,
    kickoff: datetime,
    status: str = "NS",
    home_id: int | None = None,
    away_id: int | None = None,
    **extra,
) -> dict[str, Any]:
    home_id = home_id if home_id is not None else match_id * 10 + 1
    away_id = away_id if away_id is not None else match_id * 10 + 2
    match = {
        "fixture": {
            "id": match_id,
            "date": kickoff.astimezone(timezone.utc).isoformat(),
            "status": {"long": status, "short": status, "elapsed": None},
        },
        "league": {"id": league_id, "name": f"League {league_id}", "logo": None, "country": None, "season": kickoff.year},
        "teams": {
            "home": {"id": home_id, "name": f"Home {match_id}", "logo": None},
            "away": {"id": away_id, "name": f"Away {match_id}", "logo": None},
        },
        "goals": {"home": None, "away": None},
    }
    match.update(extra)
    return match


def stats_for(match: dict) -> dict:
    return {
        "home": [{"type": "Shots on Goal", "value": 5}],
        "away": [{"type": "Shots on Goal", "value": 2}],
    }


def events_for(match: dict) -> dict:
    return {
        "home": [{"type": "Goal", "time": {"elapsed": 10, "extra": None}, "team": match["teams"]["home"]}],
        "away": [],
    }


def lineups_for(match: dict) -> dict:
    def side(team):
        return {
            "team": team,
            "colors": None,
            "formation": "4-4-2",
            "coach": {"id": 1, "name": "Coach", "photo": None},
            "start_xi": [{"id": 1, "name": "Keeper", "number": 1, "pos": "G", "grid": "1:1"}],
            "substitutes": [],
        }

    return {"home": side(match["teams"]["home"]), "away": side(match["teams"]["away"])}


class FakeUpstream(UpstreamProvider):
    """Scripted upstream. ``fixtures`` maps (league_id, YYYY-MM-DD) to matches."""

    def __init__(self, quota=None) -> None:
        self.fixtures: dict[tuple[int, str], list[dict]] = {}
        self.statistics: dict[int, dict] = {}
        self.events: dict[int, dict] = {}
        self.lineups: dict[int, dict] = {}
        self.standings: dict[tuple[int, int], dict] = {}
        self.teams: dict[int, list[dict]] = {}
        self.leagues: list[dict] = []
        self.team_fixtures: dict[int, list[dict]] = {}
        # facet name -> exception raised by that fetch
        self.failures: dict[str, Exception] = {}
        self.calls: list[tuple] = []
        self.call_count = 0
        self._quota = quota

    def _record(self, *call) -> None:
        self.calls.append(call)
        self.call_count += 1
        if self._quota is not None:
            self._quota.record()
        failure = self.failures.get(call[0])
        if failure is not None:
            raise failure

    def calls_of(self, name: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == name]

    async def fetch_fixtures(self, date, league_id):
        self._record("fixtures", date, league_id)
        return copy.deepcopy(self.fixtures.get((int(league_id), date), []))

    async def fetch_fixtures_in_range(self, date_from, date_to, league_id):
        self._record("fixtures_range", date_from, date_to, league_id)
        out = []
        for (lid, day), matches in self.fixtures.items():
            if lid == int(league_id) and date_from <= day <= date_to:
                out.extend(copy.deepcopy(matches))
        return out

    async def fetch_statistics(self, match):
        self._record("statistics", match["fixture"]["id"])
        return copy.deepcopy(self.statistics.get(match["fixture"]["id"], {"home": [], "away": []}))

    async def fetch_events(self, match):
        self._record("events", match["fixture"]["id"])
        return copy.deepcopy(self.events.get(match["fixture"]["id"], {"home": [], "away": []}))

    async def fetch_lineups(self, match_id, home_team_id, away_team_id):
        self._record("lineups", match_id)
        return copy.deepcopy(self.lineups.get(match_id, {"home": None, "away": None}))

    async def fetch_standings(self, league_id, season):
        self._record("standings", league_id, season)
        return copy.deepcopy(self.standings.get((league_id, season), {}))

    async def fetch_teams(self, league_id, season):
        self._record("teams", league_id, season)
        return copy.deepcopy(self.teams.get(league_id, []))

    async def fetch_leagues(self, country=None):
        self._record("leagues", country)
        return copy.deepcopy(self.leagues)

    async def fetch_team_fixtures(self, team_id, season):
        self._record("team_fixtures", team_id, season)
        return copy.deepcopy(self.team_fixtures.get(team_id, []))
