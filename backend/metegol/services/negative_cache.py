"""
backend/metegol/services/negative_cache.py

Purpose:
    Remembers (league, date) fixture queries that returned nothing so the
    synchronizer can skip the upstream call next time. Two tiers: a bounded
    in-process LRU trusted for a short window, backed by the persisted
    ``empty_queries`` collection.

Dependencies:
    - metegol.database
    - metegol.config
    - metegol.utils
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import date, datetime, timedelta

import metegol.database as _db
from metegol import utils
from metegol.config import settings

logger = logging.getLogger("metegol.negative_cache")

FAR_DATE_DISTANCE = timedelta(days=30)
FAR_DATE_MAX_AGE = timedelta(days=365)
NEAR_DATE_MAX_AGE = timedelta(hours=24)


def query_key(league_id: int, day: str | date) -> str:
    return f"empty_fixtures_{int(league_id)}_{utils.day_str(utils.parse_day(day))}"


def max_age_for(day: str | date, now: datetime | None = None) -> timedelta:
    """Far-away dates (past or future) are trusted much longer than near ones."""
    now = now or utils.utcnow()
    distance = abs(utils.parse_day(day) - now.date())
    return FAR_DATE_MAX_AGE if distance > FAR_DATE_DISTANCE else NEAR_DATE_MAX_AGE


@dataclass
class _Entry:
    had_matches: bool
    checked_at: datetime
    cached_at: datetime


class NegativeResultCache:
    def __init__(
        self,
        capacity: int | None = None,
        memory_ttl: timedelta | None = None,
    ) -> None:
        self._capacity = capacity or settings.NEGATIVE_CACHE_CAPACITY
        self._memory_ttl = memory_ttl or timedelta(seconds=settings.NEGATIVE_CACHE_MEMORY_TTL_SECONDS)
        self._memory: OrderedDict[str, _Entry] = OrderedDict()

    def __len__(self) -> int:
        return len(self._memory)

    def _remember(self, key: str, entry: _Entry) -> None:
        self._memory[key] = entry
        self._memory.move_to_end(key)
        while len(self._memory) > self._capacity:
            self._memory.popitem(last=False)

    def _from_memory(self, key: str, now: datetime) -> _Entry | None:
        entry = self._memory.get(key)
        if entry is None:
            return None
        if now - entry.cached_at >= self._memory_ttl:
            del self._memory[key]
            return None
        self._memory.move_to_end(key)
        return entry

    async def _from_store(self, key: str, now: datetime) -> _Entry | None:
        doc = await _db.db.empty_queries.find_one({"_id": key})
        if not doc or doc.get("last_checked") is None:
            return None
        entry = _Entry(
            had_matches=bool(doc.get("has_matches")),
            checked_at=utils.ensure_utc(doc["last_checked"]),
            cached_at=now,
        )
        self._remember(key, entry)
        return entry

    async def should_skip_upstream(self, league_id: int, day: str | date) -> bool:
        """True when a recent-enough record says this query has no matches."""
        now = utils.utcnow()
        key = query_key(league_id, day)
        entry = self._from_memory(key, now)
        if entry is None:
            entry = await self._from_store(key, now)
        if entry is None or entry.had_matches:
            return False
        fresh = now - entry.checked_at < max_age_for(day, now)
        if fresh:
            logger.debug("Skipping upstream for %s (empty, checked %s)", key, entry.checked_at.isoformat())
        return fresh

    async def record_result(self, league_id: int, day: str | date, had_matches: bool) -> None:
        now = utils.utcnow()
        key = query_key(league_id, day)
        self._remember(key, _Entry(had_matches=bool(had_matches), checked_at=now, cached_at=now))
        await _db.db.empty_queries.update_one(
            {"_id": key},
            {
                "$set": {
                    "league_id": int(league_id),
                    "date": utils.day_str(utils.parse_day(day)),
                    "has_matches": bool(had_matches),
                    "last_checked": now,
                    "updated_at": now,
                },
                "$setOnInsert": {"created_at": now},
            },
            upsert=True,
        )

    def clear_memory(self) -> None:
        self._memory.clear()


negative_cache = NegativeResultCache()
