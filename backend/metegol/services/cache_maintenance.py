"""
backend/metegol/services/cache_maintenance.py

Purpose:
    Off-hot-path housekeeping for the cache collections: dropping negative
    query records, deleting match records whose freshness windows have
    passed, and per-collection counts for the admin dashboard.

    The synchronizer never deletes; everything that removes documents lives
    here and is driven by an operator (tools/cache_maintenance.py or admin).

Dependencies:
    - metegol.database
    - pymongo
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pymongo.errors import PyMongoError

import metegol.database as _db
from metegol import utils

logger = logging.getLogger("metegol.maintenance")

DASHBOARD_COLLECTIONS = ("leagues", "teams", "matches", "standings", "lineups", "empty_queries")
DEFAULT_BATCH_SIZE = 500
BATCH_PAUSE_SECONDS = 0.2


class TtlField(str, Enum):
    FIXTURE = "fixture"
    DETAILS = "details"
    BOTH = "both"


@dataclass
class CleanupResult:
    collection: str
    matched: int = 0
    deleted: int = 0
    dry_run: bool = False


def expired_matches_query(ttl_field: TtlField | str, now=None) -> dict[str, Any]:
    """Records whose chosen expiry lies in the past; missing expiries never match."""
    ttl_field = TtlField(ttl_field)
    now = now or utils.utcnow()
    fixture = {"fixture_expires_at": {"$lt": now}}
    details = {"details_expires_at": {"$lt": now}}
    if ttl_field is TtlField.FIXTURE:
        return fixture
    if ttl_field is TtlField.DETAILS:
        return details
    return {"$or": [fixture, details]}


async def _delete_in_batches(
    collection_name: str,
    query: dict[str, Any],
    *,
    dry_run: bool,
    limit: int | None,
    batch_size: int,
) -> CleanupResult:
    collection = _db.db[collection_name]
    result = CleanupResult(collection=collection_name, dry_run=dry_run)
    matched = await collection.count_documents(query)
    result.matched = min(matched, limit) if limit else matched
    if dry_run or not matched:
        return result

    batch_size = max(1, int(batch_size))
    while True:
        take = batch_size
        if limit:
            take = min(take, limit - result.deleted)
            if take <= 0:
                break
        docs = await collection.find(query, {"_id": 1}).limit(take).to_list(length=take)
        if not docs:
            break
        outcome = await collection.delete_many({"_id": {"$in": [d["_id"] for d in docs]}})
        result.deleted += outcome.deleted_count
        logger.info("%s: deleted %d (total %d)", collection_name, outcome.deleted_count, result.deleted)
        if len(docs) < take:
            break
        await asyncio.sleep(BATCH_PAUSE_SECONDS)
    return result


async def clean_empty_queries(
    *,
    dry_run: bool = False,
    limit: int | None = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
    only_negative: bool = False,
) -> CleanupResult:
    query: dict[str, Any] = {"has_matches": False} if only_negative else {}
    return await _delete_in_batches(
        "empty_queries", query, dry_run=dry_run, limit=limit, batch_size=batch_size,
    )


async def clear_expired_matches(
    *,
    ttl_field: TtlField | str = TtlField.BOTH,
    delete_all: bool = False,
    dry_run: bool = False,
    limit: int | None = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> CleanupResult:
    query = {} if delete_all else expired_matches_query(ttl_field)
    return await _delete_in_batches(
        "matches", query, dry_run=dry_run, limit=limit, batch_size=batch_size,
    )


async def collection_stats() -> dict[str, Any]:
    """Document counts per cache collection; a failing count is reported, not raised."""
    collections: dict[str, dict[str, Any]] = {}
    for name in DASHBOARD_COLLECTIONS:
        try:
            collections[name] = {"total_entries": await _db.db[name].count_documents({})}
        except PyMongoError as exc:
            logger.error("Counting %s failed: %s", name, exc)
            collections[name] = {"total_entries": 0, "error": str(exc)}

    structured = sum(v["total_entries"] for k, v in collections.items() if k != "empty_queries")
    return {
        "timestamp": utils.utcnow(),
        "summary": {
            "structured_entries": structured,
            "empty_queries": collections["empty_queries"]["total_entries"],
            "status": "degraded" if any("error" in v for v in collections.values()) else "healthy",
        },
        "collections": collections,
    }
