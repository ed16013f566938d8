"""
backend/metegol/database.py

Purpose:
    MongoDB connection bootstrap, index management and the batched
    create-or-merge write primitive used by the fixture synchronizer.

Dependencies:
    - motor.motor_asyncio
    - pymongo
    - metegol.config
"""

import logging
from typing import Any, Iterable

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import UpdateOne
from pymongo.errors import OperationFailure

from metegol.config import settings

client: AsyncIOMotorClient = None
db: AsyncIOMotorDatabase = None

logger = logging.getLogger("metegol.database")

# NoQueryExecutionPlans (notablescan servers) and BadValue on a stale hint.
_MISSING_INDEX_CODE = 291
_BAD_HINT_CODE = 2


def is_missing_index_error(exc: BaseException) -> bool:
    """True when a store failure means "this query needs an index".

    Callers recover from these locally (unindexed scan or upstream path);
    anything else is a real data-access failure.
    """
    if not isinstance(exc, OperationFailure):
        return False
    code = getattr(exc, "code", None)
    if code == _MISSING_INDEX_CODE:
        return True
    return code == _BAD_HINT_CODE and "hint" in str(exc).lower()


async def connect_db() -> None:
    global client, db
    client = AsyncIOMotorClient(
        settings.MONGO_URI,
        maxPoolSize=25,
        minPoolSize=5,
    )
    db = client[settings.MONGO_DB]
    await _ensure_indexes()


async def close_db() -> None:
    global client
    if client:
        client.close()


async def _ensure_indexes() -> None:
    """Create indexes on startup. Idempotent."""

    # ---- Matches ----
    await db.matches.create_index("kickoff")
    await db.matches.create_index([("league_id", 1), ("kickoff", 1)])
    await db.matches.create_index([("home_team.id", 1), ("kickoff", -1)])
    await db.matches.create_index([("away_team.id", 1), ("kickoff", -1)])
    await db.matches.create_index("fixture_expires_at", sparse=True)

    # ---- Lineups ----
    await db.lineups.create_index("match_id")
    await db.lineups.create_index("expires_at")

    # ---- Reference data ----
    await db.teams.create_index("league_id")
    await db.leagues.create_index("country")
    await db.standings.create_index([("league_id", 1), ("season", 1)])

    # ---- Negative query records ----
    await db.empty_queries.create_index([("league_id", 1), ("date", 1)])
    await db.empty_queries.create_index("last_checked")

    logger.info("MongoDB indexes ensured")


def build_merge_ops(rows: Iterable[tuple[Any, dict, dict]]) -> list[UpdateOne]:
    """(id, $set payload, $setOnInsert payload) rows -> upsert operations."""
    ops: list[UpdateOne] = []
    for doc_id, set_payload, insert_payload in rows:
        update: dict[str, dict] = {"$set": set_payload}
        if insert_payload:
            update["$setOnInsert"] = insert_payload
        ops.append(UpdateOne({"_id": doc_id}, update, upsert=True))
    return ops


async def batch_merge(collection, rows: Iterable[tuple[Any, dict, dict]]) -> int:
    """Write every row in one ordered bulk_write (create-or-merge).

    With MONGO_USE_TRANSACTIONS the bulk runs inside a multi-document
    transaction, so the set is all-or-nothing.
    """
    ops = build_merge_ops(rows)
    if not ops:
        return 0

    if settings.MONGO_USE_TRANSACTIONS and client is not None:
        async with await client.start_session() as session:
            async with session.start_transaction():
                result = await collection.bulk_write(ops, ordered=True, session=session)
    else:
        result = await collection.bulk_write(ops, ordered=True)

    written = int(getattr(result, "upserted_count", 0) or 0) + int(getattr(result, "modified_count", 0) or 0)
    logger.debug("batch_merge %s: %d ops, %d written", getattr(collection, "name", "?"), len(ops), written)
    return len(ops)
