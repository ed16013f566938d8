"""
backend/metegol/routers/admin.py

Purpose:
    Operator endpoints guarded by a shared admin key: drive the background
    job queue, start/stop bulk population and read per-collection counts.
    Long runs are handed to FastAPI background tasks so requests return as
    soon as the work is scheduled.

Dependencies:
    - metegol.workers.data_syncer
    - metegol.workers.bulk_populator
    - metegol.services.cache_maintenance
"""

import logging
import secrets

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, status

from metegol import utils
from metegol.config import settings
from metegol.models.admin import PopulateAction, SyncAction
from metegol.services.cache_maintenance import collection_stats
from metegol.services.fixture_sync_service import MissingCredentialsError, get_sync_service
from metegol.workers.bulk_populator import custom_config, get_populator
from metegol.workers.data_syncer import get_syncer

logger = logging.getLogger("metegol.admin")


async def verify_admin_key(x_admin_key: str = Header(...)):
    """Verify the shared admin key sent in X-Admin-Key."""
    if not settings.ADMIN_API_KEY:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API key not configured on server.",
        )
    if not secrets.compare_digest(x_admin_key, settings.ADMIN_API_KEY):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin API key.",
        )


router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(verify_admin_key)])


def _require_upstream() -> None:
    if get_sync_service().upstream is None:
        raise MissingCredentialsError("FOOTBALL_API_KEY not configured")


async def _run_sync(action: str, target: str | None, days: int) -> None:
    syncer = get_syncer()
    try:
        if action == "start_sync":
            result = await syncer.sync_todays_data()
        elif action == "smart_sync":
            result = await syncer.smart_sync()
        elif action == "force_sync":
            result = await syncer.force_sync(target)
        else:
            result = await syncer.sync_historical_data(days)
        logger.info("Admin %s finished: %s", action, result)
    except Exception:
        logger.exception("Admin %s failed", action)


async def _run_population(action: PopulateAction) -> None:
    populator = get_populator()
    try:
        if action.mode == "quick":
            await populator.quick_population()
        elif action.mode == "full":
            await populator.full_population()
        else:
            overrides = action.config
            await populator.start_massive_population(custom_config(
                league_ids=overrides.leagues if overrides else None,
                past_days=overrides.past_days if overrides else None,
                future_days=overrides.future_days if overrides else None,
                batch_size=overrides.batch_size if overrides else None,
                delay_between_batches=overrides.delay_between_batches if overrides else None,
            ))
    except Exception:
        logger.exception("Population (%s) failed", action.mode)


@router.post("/sync")
async def sync_action(body: SyncAction, background_tasks: BackgroundTasks):
    syncer = get_syncer()
    if body.action == "stop":
        stopped = syncer.stop()
        message, state = f"Syncer stopped ({stopped} running jobs failed).", "stopped"
    elif body.action == "resume":
        syncer.resume()
        message, state = "Syncer resumed.", "resumed"
    elif body.action == "clear_queue":
        cleared = syncer.clear_queue()
        message, state = f"Queue cleared ({cleared} jobs).", "cleared"
    else:
        if body.action == "force_sync" and body.type is None:
            raise HTTPException(status_code=400, detail="force_sync requires 'type'.")
        _require_upstream()
        syncer.resume()
        background_tasks.add_task(_run_sync, body.action, body.type, body.days)
        message, state = f"{body.action} queued.", "started"

    return {
        "message": message,
        "status": state,
        "stats": syncer.get_stats(),
        "timestamp": utils.utcnow(),
    }


@router.get("/sync/stats")
async def sync_stats():
    return {"stats": get_syncer().get_stats(), "timestamp": utils.utcnow()}


@router.post("/populate")
async def populate_action(body: PopulateAction, background_tasks: BackgroundTasks):
    populator = get_populator()
    if body.mode == "stop":
        populator.stop()
        return {"message": "Population stopped.", "status": "stopped", "stats": populator.get_stats()}

    _require_upstream()
    get_syncer().resume()
    background_tasks.add_task(_run_population, body)
    return {
        "message": f"{body.mode} population started in background.",
        "status": "started",
        "stats": populator.get_stats(),
        "timestamp": utils.utcnow(),
    }


@router.get("/populate/stats")
async def populate_stats():
    return {"stats": get_populator().get_stats(), "timestamp": utils.utcnow()}


@router.get("/dashboard")
async def dashboard():
    payload = await collection_stats()
    payload["sync"] = get_syncer().get_stats()
    payload["population"] = get_populator().get_stats()
    return payload
