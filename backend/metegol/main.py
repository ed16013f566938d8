"""
backend/metegol/main.py

Purpose:
    FastAPI application bootstrap: logging, Mongo lifecycle, router wiring,
    exception-to-status mapping and the optional periodic smart sync.

Dependencies:
    - metegol.database
    - metegol.routers.fixtures
    - metegol.routers.admin
    - metegol.workers.data_syncer
"""

import logging
from contextlib import asynccontextmanager

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import ConnectionFailure, OperationFailure, ServerSelectionTimeoutError

import metegol.database as _db
from metegol.config import settings
from metegol.database import close_db, connect_db
from metegol.middleware.logging import StructuredLoggingMiddleware, setup_logging
from metegol.providers.api_football import UpstreamError
from metegol.services.fixture_sync_service import (
    DataAccessError,
    MissingCredentialsError,
    StandingsNotFoundError,
    get_sync_service,
)
from metegol.services.quota_tracker import quota_tracker

logger = logging.getLogger("metegol")
scheduler = AsyncIOScheduler()
_SMART_SYNC_JOB_ID = "smart_sync"


async def _scheduled_smart_sync() -> None:
    from metegol.workers.data_syncer import get_syncer

    syncer = get_syncer()
    if syncer.stopped:
        logger.info("Scheduled smart sync skipped: syncer stopped")
        return
    try:
        await syncer.smart_sync()
    except Exception:
        logger.exception("Scheduled smart sync failed")


def _register_automated_jobs() -> int:
    if scheduler.get_job(_SMART_SYNC_JOB_ID):
        return 0
    scheduler.add_job(
        _scheduled_smart_sync,
        "interval",
        id=_SMART_SYNC_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        minutes=settings.SYNC_INTERVAL_MINUTES,
    )
    return 1


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    await connect_db()

    service = get_sync_service()
    if service.upstream is None:
        logger.warning("FOOTBALL_API_KEY not set: serving cached data only")

    scheduler.start()
    if settings.SYNC_AUTOMATION_ENABLED and service.upstream is not None:
        _register_automated_jobs()
        logger.info("Smart sync scheduled every %d minutes", settings.SYNC_INTERVAL_MINUTES)
    else:
        logger.info("Automated sync disabled. Use the admin sync endpoint to run it.")

    yield

    if scheduler.running:
        scheduler.shutdown(wait=False)
    if service.upstream is not None:
        await service.upstream.aclose()
    await close_db()


app = FastAPI(
    title="Metegol",
    description="Football fixtures, statistics and standings with a Mongo read-through cache",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS.split(","),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-Admin-Key"],
)

# Structured logging
app.add_middleware(StructuredLoggingMiddleware)

# Routers
from metegol.routers.admin import router as admin_router
from metegol.routers.fixtures import router as fixtures_router

app.include_router(fixtures_router)
app.include_router(admin_router)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Return clean validation errors without leaking internal field paths."""
    errors = []
    for err in exc.errors():
        loc = err.get("loc", ())
        field = ".".join(str(l) for l in loc[1:]) if len(loc) > 1 else str(loc[-1]) if loc else "unknown"
        errors.append({"field": field, "message": err.get("msg", "Invalid value.")})
    return JSONResponse(status_code=422, content={"detail": "Validation error.", "errors": errors})


@app.exception_handler(MissingCredentialsError)
async def missing_credentials_handler(request: Request, exc: MissingCredentialsError):
    logger.warning("No upstream configured for %s %s", request.method, request.url.path)
    return JSONResponse(status_code=503, content={"detail": "Upstream data source not configured."})


@app.exception_handler(UpstreamError)
async def upstream_error_handler(request: Request, exc: UpstreamError):
    logger.error("Upstream failed on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "Upstream data source unavailable."})


@app.exception_handler(StandingsNotFoundError)
async def standings_not_found_handler(request: Request, exc: StandingsNotFoundError):
    return JSONResponse(status_code=404, content={"detail": "No standings found for this league."})


@app.exception_handler(DataAccessError)
async def data_access_handler(request: Request, exc: DataAccessError):
    logger.error("Data access error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "An internal error occurred."})


@app.exception_handler(ServerSelectionTimeoutError)
async def db_timeout_handler(request: Request, exc: ServerSelectionTimeoutError):
    logger.error("Database timeout: %s %s", request.method, request.url.path)
    return JSONResponse(status_code=503, content={"detail": "Service temporarily unavailable."})


@app.exception_handler(ConnectionFailure)
async def db_connection_handler(request: Request, exc: ConnectionFailure):
    logger.error("Database connection failure: %s %s", request.method, request.url.path)
    return JSONResponse(status_code=503, content={"detail": "Service temporarily unavailable."})


@app.exception_handler(OperationFailure)
async def db_operation_handler(request: Request, exc: OperationFailure):
    logger.error("Database operation error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "An internal error occurred."})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    logger.warning("ValueError on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=400, content={"detail": "Invalid input."})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    """Catch-all: log the real error, return a safe generic message."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "An internal error occurred."})


@app.get("/health")
async def health():
    """Health check -- verifies DB connection and upstream configuration."""
    try:
        result = await _db.db.command("ping")
        db_ok = result.get("ok") == 1.0
    except Exception:
        db_ok = False

    upstream = get_sync_service().upstream
    return {
        "status": "healthy" if db_ok else "degraded",
        "db": "connected" if db_ok else "disconnected",
        "upstream": {
            "configured": upstream is not None,
            "calls_today": quota_tracker.count(),
        },
    }
