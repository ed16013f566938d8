"""
backend/tests/conftest.py

Purpose:
    Shared pytest bootstrap: import paths for backend and root-level tool
    modules, an in-memory database fixture, a frozen clock, and reset of the
    process-wide singletons between tests.
"""

from __future__ import annotations

import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

_THIS_FILE = Path(__file__).resolve()
_BACKEND_DIR = _THIS_FILE.parents[1]
_REPO_ROOT = _THIS_FILE.parents[2]

for candidate in (str(_THIS_FILE.parent), str(_BACKEND_DIR), str(_REPO_ROOT)):
    if candidate not in sys.path:
        sys.path.insert(0, candidate)

import metegol.database as _db  # noqa: E402
from metegol import utils  # noqa: E402
from metegol.services import fixture_sync_service  # noqa: E402
from metegol.services.negative_cache import negative_cache  # noqa: E402
from metegol.services.quota_tracker import quota_tracker  # noqa: E402
from metegol.services.request_rate_limiter import request_rate_limiter  # noqa: E402
from metegol.workers import bulk_populator, data_syncer  # noqa: E402

from fakes import FakeDB  # noqa: E402

# Mid-afternoon UTC on a weekday: no smart-sync window edge, no midnight.
FROZEN_NOW = datetime(2025, 3, 15, 14, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta) -> None:
        self.now = self.now + delta


@pytest.fixture
def clock(monkeypatch) -> Clock:
    frozen = Clock(FROZEN_NOW)
    monkeypatch.setattr(utils, "utcnow", frozen)
    return frozen


@pytest.fixture
def fake_db(monkeypatch) -> FakeDB:
    db = FakeDB()
    monkeypatch.setattr(_db, "db", db, raising=False)
    monkeypatch.setattr(_db, "client", None, raising=False)
    return db


@pytest.fixture(autouse=True)
def _reset_singletons():
    negative_cache.clear_memory()
    quota_tracker.reset()
    request_rate_limiter.reset()
    fixture_sync_service.set_sync_service(None)
    data_syncer.reset_syncer()
    bulk_populator.reset_populator()
    yield
    negative_cache.clear_memory()
    quota_tracker.reset()
    fixture_sync_service.set_sync_service(None)
    data_syncer.reset_syncer()
    bulk_populator.reset_populator()
