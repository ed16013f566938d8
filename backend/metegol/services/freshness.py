"""
backend/metegol/services/freshness.py

Purpose:
    Pure freshness decisions for cached match records. Two independent
    dimensions: fixture data (status, score) and details (statistics,
    events). Details carry an explicit tri-state marker instead of a long
    expiry standing in for "upstream has nothing".

Dependencies:
    - metegol.utils
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from metegol import utils

LIVE_STATUSES = frozenset({"1H", "2H", "LIVE", "ET", "P", "HT", "BT", "INT"})
FINISHED_STATUSES = frozenset({"FT", "AET", "PEN", "AWD", "WO"})

LIVE_TTL = timedelta(minutes=5)
IMMINENT_TTL = timedelta(minutes=15)
IMMINENT_WINDOW = timedelta(hours=2)
SCHEDULED_TTL = timedelta(hours=2)
FINISHED_TODAY_TTL = timedelta(hours=24)
RECENT_PAST_TTL = timedelta(days=30)
HISTORICAL_TTL = timedelta(days=365)
DEFAULT_TTL = timedelta(hours=1)

DETAILS_LIVE_TTL = timedelta(minutes=5)
DETAILS_FINISHED_TTL = timedelta(hours=24)
DETAILS_DEFAULT_TTL = timedelta(hours=1)
LINEUPS_TTL = timedelta(days=30)
CONFIRMED_ABSENT_TTL = timedelta(days=30)

# Kickoffs older than this never trigger a fixture refresh.
HISTORICAL_AGE = timedelta(days=30)
# Details absent this long after kickoff are assumed never to arrive.
DETAILS_GIVE_UP_AGE = timedelta(days=7)
DETAILS_RETRY_AGE = timedelta(days=1)


class DetailsFreshness(str, Enum):
    FRESH = "fresh"
    STALE_RETRY = "stale_retry"
    CONFIRMED_ABSENT = "confirmed_absent"


def is_live_status(status: str | None) -> bool:
    return (status or "") in LIVE_STATUSES


def is_finished_status(status: str | None) -> bool:
    return (status or "") in FINISHED_STATUSES


def needs_details(status: str | None) -> bool:
    """Only in-progress or finished matches ever carry statistics/events."""
    return is_live_status(status) or is_finished_status(status)


def fixture_ttl(kickoff: datetime, status: str | None, now: datetime | None = None) -> timedelta:
    now = now or utils.utcnow()
    kickoff = utils.ensure_utc(kickoff)

    if is_live_status(status):
        return LIVE_TTL
    if kickoff > now:
        if kickoff - now <= IMMINENT_WINDOW:
            return IMMINENT_TTL
        return SCHEDULED_TTL

    past_day = kickoff.date() < now.date()
    if is_finished_status(status) and not past_day:
        return FINISHED_TODAY_TTL
    if is_finished_status(status) or past_day:
        return HISTORICAL_TTL if now - kickoff > HISTORICAL_AGE else RECENT_PAST_TTL
    return DEFAULT_TTL


def details_ttl(status: str | None) -> timedelta:
    if is_live_status(status):
        return DETAILS_LIVE_TTL
    if is_finished_status(status):
        return DETAILS_FINISHED_TTL
    return DETAILS_DEFAULT_TTL


def _has_sides(value: Any) -> bool:
    if not isinstance(value, dict):
        return False
    return bool(value.get("home")) or bool(value.get("away"))


def has_details(record: dict[str, Any]) -> bool:
    return _has_sides(record.get("statistics")) or _has_sides(record.get("events"))


def _status_of(record: dict[str, Any]) -> str | None:
    status = record.get("status")
    if isinstance(status, dict):
        return status.get("short")
    return status


def is_fixture_stale(record: dict[str, Any], now: datetime | None = None) -> bool:
    """Whether a stored match needs its core fields re-checked upstream.

    A missing or passed expiry means stale, except for kickoffs older than
    30 days: historical results never change.
    """
    now = now or utils.utcnow()
    expires_at = utils.as_utc(record.get("fixture_expires_at"))
    if expires_at is not None and expires_at > now:
        return False
    kickoff = utils.as_utc(record.get("kickoff"))
    if kickoff is not None and now - kickoff > HISTORICAL_AGE:
        return False
    return True


def details_freshness(record: dict[str, Any], now: datetime | None = None) -> DetailsFreshness:
    now = now or utils.utcnow()
    if not needs_details(_status_of(record)):
        return DetailsFreshness.FRESH

    present = has_details(record)
    expires_at = utils.as_utc(record.get("details_expires_at"))
    kickoff = utils.as_utc(record.get("kickoff"))
    age = (now - kickoff) if kickoff is not None else timedelta(0)

    if (
        record.get("details_state") == DetailsFreshness.CONFIRMED_ABSENT.value
        and expires_at is not None
        and expires_at > now
    ):
        return DetailsFreshness.CONFIRMED_ABSENT

    if expires_at is not None:
        if expires_at > now:
            if present:
                return DetailsFreshness.FRESH
            if age > DETAILS_GIVE_UP_AGE:
                return DetailsFreshness.CONFIRMED_ABSENT
            return DetailsFreshness.STALE_RETRY
        # Final statistics of a settled match do not change.
        if present and is_finished_status(_status_of(record)) and age > DETAILS_GIVE_UP_AGE:
            return DetailsFreshness.FRESH
        return DetailsFreshness.STALE_RETRY

    # Never verified: trust age and the last write instead.
    updated_at = utils.as_utc(record.get("updated_at"))
    settled = age > DETAILS_GIVE_UP_AGE or (
        updated_at is not None and now - updated_at > DETAILS_RETRY_AGE
    )
    if settled:
        return DetailsFreshness.FRESH if present else DetailsFreshness.CONFIRMED_ABSENT
    return DetailsFreshness.STALE_RETRY


def is_details_stale(record: dict[str, Any], now: datetime | None = None) -> bool:
    return details_freshness(record, now) is DetailsFreshness.STALE_RETRY


def details_expiry(
    *,
    status: str | None,
    kickoff: datetime | None,
    incoming_details: bool,
    existing: dict[str, Any] | None,
    now: datetime | None = None,
) -> tuple[datetime | None, str | None]:
    """(details_expires_at, details_state) for a record about to be written."""
    now = now or utils.utcnow()
    if incoming_details:
        return now + details_ttl(status), DetailsFreshness.FRESH.value

    existing = existing or {}
    existing_expiry = utils.as_utc(existing.get("details_expires_at"))
    if existing_expiry is not None and existing_expiry > now:
        return existing_expiry, existing.get("details_state")

    if not needs_details(status):
        return None, None
    if has_details(existing):
        # Nothing new arrived; what is stored stays authoritative for another window.
        return now + details_ttl(status), DetailsFreshness.FRESH.value

    kickoff = utils.as_utc(kickoff)
    if kickoff is not None and now - kickoff > DETAILS_RETRY_AGE:
        return now + CONFIRMED_ABSENT_TTL, DetailsFreshness.CONFIRMED_ABSENT.value
    return now + details_ttl(status), DetailsFreshness.STALE_RETRY.value
