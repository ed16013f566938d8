from datetime import date, datetime, time, timedelta, timezone


def utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Make a naive datetime timezone-aware (UTC). Already-aware datetimes pass through.

    MongoDB stores datetimes without tzinfo (naive). Anything read back from a
    document must go through ensure_utc() before it is compared with utcnow().
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def as_utc(dt: datetime | None) -> datetime | None:
    """None-safe UTC conversion for values read from Mongo documents."""
    if dt is None:
        return None
    return ensure_utc(dt)


def parse_utc(value: str | datetime) -> datetime:
    """Parse an ISO 8601 string (with or without Z/offset) into a tz-aware UTC datetime."""
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00"))).astimezone(timezone.utc)


def parse_day(value: str | date) -> date:
    """Parse a YYYY-MM-DD calendar day. Datetimes collapse to their UTC date."""
    if isinstance(value, datetime):
        return ensure_utc(value).astimezone(timezone.utc).date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(value.strip()[:10])


def day_str(value: date | datetime) -> str:
    if isinstance(value, datetime):
        value = ensure_utc(value).astimezone(timezone.utc).date()
    return value.isoformat()


def day_bounds(date_from: str | date, date_to: str | date) -> tuple[datetime, datetime]:
    """Inclusive UTC window [from 00:00:00.000, to 23:59:59.999]."""
    start = datetime.combine(parse_day(date_from), time.min, tzinfo=timezone.utc)
    end = datetime.combine(parse_day(date_to), time(23, 59, 59, 999000), tzinfo=timezone.utc)
    return start, end


def days_between(date_from: str | date, date_to: str | date) -> list[str]:
    start = parse_day(date_from)
    end = parse_day(date_to)
    out: list[str] = []
    cursor = start
    while cursor <= end:
        out.append(cursor.isoformat())
        cursor += timedelta(days=1)
    return out
