from datetime import datetime, date, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def today_utc() -> date:
    return datetime.now(timezone.utc).date()


def get_zone(tz_name: str | None) -> tzinfo:
    """Resolve a user's timezone; unknown or empty names fall back to UTC."""
    if tz_name:
        try:
            return ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            pass
    return timezone.utc


def today_for_tz(tz_name: str | None) -> date:
    """Return today's date in the user's timezone."""
    return datetime.now(get_zone(tz_name)).date()


def to_tz(value: datetime, tz_name: str | None) -> datetime:
    """Convert an aware datetime into tz_name; naive values are treated as already local."""
    if not tz_name or value.tzinfo is None:
        return value
    return value.astimezone(get_zone(tz_name))


def start_of_week(d: date) -> date:
    """Return Monday of the week containing d."""
    return d - timedelta(days=d.weekday())


def parse_instant(value) -> datetime:
    """Accept a datetime or an ISO-8601 string; raise ValueError otherwise."""
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value.strip():
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        return datetime.fromisoformat(raw)
    raise ValueError(f"Unparseable instant: {value!r}")


def as_naive_utc(value: datetime) -> datetime:
    """SQLite DateTime columns store naive values; normalize aware ones to UTC first."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
