"""
Time helpers.

Provider timestamps carry their own UTC offset (the airport's local offset).
Display helpers keep that offset instead of converting to server wall-clock
time; comparisons go through UTC.
"""
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC (SQLite drops tzinfo) and convert aware ones"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp, keeping its offset.

    Accepts a trailing "Z". Timestamps without an offset are read as UTC.
    Returns None for empty or malformed input.
    """
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_iso_utc(epoch_seconds: Union[int, float]) -> str:
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).isoformat()


def parse_flight_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        return None


def add_minutes_to_iso(iso_value: str, minutes: int) -> Optional[str]:
    """Shift an ISO timestamp by whole minutes, preserving its offset"""
    parsed = parse_iso(iso_value)
    if parsed is None:
        return None
    return (parsed + timedelta(minutes=minutes)).isoformat()


def minutes_between(start_iso: Optional[str], end_iso: Optional[str]) -> Optional[int]:
    start = parse_iso(start_iso)
    end = parse_iso(end_iso)
    if start is None or end is None:
        return None
    return round((end - start).total_seconds() / 60)


def is_within_hours(candidate_iso: Optional[str], reference_iso: Optional[str], hours: float) -> bool:
    """True when both timestamps parse and lie within `hours` of each other"""
    candidate = parse_iso(candidate_iso)
    reference = parse_iso(reference_iso)
    if candidate is None or reference is None:
        return False
    return abs(candidate - reference) <= timedelta(hours=hours)


def month_key(now: Optional[datetime] = None) -> str:
    now = ensure_utc(now or utcnow())
    return now.strftime("%Y-%m")


def format_time(iso_value: str) -> str:
    """e.g. "2026-02-19T17:35:00+02:00" -> "05:35 PM" (airport local time)"""
    parsed = parse_iso(iso_value)
    if parsed is None:
        return iso_value
    return parsed.strftime("%I:%M %p")


def format_datetime(iso_value: str) -> str:
    """e.g. "2026-02-19T17:35:00+02:00" -> "Feb 19, 05:35 PM" (airport local time)"""
    parsed = parse_iso(iso_value)
    if parsed is None:
        return iso_value
    return f"{parsed.strftime('%b')} {parsed.day}, {parsed.strftime('%I:%M %p')}"
