"""
Flight status normalization.

Pure functions mapping raw provider status strings onto the canonical
vocabulary and deciding how much a given status can be trusted. Absence of a
status is `None`; `FlightStatus.UNKNOWN` is an explicit low-signal value.
"""
import enum
from datetime import datetime, timedelta
from typing import Optional, Union

from app.utils.time_utils import ensure_utc, parse_flight_date, parse_iso, utcnow


class FlightStatus(str, enum.Enum):
    """
    Canonical flight status vocabulary.
    Downstream rendering depends on these literal values.
    """
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    DEPARTED = "departed"
    LANDED = "landed"
    ARRIVED = "arrived"
    CANCELLED = "cancelled"
    DIVERTED = "diverted"
    DELAYED = "delayed"
    COMPLETED = "completed"
    UNKNOWN = "unknown"


StatusLike = Optional[Union[str, FlightStatus]]

STATUS_SYNONYMS = {
    "canceled": FlightStatus.CANCELLED,
    "in-air": FlightStatus.DEPARTED,
    "in air": FlightStatus.DEPARTED,
    "en-route": FlightStatus.DEPARTED,
    "en route": FlightStatus.DEPARTED,
    "enroute": FlightStatus.DEPARTED,
    "airborne": FlightStatus.DEPARTED,
    "taxiing": FlightStatus.ACTIVE,
    "boarding": FlightStatus.ACTIVE,
    "on time": FlightStatus.SCHEDULED,
    "on-time": FlightStatus.SCHEDULED,
    "n/a": FlightStatus.UNKNOWN,
    "na": FlightStatus.UNKNOWN,
    "unavailable": FlightStatus.UNKNOWN,
    "result unknown": FlightStatus.UNKNOWN,
}

LOW_SIGNAL_STATUSES = frozenset({FlightStatus.SCHEDULED, FlightStatus.UNKNOWN})

TERMINAL_STATUSES = frozenset({
    FlightStatus.LANDED,
    FlightStatus.CANCELLED,
    FlightStatus.ARRIVED,
    FlightStatus.COMPLETED,
})

# Statuses that claim the flight is underway or done; meaningless for a
# flight that has not reached its departure time yet
PROGRESS_STATUSES = frozenset({
    FlightStatus.ACTIVE,
    FlightStatus.DEPARTED,
    FlightStatus.LANDED,
    FlightStatus.ARRIVED,
    FlightStatus.COMPLETED,
})


def normalize_status(raw: StatusLike) -> Optional[FlightStatus]:
    """
    Map a raw provider status onto the canonical vocabulary.

    Empty input yields None. Non-empty strings that are not part of the
    vocabulary map to UNKNOWN.
    """
    if raw is None:
        return None
    if isinstance(raw, FlightStatus):
        return raw

    cleaned = raw.strip().lower()
    if not cleaned:
        return None
    if cleaned in STATUS_SYNONYMS:
        return STATUS_SYNONYMS[cleaned]
    try:
        return FlightStatus(cleaned)
    except ValueError:
        return FlightStatus.UNKNOWN


def is_low_signal(status: StatusLike) -> bool:
    normalized = normalize_status(status)
    return normalized is None or normalized in LOW_SIGNAL_STATUSES


def is_terminal(status: StatusLike) -> bool:
    return normalize_status(status) in TERMINAL_STATUSES


def should_use_fallback(status: StatusLike, delay_minutes: Optional[int]) -> bool:
    """True when neither status nor delay carries actionable information"""
    return (not delay_minutes or delay_minutes <= 0) and is_low_signal(status)


def prefer_known(current: StatusLike, candidate: StatusLike) -> Optional[FlightStatus]:
    """
    Merge a candidate status into the current one.

    A known status is never replaced by a low-signal candidate, and a terminal
    status is never replaced by a non-terminal one.
    """
    normalized_current = normalize_status(current)
    normalized_candidate = normalize_status(candidate)

    if normalized_candidate is None:
        return normalized_current
    if normalized_current is None:
        return normalized_candidate

    if is_low_signal(normalized_candidate):
        # Covers both "known current" and "both low-signal": keep current
        return normalized_current

    if is_terminal(normalized_current) and not is_terminal(normalized_candidate):
        return normalized_current

    return normalized_candidate


def normalize_operational(
    status: StatusLike,
    scheduled_departure_iso: Optional[str],
    tracked_flight_date: Optional[str] = None,
    now: Optional[datetime] = None,
    provider_flight_date: Optional[str] = None,
) -> Optional[FlightStatus]:
    """
    Force progress statuses back to SCHEDULED when they cannot apply yet.

    Providers keyed on flight number alone happily return yesterday's
    instance of the same flight. A progress status is rejected when the
    provider record predates the tracked date, when the tracked date is still
    ahead, or when the scheduled departure is in the future.
    """
    normalized = normalize_status(status)
    if normalized not in PROGRESS_STATUSES:
        return normalized

    now = ensure_utc(now or utcnow())
    departure = parse_iso(scheduled_departure_iso)
    tracked = parse_flight_date(tracked_flight_date)
    provider = parse_flight_date(provider_flight_date)

    if tracked and provider and provider < tracked:
        return FlightStatus.SCHEDULED

    local_today = now.astimezone(departure.tzinfo).date() if departure else now.date()
    if tracked and tracked > local_today:
        return FlightStatus.SCHEDULED

    if departure and departure > now:
        return FlightStatus.SCHEDULED

    return normalized


def should_show_stand_info(
    scheduled_departure_iso: Optional[str],
    tracked_flight_date: Optional[str] = None,
    status: StatusLike = None,
    now: Optional[datetime] = None,
    window_hours: float = 6.0,
) -> bool:
    """
    Decide whether gate/terminal data can be trusted for display.

    Stand assignments published far ahead of departure are placeholders, so
    they are only used inside a pre-departure window and never while the
    flight is still plainly scheduled.
    """
    if normalize_status(status) == FlightStatus.SCHEDULED:
        return False

    departure = parse_iso(scheduled_departure_iso)
    if departure is None:
        return False

    now = ensure_utc(now or utcnow())
    tracked = parse_flight_date(tracked_flight_date)
    if tracked and tracked > now.astimezone(departure.tzinfo).date():
        return False

    return departure - now <= timedelta(hours=window_hours)
