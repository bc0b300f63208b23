"""
Flight schemas: snapshots, reconciliation results and API request/response models.
"""
from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import datetime
from enum import Enum

from app.utils.flight_parser import normalize_designator


class RefreshMode(str, Enum):
    """Who asked for a reconciliation pass"""
    POLL = "poll"
    ON_DEMAND = "on_demand"


class FlightSnapshot(BaseModel):
    """Flight fields suitable for direct rendering"""
    id: int
    flight_number: str
    flight_date: str
    origin: str
    destination: str
    scheduled_departure: str
    scheduled_arrival: str
    current_status: Optional[str] = None
    gate: Optional[str] = None
    terminal: Optional[str] = None
    delay_minutes: Optional[int] = None
    estimated_departure: Optional[str] = None
    estimated_arrival: Optional[str] = None
    last_polled_at: Optional[datetime] = None
    is_active: bool = True

    class Config:
        from_attributes = True


class FieldChange(BaseModel):
    """One observable field moving from `old` to `new`"""
    field: str
    old: Optional[str] = None
    new: Optional[str] = None


class StatusChangeResponse(BaseModel):
    """Status history entry"""
    old_status: Optional[str] = None
    new_status: str
    details: Optional[str] = None
    detected_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ReconcileResult(BaseModel):
    """Outcome of one reconciliation pass"""
    flight_id: int
    mode: RefreshMode = RefreshMode.POLL
    updated: bool = False
    refreshed: bool = False
    degraded: bool = False
    budget_skipped: bool = False
    data_source: Optional[str] = None  # "aviationstack", "fallback", "cache"
    skipped_reason: Optional[str] = None  # "not_found", "terminal", "outside_window", "fresh"
    error: Optional[str] = None  # "auth", "provider", "store"
    changes: List[FieldChange] = []
    status_change: Optional[FieldChange] = None
    sources: List[str] = []
    snapshot: Optional[FlightSnapshot] = None


class TrackRequest(BaseModel):
    """Track a flight on a given date"""
    subscriber_key: str = Field(..., min_length=1, max_length=64)
    flight_number: str = Field(..., min_length=3, max_length=10)
    flight_date: str = Field(..., pattern=r"^\d{4}-\d{2}-\d{2}$")

    @field_validator("flight_number")
    @classmethod
    def _normalize_flight_number(cls, value: str) -> str:
        return normalize_designator(value)


class SelectRequest(BaseModel):
    """Pick one candidate out of a pending multi-result lookup (1-based)"""
    subscriber_key: str = Field(..., min_length=1, max_length=64)
    index: int = Field(..., ge=1)


class FlightCandidate(BaseModel):
    """One primary-provider match offered for selection"""
    flight_number: Optional[str] = None
    airline: Optional[str] = None
    origin: Optional[str] = None
    destination: Optional[str] = None
    scheduled_departure: Optional[str] = None
    scheduled_arrival: Optional[str] = None
    status: Optional[str] = None
    terminal: Optional[str] = None


class TrackOutcome(BaseModel):
    """Result of a track or select call"""
    status: str  # "tracked", "multiple", "not_found"
    flight: Optional[FlightSnapshot] = None
    candidates: List[FlightCandidate] = []
    already_tracking: bool = False
    message: str = ""


class RouteSearchResponse(BaseModel):
    """Flights found between two airports"""
    origin: str
    destination: str
    flight_date: str
    candidates: List[FlightCandidate] = []
    message: str = ""


class StatusView(BaseModel):
    """On-demand status of a subscriber's flight"""
    flight: FlightSnapshot
    recent_changes: List[StatusChangeResponse] = []
    degraded: bool = False
    refreshed: bool = False
    updated_minutes_ago: Optional[int] = None
    notes: List[str] = []
    message: str = ""


class FlightListResponse(BaseModel):
    """Flights a subscriber is tracking"""
    total: int
    flights: List[FlightSnapshot]


class UsageResponse(BaseModel):
    """Monthly API budget"""
    month: str
    used: int
    limit: int
    remaining: int
    polling_enabled: bool
    message: str
