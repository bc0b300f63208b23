"""
Normalized provider record.
The common shape every flight-data adapter produces; never persisted.
"""
from pydantic import BaseModel
from typing import Optional
from enum import Enum


class ProviderSource(str, Enum):
    """Provenance tag for provider records"""
    AVIATIONSTACK = "aviationstack"
    FLIGHTSTATS = "flightstats"
    FLIGHTAWARE = "flightaware"


class ProviderRecord(BaseModel):
    """Normalized flight observation from a single provider"""
    source: ProviderSource
    status: Optional[str] = None
    delay_minutes: Optional[int] = None
    estimated_departure: Optional[str] = None
    estimated_arrival: Optional[str] = None
    departure_gate: Optional[str] = None
    departure_terminal: Optional[str] = None
    arrival_gate: Optional[str] = None
    arrival_terminal: Optional[str] = None
    url: Optional[str] = None
    flight_date: Optional[str] = None

    def has_signal(self) -> bool:
        """True when the record carries anything worth merging"""
        return bool(
            self.status
            or (self.delay_minutes and self.delay_minutes > 0)
            or self.departure_gate
            or self.departure_terminal
            or self.arrival_gate
            or self.arrival_terminal
        )
