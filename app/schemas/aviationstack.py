from pydantic import BaseModel, field_validator
from typing import Optional, List, Union
from datetime import datetime

from app.utils.time_utils import parse_iso


class AirlineInfo(BaseModel):
    """Airline information"""
    name: Optional[str] = None
    iata: Optional[str] = None
    icao: Optional[str] = None


class FlightNumber(BaseModel):
    """Flight number details"""
    number: Optional[str] = None
    iata: Optional[str] = None
    icao: Optional[str] = None


class AircraftInfo(BaseModel):
    """Aircraft information"""
    registration: Optional[str] = None
    iata: Optional[str] = None
    icao: Optional[str] = None
    icao24: Optional[str] = None


class LocationInfo(BaseModel):
    """
    Airport information for departure or arrival.
    Timestamps carry the airport's UTC offset and are kept as strings.
    """
    airport: Optional[str] = None
    timezone: Optional[str] = None
    iata: Optional[str] = None
    icao: Optional[str] = None
    terminal: Optional[str] = None
    gate: Optional[str] = None
    baggage: Optional[str] = None
    delay: Optional[int] = None
    scheduled: Optional[str] = None
    estimated: Optional[str] = None
    actual: Optional[str] = None
    estimated_runway: Optional[str] = None
    actual_runway: Optional[str] = None

    def get_best_time(self) -> Optional[datetime]:
        """Get the most accurate time available (actual > estimated > scheduled)"""
        for time_str in [self.actual, self.estimated, self.scheduled]:
            parsed = parse_iso(time_str)
            if parsed:
                return parsed
        return None


class LiveInfo(BaseModel):
    """Live flight tracking data"""
    updated: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    altitude: Optional[float] = None
    direction: Optional[float] = None
    speed_horizontal: Optional[float] = None
    speed_vertical: Optional[float] = None
    is_ground: Optional[bool] = None


class AviationStackFlight(BaseModel):
    """
    Flight record from the AviationStack /flights endpoint.
    `flight_status` is kept raw; normalization happens downstream.
    """
    flight_date: Optional[str] = None
    flight_status: Optional[str] = None
    departure: LocationInfo = LocationInfo()
    arrival: LocationInfo = LocationInfo()
    airline: Optional[AirlineInfo] = None
    flight: FlightNumber = FlightNumber()
    aircraft: Optional[AircraftInfo] = None
    live: Optional[LiveInfo] = None

    @field_validator("departure", "arrival", "flight", mode="before")
    @classmethod
    def _null_to_empty(cls, value):
        return {} if value is None else value

    def get_callsign(self) -> Optional[str]:
        """Get flight callsign (IATA or ICAO number)"""
        return self.flight.iata or self.flight.icao

    def get_designators(self) -> List[str]:
        """ICAO first, then IATA; the order fallback sources are queried in"""
        return [d for d in (self.flight.icao, self.flight.iata) if d]

    def matches_route(self, origin: Optional[str], destination: Optional[str]) -> bool:
        return (
            self.departure.iata is not None
            and self.departure.iata == origin
            and self.arrival.iata == destination
        )

    class Config:
        json_schema_extra = {
            "example": {
                "flight_date": "2026-02-19",
                "flight_status": "scheduled",
                "departure": {
                    "airport": "Dallas/Fort Worth International",
                    "timezone": "America/Chicago",
                    "iata": "DFW",
                    "terminal": "D",
                    "gate": "D22",
                    "delay": 12,
                    "scheduled": "2026-02-19T17:35:00-06:00",
                    "estimated": "2026-02-19T17:47:00-06:00"
                },
                "arrival": {
                    "airport": "Los Angeles International",
                    "iata": "LAX",
                    "scheduled": "2026-02-19T19:05:00-08:00"
                },
                "airline": {"name": "American Airlines", "iata": "AA", "icao": "AAL"},
                "flight": {"number": "123", "iata": "AA123", "icao": "AAL123"}
            }
        }


class AviationStackPagination(BaseModel):
    """Pagination info from AviationStack"""
    limit: Optional[int] = 100
    offset: Optional[int] = 0
    count: Optional[int] = 0
    total: Optional[int] = 0


class AviationStackError(BaseModel):
    """Error body AviationStack returns with a 200 or 4xx status"""
    code: Optional[Union[str, int]] = None
    message: Optional[str] = None


class AviationStackResponse(BaseModel):
    """Response wrapper for AviationStack API"""
    pagination: Optional[AviationStackPagination] = None
    data: List[AviationStackFlight] = []
    error: Optional[AviationStackError] = None

    @field_validator("data", mode="before")
    @classmethod
    def _null_to_list(cls, value):
        return [] if value is None else value
