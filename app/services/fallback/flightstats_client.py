import logging
import re
from typing import Optional, Sequence, Dict, Any

from app.core.config import get_settings
from app.schemas.provider import ProviderRecord, ProviderSource
from app.services.fallback.base import FallbackProvider

logger = logging.getLogger(__name__)
settings = get_settings()

NEXT_DATA_PATTERN = re.compile(r"__NEXT_DATA__\s*=\s*(\{[\s\S]*?\});__NEXT_LOADED_PAGES__")


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _dig(data: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def _minutes(leg: Optional[Dict[str, Any]]) -> int:
    if not isinstance(leg, dict):
        return 0
    minutes = leg.get("minutes")
    return minutes if isinstance(minutes, (int, float)) else 0


class FlightStatsProvider(FallbackProvider):
    """
    FlightStats flight tracker page (first fallback).
    Reads the Next.js bootstrap payload embedded in the page.
    """
    
    source = ProviderSource.FLIGHTSTATS
    
    def __init__(self, http_client=None, base_url: Optional[str] = None):
        super().__init__(http_client)
        self.base_url = (base_url or settings.FLIGHTSTATS_BASE_URL).rstrip("/")
    
    def parse(self, html: str) -> Optional[ProviderRecord]:
        """Parse a tracker page into a provider record"""
        next_data = self.extract_json(html, NEXT_DATA_PATTERN)
        if not isinstance(next_data, dict):
            return None
        
        flight = _dig(next_data, "props", "initialState", "flightTracker", "flight")
        if not isinstance(flight, dict):
            return None
        
        status = flight.get("status") or {}
        delay = status.get("delay") or {}
        schedule = flight.get("schedule") or {}
        departure_airport = flight.get("departureAirport") or {}
        arrival_airport = flight.get("arrivalAirport") or {}
        
        # Arrival delay is usually the fresher signal once airborne
        delay_minutes = int(max(_minutes(delay.get("departure")), _minutes(delay.get("arrival"))))
        raw_status = _clean(status.get("status"))
        
        return ProviderRecord(
            source=self.source,
            status=raw_status.lower() if raw_status else None,
            delay_minutes=delay_minutes if delay_minutes > 0 else None,
            estimated_departure=_clean(schedule.get("estimatedActualDeparture")),
            estimated_arrival=_clean(schedule.get("estimatedActualArrival")),
            departure_gate=_clean(departure_airport.get("gate")),
            departure_terminal=_clean(departure_airport.get("terminal")),
            arrival_gate=_clean(arrival_airport.get("gate")),
            arrival_terminal=_clean(arrival_airport.get("terminal"))
        )
    
    async def _lookup(
        self,
        carrier_code: str,
        flight_number: str,
        origin: Optional[str],
        destination: Optional[str],
        scheduled_departure: Optional[str],
        alternate_designators: Sequence[str]
    ) -> Optional[ProviderRecord]:
        url = f"{self.base_url}/{carrier_code}/{flight_number}"
        html = await self.fetch_html(url)
        if html is None:
            return None
        
        record = self.parse(html)
        if record is None:
            logger.debug(f"No FlightStats data for {carrier_code}{flight_number}")
            return None
        
        record.url = url
        return record
