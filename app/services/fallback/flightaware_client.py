import logging
import re
from typing import Optional, Sequence, Dict, Any, List

from app.core.config import get_settings
from app.schemas.provider import ProviderRecord, ProviderSource
from app.services.fallback.base import FallbackProvider
from app.utils.time_utils import parse_iso, to_iso_utc

logger = logging.getLogger(__name__)
settings = get_settings()

BOOTSTRAP_PATTERN = re.compile(r"var\s+trackpollBootstrap\s*=\s*(\{[\s\S]*?\});</script>")

# Time blocks in the order delay evidence is collected
TIME_BLOCKS = ("gateDepartureTimes", "takeoffTimes", "landingTimes", "gateArrivalTimes")

# Order in which a scheduled time is picked to place a candidate in time
SCHEDULE_PREFERENCE = ("gateDepartureTimes", "takeoffTimes", "gateArrivalTimes", "landingTimes")

FlightData = Dict[str, Any]


def _airport(flight: FlightData, leg: str) -> Dict[str, Any]:
    airport = flight.get(leg)
    return airport if isinstance(airport, dict) else {}


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _times(flight: FlightData, block: str) -> Dict[str, Any]:
    times = flight.get(block)
    return times if isinstance(times, dict) else {}


def get_delay_from_times(times: Dict[str, Any]) -> Optional[int]:
    estimated = times.get("estimated")
    scheduled = times.get("scheduled")
    if not estimated or not scheduled:
        return None
    minutes = round((estimated - scheduled) / 60)
    return minutes if minutes > 0 else None


def get_delay_minutes(flight: FlightData) -> Optional[int]:
    """Largest positive delay across gate departure, takeoff, landing and gate arrival"""
    delays = [get_delay_from_times(_times(flight, block)) for block in TIME_BLOCKS]
    delays = [d for d in delays if d is not None]
    return max(delays) if delays else None


def get_scheduled_seconds(flight: FlightData) -> Optional[int]:
    for block in SCHEDULE_PREFERENCE:
        scheduled = _times(flight, block).get("scheduled")
        if scheduled:
            return scheduled
    return None


def derive_status(flight: FlightData, delay_minutes: Optional[int]) -> Optional[str]:
    if flight.get("cancelled"):
        return "cancelled"
    if flight.get("diverted"):
        return "diverted"
    raw_status = _clean(flight.get("flightStatus"))
    if raw_status:
        return raw_status.lower()
    if delay_minutes and delay_minutes > 0:
        return "delayed"
    return None


def _on_route(flight: FlightData, origin: Optional[str], destination: Optional[str]) -> bool:
    return (
        _airport(flight, "origin").get("iata") == origin
        and _airport(flight, "destination").get("iata") == destination
    )


class FlightAwareProvider(FallbackProvider):
    """
    FlightAware live flight page (second fallback).
    
    A designator page can list several instances of the same flight number;
    the activity log is searched for the instance on the tracked route that
    carries the most signal, nearest to the tracked departure.
    """
    
    source = ProviderSource.FLIGHTAWARE
    
    def __init__(
        self,
        http_client=None,
        base_url: Optional[str] = None,
        match_window_hours: Optional[float] = None,
        score_delay: Optional[int] = None,
        score_status: Optional[int] = None,
        score_gate: Optional[int] = None,
        score_terminal: Optional[int] = None
    ):
        super().__init__(http_client)
        self.base_url = (base_url or settings.FLIGHTAWARE_BASE_URL).rstrip("/")
        self.match_window_seconds = 3600 * (
            match_window_hours if match_window_hours is not None else settings.ACTIVITY_MATCH_WINDOW_HOURS
        )
        self.score_delay = score_delay if score_delay is not None else settings.FALLBACK_SCORE_DELAY
        self.score_status = score_status if score_status is not None else settings.FALLBACK_SCORE_STATUS
        self.score_gate = score_gate if score_gate is not None else settings.FALLBACK_SCORE_GATE
        self.score_terminal = score_terminal if score_terminal is not None else settings.FALLBACK_SCORE_TERMINAL
    
    def signal_score(self, flight: FlightData) -> int:
        score = 0
        delay_minutes = get_delay_minutes(flight)
        if delay_minutes and delay_minutes > 0:
            score += self.score_delay
        if _clean(flight.get("flightStatus")):
            score += self.score_status
        for leg in ("origin", "destination"):
            airport = _airport(flight, leg)
            if airport.get("gate"):
                score += self.score_gate
            if airport.get("terminal"):
                score += self.score_terminal
        return score
    
    def select_flight(
        self,
        flights: List[FlightData],
        origin: Optional[str],
        destination: Optional[str]
    ) -> Optional[FlightData]:
        """Route match, else the first flight on the page"""
        for flight in flights:
            if _on_route(flight, origin, destination):
                return flight
        return flights[0] if flights else None
    
    def select_activity_flight(
        self,
        flight: FlightData,
        origin: Optional[str],
        destination: Optional[str],
        scheduled_departure: Optional[str]
    ) -> FlightData:
        """
        Pick the best activity-log entry on the tracked route.
        
        Entries whose scheduled time is within the match window of the tracked
        departure are ranked by signal score, then by proximity. When none is
        inside the window, every route match is ranked the same way.
        """
        activity_log = flight.get("activityLog")
        entries = activity_log.get("flights") if isinstance(activity_log, dict) else None
        candidates = [
            entry for entry in (entries or [])
            if isinstance(entry, dict) and _on_route(entry, origin, destination)
        ]
        if not candidates:
            return flight
        
        departure_at = parse_iso(scheduled_departure)
        reference = departure_at.timestamp() if departure_at else None
        
        ranked = candidates
        if reference is not None:
            in_window = [
                entry for entry in candidates
                if get_scheduled_seconds(entry)
                and abs(get_scheduled_seconds(entry) - reference) <= self.match_window_seconds
            ]
            if in_window:
                ranked = in_window
        
        def sort_key(entry: FlightData):
            scheduled = get_scheduled_seconds(entry)
            if reference is None:
                proximity = 0.0
            elif scheduled:
                proximity = abs(scheduled - reference)
            else:
                proximity = float("inf")
            return (-self.signal_score(entry), proximity)
        
        return sorted(ranked, key=sort_key)[0]
    
    def parse(
        self,
        html: str,
        origin: Optional[str] = None,
        destination: Optional[str] = None,
        scheduled_departure: Optional[str] = None
    ) -> Optional[ProviderRecord]:
        """Parse a live flight page into a provider record"""
        bootstrap = self.extract_json(html, BOOTSTRAP_PATTERN)
        if not isinstance(bootstrap, dict) or not isinstance(bootstrap.get("flights"), dict):
            return None
        
        flights = [f for f in bootstrap["flights"].values() if isinstance(f, dict)]
        selected = self.select_flight(flights, origin, destination)
        if not selected or selected.get("unknown") or selected.get("resultUnknown"):
            return None
        
        activity = self.select_activity_flight(selected, origin, destination, scheduled_departure)
        delay_minutes = get_delay_minutes(activity)
        departure_airport = _airport(activity, "origin")
        arrival_airport = _airport(activity, "destination")
        
        departure_estimate = (
            _times(activity, "gateDepartureTimes").get("estimated")
            or _times(activity, "takeoffTimes").get("estimated")
        )
        arrival_estimate = (
            _times(activity, "gateArrivalTimes").get("estimated")
            or _times(activity, "landingTimes").get("estimated")
        )
        
        record = ProviderRecord(
            source=self.source,
            status=derive_status(activity, delay_minutes),
            delay_minutes=delay_minutes,
            estimated_departure=to_iso_utc(departure_estimate) if departure_estimate else None,
            estimated_arrival=to_iso_utc(arrival_estimate) if arrival_estimate else None,
            departure_gate=_clean(departure_airport.get("gate")),
            departure_terminal=_clean(departure_airport.get("terminal")),
            arrival_gate=_clean(arrival_airport.get("gate")),
            arrival_terminal=_clean(arrival_airport.get("terminal"))
        )
        return record if record.has_signal() else None
    
    async def _lookup(
        self,
        carrier_code: str,
        flight_number: str,
        origin: Optional[str],
        destination: Optional[str],
        scheduled_departure: Optional[str],
        alternate_designators: Sequence[str]
    ) -> Optional[ProviderRecord]:
        designators: List[str] = []
        for candidate in [*alternate_designators, f"{carrier_code}{flight_number}"]:
            designator = re.sub(r"\s+", "", candidate or "")
            if designator and designator not in designators:
                designators.append(designator)
        
        for designator in designators:
            url = f"{self.base_url}/{designator}"
            try:
                html = await self.fetch_html(url)
            except Exception as e:
                logger.warning(f"FlightAware fallback failed for {designator}: {str(e)}")
                continue
            if html is None:
                continue
            
            record = self.parse(html, origin, destination, scheduled_departure)
            if record is None:
                logger.debug(f"No usable FlightAware data for {designator}")
                continue
            
            record.url = url
            return record
        
        return None
