"""
AviationStack converters.
Map /flights records onto the normalized provider record, stored flight
fields and selection candidates.
"""
import logging
from typing import Optional, Dict, Any

from app.schemas.aviationstack import AviationStackFlight
from app.schemas.flight import FlightCandidate
from app.schemas.provider import ProviderRecord, ProviderSource
from app.utils.time_utils import minutes_between, parse_iso, ensure_utc

logger = logging.getLogger(__name__)


class AviationStackConverter:
    """
    Converter for AviationStack API data.
    """
    
    @staticmethod
    def get_delay_minutes(av_flight: AviationStackFlight) -> Optional[int]:
        """
        Departure delay in minutes.
        
        An explicit positive delay wins. Otherwise a positive
        estimated-minus-scheduled difference is used. An explicit zero means
        on time; None means the provider said nothing.
        """
        explicit = av_flight.departure.delay
        if explicit is not None and explicit > 0:
            return explicit
        
        derived = minutes_between(av_flight.departure.scheduled, av_flight.departure.estimated)
        if derived is not None and derived > 0:
            return derived
        
        if explicit is not None:
            return 0
        return None
    
    @staticmethod
    def to_provider_record(av_flight: AviationStackFlight) -> ProviderRecord:
        """Convert a /flights record to the normalized provider shape"""
        return ProviderRecord(
            source=ProviderSource.AVIATIONSTACK,
            status=av_flight.flight_status,
            delay_minutes=AviationStackConverter.get_delay_minutes(av_flight),
            estimated_departure=av_flight.departure.estimated or None,
            estimated_arrival=av_flight.arrival.estimated or None,
            departure_gate=av_flight.departure.gate or None,
            departure_terminal=av_flight.departure.terminal or None,
            arrival_gate=av_flight.arrival.gate or None,
            arrival_terminal=av_flight.arrival.terminal or None,
            flight_date=av_flight.flight_date
        )
    
    @staticmethod
    def to_flight_values(av_flight: AviationStackFlight) -> Dict[str, Any]:
        """
        Stored flight fields taken verbatim from the provider.
        Status and stand info are left to the caller, which applies the
        visibility rules first.
        
        Raises:
            ValueError: If route or schedule is missing
        """
        origin = av_flight.departure.iata
        destination = av_flight.arrival.iata
        scheduled_departure = av_flight.departure.scheduled
        scheduled_arrival = av_flight.arrival.scheduled
        
        if not (origin and destination and scheduled_departure and scheduled_arrival):
            raise ValueError(
                f"Flight {av_flight.get_callsign()} is missing route or schedule information"
            )
        
        departure_at = parse_iso(scheduled_departure)
        if departure_at is None:
            logger.warning(
                f"Unparseable scheduled departure for {av_flight.get_callsign()}",
                extra={"scheduled_departure": scheduled_departure}
            )
        
        return {
            "origin": origin,
            "destination": destination,
            "scheduled_departure": scheduled_departure,
            "scheduled_arrival": scheduled_arrival,
            "scheduled_departure_utc": ensure_utc(departure_at) if departure_at else None,
        }
    
    @staticmethod
    def to_candidate(av_flight: AviationStackFlight, status: Optional[str] = None) -> FlightCandidate:
        """Summarize a record for multi-candidate selection"""
        return FlightCandidate(
            flight_number=av_flight.get_callsign(),
            airline=av_flight.airline.name if av_flight.airline else None,
            origin=av_flight.departure.iata,
            destination=av_flight.arrival.iata,
            scheduled_departure=av_flight.departure.scheduled,
            scheduled_arrival=av_flight.arrival.scheduled,
            status=status if status is not None else av_flight.flight_status,
            terminal=av_flight.departure.terminal
        )
