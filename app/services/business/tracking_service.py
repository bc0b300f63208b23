import logging
from contextlib import nullcontext
from datetime import datetime
from typing import Optional, List, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import get_settings
from app.exceptions import BudgetExceededException, SelectionExpiredException
from app.models.status_change import StatusChange
from app.repositories.flight_repository import FlightRepository
from app.repositories.status_change_repository import StatusChangeRepository
from app.repositories.subscription_repository import SubscriptionRepository
from app.schemas.aviationstack import AviationStackFlight
from app.schemas.flight import (
    FlightCandidate,
    FlightListResponse,
    FlightSnapshot,
    ReconcileResult,
    RefreshMode,
    RouteSearchResponse,
    StatusChangeResponse,
    StatusView,
    TrackOutcome,
)
from app.services.budget.usage_ledger import UsageLedger, format_usage_message
from app.services.cache.pending_selections import PendingSelectionStore
from app.services.converters.aviationstack_converter import AviationStackConverter
from app.services.external.aviationstack_client import AviationStackClient
from app.services.notifications.notification_service import NotificationService
from app.services.reconciliation.reconciliation_engine import ReconciliationEngine
from app.utils.flight_parser import is_airport_code, normalize_designator
from app.utils.flight_status import (
    is_terminal,
    normalize_operational,
    prefer_known,
    should_show_stand_info,
)
from app.utils.message_formatter import (
    format_candidate_list,
    format_status_message,
    format_track_confirmation,
)
from app.utils.time_utils import ensure_utc, is_within_hours, utcnow

logger = logging.getLogger(__name__)
settings = get_settings()


def _distinct_flights(flights: List[AviationStackFlight]) -> List[AviationStackFlight]:
    """Drop repeated records of the same designator, route and departure"""
    seen = set()
    distinct = []
    for flight in flights:
        key = (flight.get_callsign(), flight.departure.iata, flight.arrival.iata, flight.departure.scheduled)
        if key in seen:
            continue
        seen.add(key)
        distinct.append(flight)
    return distinct


class TrackingService:
    """
    Subscriber-facing operations: track, select, untrack, list, refresh and route search.

    Network calls happen outside database sessions, same as the reconciliation engine.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        primary: AviationStackClient,
        usage_ledger: UsageLedger,
        engine: ReconciliationEngine,
        pending_store: PendingSelectionStore,
        notification_service: Optional[NotificationService] = None
    ):
        self.session_factory = session_factory
        self.primary = primary
        self.usage_ledger = usage_ledger
        self.engine = engine
        self.pending_store = pending_store
        self.notification_service = notification_service
        self.max_candidates = settings.MAX_SELECTION_CANDIDATES

    async def _require_budget(self, now: datetime):
        if await self.usage_ledger.can_make_request(allow_reserve=True, now=now):
            return
        usage = await self.usage_ledger.get_usage(now)
        logger.warning(
            "Monthly API budget exhausted, rejecting lookup",
            extra={"used": usage.used, "limit": usage.limit}
        )
        raise BudgetExceededException(
            f"Monthly API budget exceeded. {format_usage_message(usage.used, usage.limit)}"
        )

    def _candidate(self, av_flight: AviationStackFlight, flight_date: str, now: datetime) -> FlightCandidate:
        status = normalize_operational(
            av_flight.flight_status,
            av_flight.departure.scheduled,
            flight_date,
            now,
            av_flight.flight_date
        )
        return AviationStackConverter.to_candidate(av_flight, status.value if status else None)

    async def track(
        self,
        subscriber_key: str,
        flight_number: str,
        flight_date: str,
        now: Optional[datetime] = None
    ) -> TrackOutcome:
        """
        Look a flight up and subscribe to it.

        Several distinct matches are parked in the pending selection store and
        returned as candidates; the subscriber then picks one via select().

        Raises:
            BudgetExceededException: If the monthly budget (reserve included) is spent
            ProviderException: If the primary provider fails
        """
        now = ensure_utc(now or utcnow())
        flight_number = normalize_designator(flight_number)
        await self._require_budget(now)

        flights = _distinct_flights(await self.primary.get_flights_by_number(flight_number, flight_date))

        if not flights:
            logger.info(f"No flights found for {flight_number} on {flight_date}")
            return TrackOutcome(
                status="not_found",
                message=f"❌ Flight {flight_number} not found for {flight_date}."
            )

        if len(flights) > 1:
            offered = flights[:self.max_candidates]
            stored = await self.pending_store.put(subscriber_key, offered, flight_date)
            candidates = [self._candidate(f, flight_date, now) for f in offered]
            message = format_candidate_list(candidates, flight_number)
            if not stored:
                message += "\n\n_Selection is unavailable right now; search by route to narrow it down._"
            return TrackOutcome(status="multiple", candidates=candidates, message=message)

        return await self._save_and_subscribe(subscriber_key, flights[0], flight_date, flight_number, now)

    async def select(self, subscriber_key: str, index: int, now: Optional[datetime] = None) -> TrackOutcome:
        """
        Track the candidate at a 1-based index of the subscriber's pending selection.

        Raises:
            SelectionExpiredException: If there is no pending selection
            ValueError: If the index is out of range
        """
        now = ensure_utc(now or utcnow())
        selection = await self.pending_store.get(subscriber_key)
        if selection is None or not selection.flights:
            raise SelectionExpiredException("Selection expired or invalid")

        if index < 1 or index > len(selection.flights):
            raise ValueError(f"Pick a number between 1 and {len(selection.flights)}")

        av_flight = selection.flights[index - 1]
        await self.pending_store.clear(subscriber_key)

        flight_date = selection.requested_date or av_flight.flight_date
        return await self._save_and_subscribe(
            subscriber_key,
            av_flight,
            flight_date,
            av_flight.get_callsign() or "",
            now
        )

    async def _save_and_subscribe(
        self,
        subscriber_key: str,
        av_flight: AviationStackFlight,
        flight_date: str,
        requested_number: str,
        now: datetime
    ) -> TrackOutcome:
        """Upsert the flight for the requested date and subscribe idempotently"""
        flight_number = normalize_designator(av_flight.flight.iata or requested_number)

        async with self.session_factory() as session:
            existing = await FlightRepository(session).get_by_number_and_date(flight_number, flight_date)
            existing_id = existing.id if existing else None

        # Writes to a known flight serialize with reconciliation of the same row
        guard = self.engine.locks.acquire(existing_id) if existing_id is not None else nullcontext()
        async with guard:
            snapshot, inserted = await self._write_flight(subscriber_key, av_flight, flight_date, flight_number, now)

        airline = av_flight.airline.name if av_flight.airline else None
        logger.info(
            f"Subscriber tracking {flight_number} on {flight_date}",
            extra={"flight_id": snapshot.id, "subscriber_key": subscriber_key, "new_subscription": inserted}
        )
        return TrackOutcome(
            status="tracked",
            flight=snapshot,
            already_tracking=not inserted,
            message=format_track_confirmation(snapshot, airline, already_tracking=not inserted)
        )

    async def _write_flight(
        self,
        subscriber_key: str,
        av_flight: AviationStackFlight,
        flight_date: str,
        flight_number: str,
        now: datetime
    ) -> Tuple[FlightSnapshot, bool]:
        values = AviationStackConverter.to_flight_values(av_flight)
        record = AviationStackConverter.to_provider_record(av_flight)

        async with self.session_factory() as session:
            flight_repo = FlightRepository(session)
            existing = await flight_repo.get_by_number_and_date(flight_number, flight_date)

            reported = normalize_operational(
                record.status,
                values["scheduled_departure"],
                flight_date,
                now,
                record.flight_date
            )
            status = prefer_known(existing.current_status if existing else None, reported)
            status_value = status.value if status else None

            visible = should_show_stand_info(
                values["scheduled_departure"],
                flight_date,
                status,
                now,
                settings.STAND_INFO_WINDOW_HOURS
            )
            delay = record.delay_minutes
            if delay is None and existing is not None:
                delay = existing.delay_minutes

            values.update({
                "current_status": status_value,
                "gate": record.departure_gate if visible else None,
                "terminal": record.departure_terminal if visible else None,
                "delay_minutes": delay,
                "is_active": not is_terminal(status),
                "last_polled_at": now,
            })
            for field, estimate, scheduled in (
                ("estimated_departure", record.estimated_departure, values["scheduled_departure"]),
                ("estimated_arrival", record.estimated_arrival, values["scheduled_arrival"]),
            ):
                if estimate and is_within_hours(estimate, scheduled, settings.ESTIMATE_PLAUSIBILITY_HOURS):
                    values[field] = estimate

            if existing is not None and status_value and status_value != existing.current_status:
                session.add(StatusChange(
                    flight_id=existing.id,
                    old_status=existing.current_status,
                    new_status=status_value,
                    details="sources: aviationstack",
                    detected_at=now
                ))

            flight = await flight_repo.upsert(flight_number, flight_date, values)
            inserted = await SubscriptionRepository(session).add(subscriber_key, flight.id)
            snapshot = FlightSnapshot.model_validate(flight)

        return snapshot, inserted

    async def untrack(self, subscriber_key: str, flight_number: str) -> Optional[FlightSnapshot]:
        """
        Stop tracking a flight. The flight is deactivated once nobody follows it.

        Returns:
            The untracked flight, or None if the subscriber was not tracking it
        """
        flight_number = normalize_designator(flight_number)

        async with self.session_factory() as session:
            subscription_repo = SubscriptionRepository(session)
            flight = await subscription_repo.find_flight(subscriber_key, flight_number)
            if flight is None:
                return None
            snapshot = FlightSnapshot.model_validate(flight)

            await subscription_repo.remove(subscriber_key, snapshot.id)
            if await subscription_repo.count_for_flight(snapshot.id) == 0:
                await FlightRepository(session).deactivate(snapshot.id)
                snapshot.is_active = False
                logger.info(f"No subscribers left for {flight_number}, deactivated")

        return snapshot

    async def list_flights(self, subscriber_key: str) -> FlightListResponse:
        async with self.session_factory() as session:
            flights = await SubscriptionRepository(session).list_flights(subscriber_key)
            snapshots = [FlightSnapshot.model_validate(f) for f in flights]
        return FlightListResponse(total=len(snapshots), flights=snapshots)

    async def refresh(
        self,
        flight_number: str,
        subscriber_key: str,
        now: Optional[datetime] = None
    ) -> Optional[StatusView]:
        """
        On-demand status check for one of the subscriber's flights.

        Returns:
            None if the subscriber is not tracking the flight
        """
        now = ensure_utc(now or utcnow())
        flight_number = normalize_designator(flight_number)

        async with self.session_factory() as session:
            flight = await SubscriptionRepository(session).find_flight(subscriber_key, flight_number)
            if flight is None:
                return None
            flight_id = flight.id

        result = await self.engine.reconcile(flight_id, RefreshMode.ON_DEMAND, now=now)

        if result.updated and result.changes and result.snapshot and self.notification_service:
            await self.notification_service.notify_flight_update(result.snapshot, result.changes)

        async with self.session_factory() as session:
            snapshot = result.snapshot
            if snapshot is None:
                current = await FlightRepository(session).get_by_id(flight_id)
                if current is None:
                    return None
                snapshot = FlightSnapshot.model_validate(current)
            recent = await StatusChangeRepository(session).list_recent(flight_id, limit=10)
            recent_changes = [StatusChangeResponse.model_validate(c) for c in recent]

        updated_minutes_ago = None
        if snapshot.last_polled_at:
            updated_minutes_ago = max(0, int((now - ensure_utc(snapshot.last_polled_at)).total_seconds() // 60))

        notes = self._notes(result)
        return StatusView(
            flight=snapshot,
            recent_changes=recent_changes,
            degraded=result.degraded,
            refreshed=result.refreshed,
            updated_minutes_ago=updated_minutes_ago,
            notes=notes,
            message=format_status_message(snapshot, recent_changes, updated_minutes_ago, notes)
        )

    @staticmethod
    def _notes(result: ReconcileResult) -> List[str]:
        notes = []
        if result.budget_skipped:
            notes.append("Monthly API budget reached. Showing cached information.")
        if result.error or (result.degraded and not result.sources):
            notes.append("Could not refresh flight data. Showing cached information.")
        elif result.degraded:
            notes.append(f"Live data unavailable. Showing data from {', '.join(result.sources)}.")
        return notes

    async def lookup_route(
        self,
        origin: str,
        destination: str,
        flight_date: str,
        subscriber_key: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> RouteSearchResponse:
        """
        Search flights between two airports.
        With a subscriber key, the results become that subscriber's pending selection.

        Raises:
            ValueError: If an airport code is malformed
            BudgetExceededException: If the monthly budget is spent
        """
        now = ensure_utc(now or utcnow())
        origin, destination = origin.strip().upper(), destination.strip().upper()
        if not (is_airport_code(origin) and is_airport_code(destination)):
            raise ValueError("Airport codes must be three-letter IATA codes")

        await self._require_budget(now)
        flights = _distinct_flights(
            await self.primary.get_flights_by_route(origin, destination, flight_date)
        )[:self.max_candidates]

        if not flights:
            return RouteSearchResponse(
                origin=origin,
                destination=destination,
                flight_date=flight_date,
                message=f"❌ No flights found from {origin} to {destination} on {flight_date}."
            )

        if subscriber_key:
            await self.pending_store.put(subscriber_key, flights, flight_date)

        candidates = [self._candidate(f, flight_date, now) for f in flights]
        return RouteSearchResponse(
            origin=origin,
            destination=destination,
            flight_date=flight_date,
            candidates=candidates,
            message=format_candidate_list(candidates)
        )
