"""
Status reconciliation and fallback enrichment.

Takes a tracked flight's stored state plus whatever the primary provider and
the fallback web sources report, and produces one best-known status, delay,
gate and terminal. Status may advance or be corrected but never regresses to
a low-signal value, and terminal states are final.

Database sessions are kept short and never span a network call: the flight
is read in one session, providers are queried, and the result is written in a
second session. Passes over the same flight are serialized by a per-flight lock.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional, List, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import get_settings
from app.core.metrics import reconciliations_total
from app.exceptions import ProviderException, ProviderAuthException, UsageLimitException
from app.models.status_change import StatusChange
from app.repositories.flight_repository import FlightRepository
from app.schemas.aviationstack import AviationStackFlight
from app.schemas.flight import FieldChange, FlightSnapshot, ReconcileResult, RefreshMode
from app.schemas.provider import ProviderRecord
from app.services.budget.usage_ledger import UsageLedger
from app.services.converters.aviationstack_converter import AviationStackConverter
from app.services.external.aviationstack_client import AviationStackClient, select_best_matching_flight
from app.services.fallback.base import FallbackProvider
from app.utils.flight_parser import split_designator
from app.utils.flight_status import (
    is_terminal,
    normalize_operational,
    normalize_status,
    prefer_known,
    should_show_stand_info,
    should_use_fallback,
)
from app.utils.locks import KeyedLock
from app.utils.time_utils import ensure_utc, is_within_hours, parse_iso, utcnow

logger = logging.getLogger(__name__)
settings = get_settings()

PRIMARY_SOURCE = "aviationstack"


def diff_snapshots(before: FlightSnapshot, after: FlightSnapshot) -> List[FieldChange]:
    """
    Observable field changes, in notification order.
    Gate and terminal only count when a new value is known; delay only when positive.
    """
    changes: List[FieldChange] = []

    if after.current_status and after.current_status != before.current_status:
        changes.append(FieldChange(field="Status", old=before.current_status, new=after.current_status))

    if after.gate and after.gate != before.gate:
        changes.append(FieldChange(field="Gate", old=before.gate, new=after.gate))

    if after.terminal and after.terminal != before.terminal:
        changes.append(FieldChange(field="Terminal", old=before.terminal, new=after.terminal))

    if after.delay_minutes and after.delay_minutes > 0 and after.delay_minutes != before.delay_minutes:
        changes.append(FieldChange(
            field="Delay",
            old=f"{before.delay_minutes or 0} min",
            new=f"{after.delay_minutes} min"
        ))

    return changes


class ReconciliationEngine:
    """
    Produces the best-known state of a tracked flight.
    
    Used by the background poller (RefreshMode.POLL) and by user-initiated
    status checks (RefreshMode.ON_DEMAND). The two differ in reserve-budget
    permission, staleness threshold, lookahead window and cache use.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        primary: AviationStackClient,
        usage_ledger: UsageLedger,
        fallbacks: Sequence[FallbackProvider] = (),
        locks: Optional[KeyedLock] = None
    ):
        self.session_factory = session_factory
        self.primary = primary
        self.usage_ledger = usage_ledger
        self.fallbacks = list(fallbacks)
        self.locks = locks or KeyedLock()
        self.lookahead = timedelta(hours=settings.POLL_LOOKAHEAD_HOURS)
        self.stand_info_window_hours = settings.STAND_INFO_WINDOW_HOURS
        self.plausibility_hours = settings.ESTIMATE_PLAUSIBILITY_HOURS
        self.persist_fallback_snapshots = settings.PERSIST_FALLBACK_SNAPSHOTS

    async def reconcile(
        self,
        flight_id: int,
        mode: RefreshMode = RefreshMode.POLL,
        now: Optional[datetime] = None,
        stale_after: Optional[timedelta] = None
    ) -> ReconcileResult:
        """
        Run one reconciliation pass for a flight.
        
        Provider and store failures are caught here and reported in the
        result; this method does not raise for them.
        """
        now = ensure_utc(now or utcnow())

        async with self.locks.acquire(flight_id):
            try:
                result = await self._reconcile(flight_id, mode, now, stale_after)
            except SQLAlchemyError as e:
                logger.error(
                    f"Store failure while reconciling flight {flight_id}: {str(e)}",
                    extra={"flight_id": flight_id, "mode": mode.value}
                )
                result = ReconcileResult(flight_id=flight_id, mode=mode, error="store")

        reconciliations_total.labels(mode=mode.value, outcome=self._outcome(result)).inc()
        return result

    @staticmethod
    def _outcome(result: ReconcileResult) -> str:
        if result.error:
            return "error"
        if result.skipped_reason:
            return "skipped"
        if result.degraded:
            return "degraded"
        return "updated" if result.updated else "unchanged"

    async def _load(self, flight_id: int) -> Optional[FlightSnapshot]:
        async with self.session_factory() as session:
            flight = await FlightRepository(session).get_by_id(flight_id)
            return FlightSnapshot.model_validate(flight) if flight else None

    async def _reconcile(
        self,
        flight_id: int,
        mode: RefreshMode,
        now: datetime,
        stale_after: Optional[timedelta]
    ) -> ReconcileResult:
        result = ReconcileResult(flight_id=flight_id, mode=mode)

        stored = await self._load(flight_id)
        if stored is None:
            result.skipped_reason = "not_found"
            return result
        result.snapshot = stored

        if is_terminal(stored.current_status):
            result.skipped_reason = "terminal"
            return result

        departure_at = parse_iso(stored.scheduled_departure)
        if mode == RefreshMode.POLL and departure_at and departure_at - now > self.lookahead:
            result.skipped_reason = "outside_window"
            return result

        if stale_after is None:
            stale_after = timedelta(minutes=(
                settings.ON_DEMAND_STALE_MINUTES if mode == RefreshMode.ON_DEMAND
                else settings.STALE_THRESHOLD_MINUTES
            ))
        last_polled_at = ensure_utc(stored.last_polled_at) if stored.last_polled_at else None
        is_stale = last_polled_at is None or now - last_polled_at >= stale_after
        low_signal = should_use_fallback(stored.current_status, stored.delay_minutes)

        if not (is_stale or low_signal):
            result.skipped_reason = "fresh"
            return result

        allow_reserve = mode == RefreshMode.ON_DEMAND
        if not await self.usage_ledger.can_make_request(allow_reserve=allow_reserve, now=now):
            logger.info(
                f"Budget exhausted, serving fallback data for {stored.flight_number}",
                extra={"flight_id": flight_id, "mode": mode.value}
            )
            result.budget_skipped = True
            return await self._degraded(stored, now, result)

        try:
            flights = await self.primary.get_flights_by_number(
                stored.flight_number,
                stored.flight_date,
                bypass_cache=mode == RefreshMode.ON_DEMAND
            )
        except ProviderAuthException as e:
            logger.error(
                f"Primary provider rejected credentials: {str(e)}",
                extra={"flight_id": flight_id}
            )
            result.error = "auth"
            return await self._degraded(stored, now, result)
        except UsageLimitException:
            result.budget_skipped = True
            return await self._degraded(stored, now, result)
        except ProviderException as e:
            logger.warning(
                f"Primary provider failed for {stored.flight_number}: {str(e)}",
                extra={"flight_id": flight_id}
            )
            return await self._degraded(stored, now, result)

        candidate = select_best_matching_flight(flights, stored.origin, stored.destination)
        if candidate is None:
            logger.info(f"No primary match for {stored.flight_number} on {stored.flight_date}")
            return await self._degraded(stored, now, result)

        pending = stored.model_copy()
        sources = [PRIMARY_SOURCE]
        record = AviationStackConverter.to_provider_record(candidate)

        if record.delay_minutes is not None:
            pending.delay_minutes = record.delay_minutes
        self._merge_status(pending, record, now)
        if self._stand_info_visible(pending, now):
            pending.gate = record.departure_gate or pending.gate
            pending.terminal = record.departure_terminal or pending.terminal
        else:
            pending.gate = None
            pending.terminal = None
        self._merge_estimates(pending, record)

        sources += await self._enrich(pending, now, self._designators(stored, candidate), always_first=False)
        self._finalize(pending, now)

        result.refreshed = True
        result.data_source = PRIMARY_SOURCE
        result.sources = sources
        return await self._persist(stored, pending, now, result, verified=True)

    async def _degraded(self, stored: FlightSnapshot, now: datetime, result: ReconcileResult) -> ReconcileResult:
        """
        Fallback-only enrichment for display.
        Nothing is written unless fallback snapshots are configured to persist,
        and the poll timestamp is never advanced.
        """
        pending = stored.model_copy()
        sources = await self._enrich(pending, now, self._designators(stored), always_first=True)
        self._finalize(pending, now)

        result.degraded = True
        result.sources = sources
        result.data_source = "fallback" if sources else "cache"

        if sources and self.persist_fallback_snapshots:
            return await self._persist(stored, pending, now, result, verified=False)

        result.changes = diff_snapshots(stored, pending)
        result.snapshot = pending
        return result

    async def _enrich(
        self,
        pending: FlightSnapshot,
        now: datetime,
        designators: List[str],
        always_first: bool
    ) -> List[str]:
        """
        Query fallback sources in rank order while the state is still low-signal.
        Returns the sources that answered.
        """
        carrier_code, number = self._split(pending.flight_number)
        answered: List[str] = []

        for index, provider in enumerate(self.fallbacks):
            consult = (always_first and index == 0) or should_use_fallback(
                pending.current_status, pending.delay_minutes
            )
            if not consult:
                break

            record = await provider.lookup(
                carrier_code,
                number,
                origin=pending.origin,
                destination=pending.destination,
                scheduled_departure=pending.scheduled_departure,
                alternate_designators=designators
            )
            if record is None:
                continue

            answered.append(record.source.value)
            if record.delay_minutes and record.delay_minutes > 0:
                pending.delay_minutes = record.delay_minutes
            self._merge_status(pending, record, now)
            if self._stand_info_visible(pending, now):
                pending.gate = record.departure_gate or pending.gate
                pending.terminal = record.departure_terminal or pending.terminal
            self._merge_estimates(pending, record)

            logger.debug(
                f"Merged {record.source.value} data for {pending.flight_number}",
                extra={"status": pending.current_status, "delay_minutes": pending.delay_minutes}
            )

        return answered

    def _merge_status(self, pending: FlightSnapshot, record: ProviderRecord, now: datetime):
        candidate = normalize_operational(
            normalize_status(record.status),
            pending.scheduled_departure,
            pending.flight_date,
            now,
            record.flight_date
        )
        merged = prefer_known(pending.current_status, candidate)
        pending.current_status = merged.value if merged else None

    def _merge_estimates(self, pending: FlightSnapshot, record: ProviderRecord):
        """Estimates far from the schedule are discarded"""
        if record.estimated_departure and is_within_hours(
            record.estimated_departure, pending.scheduled_departure, self.plausibility_hours
        ):
            pending.estimated_departure = record.estimated_departure
        if record.estimated_arrival and is_within_hours(
            record.estimated_arrival, pending.scheduled_arrival, self.plausibility_hours
        ):
            pending.estimated_arrival = record.estimated_arrival

    def _stand_info_visible(self, pending: FlightSnapshot, now: datetime) -> bool:
        return should_show_stand_info(
            pending.scheduled_departure,
            pending.flight_date,
            pending.current_status,
            now,
            self.stand_info_window_hours
        )

    def _finalize(self, pending: FlightSnapshot, now: datetime):
        final = normalize_operational(pending.current_status, pending.scheduled_departure, pending.flight_date, now)
        pending.current_status = final.value if final else None
        if not self._stand_info_visible(pending, now):
            pending.gate = None
            pending.terminal = None

    @staticmethod
    def _split(flight_number: str) -> Tuple[str, str]:
        parts = split_designator(flight_number)
        if parts:
            return parts
        return flight_number[:2], flight_number[2:]

    @staticmethod
    def _designators(stored: FlightSnapshot, candidate: Optional[AviationStackFlight] = None) -> List[str]:
        designators = candidate.get_designators() if candidate else []
        if stored.flight_number not in designators:
            designators.append(stored.flight_number)
        return designators

    async def _persist(
        self,
        stored: FlightSnapshot,
        pending: FlightSnapshot,
        now: datetime,
        result: ReconcileResult,
        verified: bool
    ) -> ReconcileResult:
        """
        Write the reconciled state in one transaction.
        Only verified (primary-backed) passes advance last_polled_at.
        """
        changes = diff_snapshots(stored, pending)
        values = {
            "current_status": pending.current_status,
            "gate": pending.gate,
            "terminal": pending.terminal,
            "delay_minutes": pending.delay_minutes,
            "estimated_departure": pending.estimated_departure,
            "estimated_arrival": pending.estimated_arrival,
        }
        if verified:
            values["last_polled_at"] = now
        if is_terminal(pending.current_status):
            values["is_active"] = False

        status_change = None
        if pending.current_status and pending.current_status != stored.current_status:
            status_change = StatusChange(
                flight_id=stored.id,
                old_status=stored.current_status,
                new_status=pending.current_status,
                details=f"sources: {', '.join(result.sources) or 'none'}",
                detected_at=now
            )
            result.status_change = FieldChange(
                field="Status",
                old=stored.current_status,
                new=pending.current_status
            )

        async with self.session_factory() as session:
            flight = await FlightRepository(session).apply_reconciliation(stored.id, values, status_change)

        result.changes = changes
        result.updated = bool(changes) or any(
            getattr(stored, field) != value for field, value in values.items() if field != "last_polled_at"
        )
        result.snapshot = FlightSnapshot.model_validate(flight) if flight else pending

        if status_change is not None:
            logger.info(
                f"Flight {stored.flight_number} status {stored.current_status} -> {pending.current_status}",
                extra={"flight_id": stored.id, "sources": result.sources}
            )
        return result
