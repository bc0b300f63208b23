"""
Background polling.
Selects tracked flights that are due for a status check and drives the
reconciliation engine for each, notifying subscribers of observable changes.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import get_settings
from app.core.metrics import track_poll_cycle
from app.models.flight import Flight
from app.repositories.flight_repository import FlightRepository
from app.schemas.flight import ReconcileResult, RefreshMode
from app.services.budget.usage_ledger import UsageLedger
from app.services.notifications.notification_service import NotificationService
from app.services.reconciliation.reconciliation_engine import ReconciliationEngine
from app.utils.flight_status import is_terminal
from app.utils.time_utils import ensure_utc, parse_iso, utcnow

logger = logging.getLogger(__name__)
settings = get_settings()


def get_poll_interval(scheduled_departure: Optional[datetime], now: datetime) -> timedelta:
    """
    Poll interval by time to departure: imminent (<= 1h), near (<= 3h), far.
    Flights without a usable departure time get the far interval.
    """
    if scheduled_departure is None:
        return timedelta(minutes=settings.POLL_INTERVAL_FAR_MINUTES)

    hours_until_departure = (scheduled_departure - now).total_seconds() / 3600
    if hours_until_departure <= 1:
        return timedelta(minutes=settings.POLL_INTERVAL_IMMINENT_MINUTES)
    if hours_until_departure <= 3:
        return timedelta(minutes=settings.POLL_INTERVAL_NEAR_MINUTES)
    return timedelta(minutes=settings.POLL_INTERVAL_FAR_MINUTES)


class PollingService:
    """
    One wake of the background poller.
    Polling pauses itself while the budget is below the polling threshold and
    halts for good after the primary provider rejects our credentials.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        engine: ReconciliationEngine,
        usage_ledger: UsageLedger,
        notification_service: Optional[NotificationService] = None
    ):
        self.session_factory = session_factory
        self.engine = engine
        self.usage_ledger = usage_ledger
        self.notification_service = notification_service
        self.lookahead = timedelta(hours=settings.POLL_LOOKAHEAD_HOURS)
        self.batch_size = max(1, settings.POLL_BATCH_SIZE)
        self.reconcile_timeout = settings.RECONCILE_TIMEOUT_SECONDS
        self.halted = False
        self.halt_reason: Optional[str] = None
        self.last_stats: Optional[Dict[str, Any]] = None

    def halt(self, reason: str):
        if not self.halted:
            logger.error(f"Background polling halted: {reason}")
        self.halted = True
        self.halt_reason = reason

    def resume(self):
        self.halted = False
        self.halt_reason = None
        logger.info("Background polling resumed")

    def is_due(self, flight: Flight, now: datetime) -> Optional[timedelta]:
        """
        The flight's poll interval when it is due, None otherwise.
        """
        if is_terminal(flight.current_status):
            return None

        departure_at = parse_iso(flight.scheduled_departure)
        if departure_at and departure_at - now > self.lookahead:
            return None

        interval = get_poll_interval(departure_at, now)
        if flight.last_polled_at and now - ensure_utc(flight.last_polled_at) < interval:
            return None
        return interval

    @track_poll_cycle()
    async def poll_due_flights(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Reconcile every due flight.
        
        Returns:
            Statistics dictionary
        """
        now = ensure_utc(now or utcnow())
        stats = {
            "checked": 0,
            "due": 0,
            "reconciled": 0,
            "updated": 0,
            "degraded": 0,
            "failed": 0,
            "notified": 0,
            "skipped_reason": None,
        }

        if self.halted:
            stats["skipped_reason"] = "halted"
            self.last_stats = stats
            return stats

        if not await self.usage_ledger.is_polling_enabled(now):
            logger.info("Polling paused: monthly budget below polling threshold")
            stats["skipped_reason"] = "budget"
            self.last_stats = stats
            return stats

        async with self.session_factory() as session:
            flights = await FlightRepository(session).get_pollable_flights(now + self.lookahead)

        stats["checked"] = len(flights)
        due = []
        for flight in flights:
            interval = self.is_due(flight, now)
            if interval is not None:
                due.append((flight.id, interval))
        stats["due"] = len(due)

        for start in range(0, len(due), self.batch_size):
            batch = due[start:start + self.batch_size]
            results = await asyncio.gather(
                *[self._reconcile(flight_id, interval, now) for flight_id, interval in batch],
                return_exceptions=True
            )

            for (flight_id, _), result in zip(batch, results):
                if isinstance(result, BaseException):
                    stats["failed"] += 1
                    logger.error(
                        f"Error polling flight {flight_id}: {str(result) or type(result).__name__}",
                        extra={"flight_id": flight_id}
                    )
                    continue
                await self._handle_result(result, stats)

            if self.halted:
                break

        logger.info("Poll cycle completed", extra=stats)
        self.last_stats = stats
        return stats

    async def _reconcile(self, flight_id: int, interval: timedelta, now: datetime) -> ReconcileResult:
        return await asyncio.wait_for(
            self.engine.reconcile(flight_id, RefreshMode.POLL, now=now, stale_after=interval),
            timeout=self.reconcile_timeout
        )

    async def _handle_result(self, result: ReconcileResult, stats: Dict[str, Any]):
        if result.error == "auth":
            stats["failed"] += 1
            self.halt("primary provider rejected credentials")
            return
        if result.error:
            stats["failed"] += 1
            return
        if result.skipped_reason:
            return

        stats["reconciled"] += 1
        if result.degraded:
            stats["degraded"] += 1
        if not result.updated:
            return

        stats["updated"] += 1
        if result.changes and self.notification_service and result.snapshot:
            try:
                stats["notified"] += await self.notification_service.notify_flight_update(
                    result.snapshot, result.changes
                )
            except Exception as e:
                logger.error(
                    f"Error notifying subscribers of flight {result.flight_id}: {str(e)}",
                    extra={"flight_id": result.flight_id}
                )
