import logging
from datetime import datetime, timedelta
from typing import Optional, Dict

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import get_settings
from app.core.metrics import flights_cleaned_total
from app.repositories.flight_repository import FlightRepository
from app.utils.time_utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)
settings = get_settings()


class CleanupService:
    """
    Flight lifecycle housekeeping.
    Deactivates terminal flights once their departure is well past and
    deletes flights older than the retention window, whatever their status.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory
        self.deactivate_after = timedelta(hours=settings.DEACTIVATE_AFTER_HOURS)
        self.retention = timedelta(days=settings.RETENTION_DAYS)

    async def cleanup(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Run both batched passes.
        
        Returns:
            Counts of deactivated and deleted flights
        """
        now = ensure_utc(now or utcnow())

        async with self.session_factory() as session:
            repo = FlightRepository(session)
            deactivated = await repo.deactivate_terminal_before(now - self.deactivate_after)
            deleted = await repo.delete_departed_before(now - self.retention)

        if deactivated:
            flights_cleaned_total.labels(action="deactivated").inc(deactivated)
        if deleted:
            flights_cleaned_total.labels(action="deleted").inc(deleted)

        logger.info(
            f"Cleanup completed: {deactivated} deactivated, {deleted} deleted",
            extra={"deactivated": deactivated, "deleted": deleted}
        )
        return {"deactivated": deactivated, "deleted": deleted}
