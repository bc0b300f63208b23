"""
Monthly usage budget for the primary flight-data provider.

Every outgoing AviationStack request is counted against a fixed monthly quota.
A small reserve is withheld from background polling so user-initiated lookups
keep working after polling has throttled itself. Exhausting the budget is a
flow state: callers check `can_make_request()` and fall back to cached or
fallback data instead of catching exceptions.
"""
import logging
from datetime import datetime
from typing import Optional
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import get_settings
from app.core.metrics import api_budget_remaining
from app.repositories.api_usage_repository import ApiUsageRepository
from app.utils.time_utils import month_key, utcnow

logger = logging.getLogger(__name__)
settings = get_settings()


class UsageSnapshot(BaseModel):
    """Budget state for the current month"""
    month: str
    used: int
    limit: int
    remaining: int


def format_usage_message(used: int, limit: int) -> str:
    """e.g. "📊 API Usage: 42/100 (42%) — 58 remaining this month" """
    remaining = max(0, limit - used)
    pct = round((used / limit) * 100) if limit else 100
    return f"📊 API Usage: {used}/{limit} ({pct}%) — {remaining} remaining this month"


class UsageLedger:
    """
    Database-backed monthly request counter.
    Each operation runs in its own short session so it never joins a caller's transaction.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        monthly_limit: Optional[int] = None,
        reserve: Optional[int] = None,
        polling_threshold: Optional[float] = None
    ):
        self.session_factory = session_factory
        self.monthly_limit = monthly_limit if monthly_limit is not None else settings.MONTHLY_REQUEST_LIMIT
        self.reserve = reserve if reserve is not None else settings.REQUEST_RESERVE
        self.polling_threshold = (
            polling_threshold if polling_threshold is not None else settings.POLLING_BUDGET_THRESHOLD
        )

    async def get_usage(self, now: Optional[datetime] = None) -> UsageSnapshot:
        month = month_key(now)
        async with self.session_factory() as session:
            usage = await ApiUsageRepository(session).get_or_create(month)
            used = usage.request_count

        remaining = max(0, self.monthly_limit - used)
        api_budget_remaining.set(remaining)
        return UsageSnapshot(month=month, used=used, limit=self.monthly_limit, remaining=remaining)

    async def can_make_request(self, allow_reserve: bool = False, now: Optional[datetime] = None) -> bool:
        """
        True while budget is left; background callers must leave the reserve untouched.
        """
        usage = await self.get_usage(now)
        if allow_reserve:
            return usage.remaining > 0
        return usage.remaining > self.reserve

    async def record_request(self, now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        async with self.session_factory() as session:
            await ApiUsageRepository(session).increment(month_key(now), now)
        logger.debug("Recorded primary provider request", extra={"month": month_key(now)})

    async def mark_usage_limit_reached(self, now: Optional[datetime] = None) -> None:
        """Provider reported its quota as exhausted; align local accounting"""
        now = now or utcnow()
        async with self.session_factory() as session:
            await ApiUsageRepository(session).raise_to_limit(month_key(now), self.monthly_limit, now)
        api_budget_remaining.set(0)
        logger.warning(
            "Primary provider reported usage limit reached",
            extra={"month": month_key(now), "limit": self.monthly_limit}
        )

    async def is_polling_enabled(self, now: Optional[datetime] = None) -> bool:
        usage = await self.get_usage(now)
        return usage.remaining > self.monthly_limit * self.polling_threshold
