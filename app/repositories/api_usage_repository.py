from typing import Optional
from sqlalchemy import select, update, case
from sqlalchemy.ext.asyncio import AsyncSession
from datetime import datetime
from app.database import dialect_insert
from app.models.api_usage import ApiUsage


class ApiUsageRepository:
    """Monthly request counters"""
    
    def __init__(self, db: AsyncSession):
        self.db = db
    
    async def get_by_month(self, month: str) -> Optional[ApiUsage]:
        result = await self.db.execute(
            select(ApiUsage)
            .where(ApiUsage.month == month)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()
    
    async def ensure_month(self, month: str) -> None:
        """Insert a zero row for the month unless one exists (conflict-safe)"""
        stmt = (
            dialect_insert(self.db, ApiUsage)
            .values(month=month, request_count=0)
            .on_conflict_do_nothing(index_elements=["month"])
        )
        await self.db.execute(stmt)
        await self.db.commit()
    
    async def get_or_create(self, month: str) -> ApiUsage:
        usage = await self.get_by_month(month)
        if usage is None:
            await self.ensure_month(month)
            usage = await self.get_by_month(month)
        return usage
    
    async def increment(self, month: str, at: datetime) -> None:
        """Atomic in-place increment"""
        await self.ensure_month(month)
        await self.db.execute(
            update(ApiUsage)
            .where(ApiUsage.month == month)
            .values(request_count=ApiUsage.request_count + 1, last_request_at=at)
        )
        await self.db.commit()
    
    async def raise_to_limit(self, month: str, limit: int, at: datetime) -> None:
        """Lift the count to the limit; never lowers it"""
        await self.ensure_month(month)
        await self.db.execute(
            update(ApiUsage)
            .where(ApiUsage.month == month)
            .values(
                request_count=case(
                    (ApiUsage.request_count < limit, limit),
                    else_=ApiUsage.request_count
                ),
                last_request_at=at
            )
        )
        await self.db.commit()
