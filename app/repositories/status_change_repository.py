from typing import List
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from app.models.status_change import StatusChange


class StatusChangeRepository:
    """Read access to the status audit trail; writes go through FlightRepository"""
    
    def __init__(self, db: AsyncSession):
        self.db = db
    
    async def list_recent(self, flight_id: int, limit: int = 10) -> List[StatusChange]:
        """Latest transitions first"""
        result = await self.db.execute(
            select(StatusChange)
            .where(StatusChange.flight_id == flight_id)
            .order_by(StatusChange.detected_at.desc(), StatusChange.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
    
    async def count_for_flight(self, flight_id: int) -> int:
        result = await self.db.execute(
            select(func.count()).select_from(StatusChange).where(StatusChange.flight_id == flight_id)
        )
        return result.scalar() or 0
