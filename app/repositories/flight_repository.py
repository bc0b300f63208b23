from typing import Optional, List, Dict, Any
from sqlalchemy import select, update, delete, and_, or_, func
from sqlalchemy.ext.asyncio import AsyncSession
from datetime import datetime
from app.database import dialect_insert
from app.models.flight import Flight
from app.models.status_change import StatusChange
from app.models.subscription import Subscription
from app.utils.flight_status import TERMINAL_STATUSES

TERMINAL_VALUES = [status.value for status in TERMINAL_STATUSES]


class FlightRepository:
    """Repository for Flight model operations"""
    
    def __init__(self, db: AsyncSession):
        self.db = db
    
    async def create(self, **values: Any) -> Flight:
        """Create new flight record"""
        flight = Flight(**values)
        self.db.add(flight)
        await self.db.commit()
        await self.db.refresh(flight)
        return flight
    
    async def get_by_id(self, flight_id: int) -> Optional[Flight]:
        """Get flight by primary key"""
        result = await self.db.execute(
            select(Flight)
            .where(Flight.id == flight_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()
    
    async def get_by_number_and_date(self, flight_number: str, flight_date: str) -> Optional[Flight]:
        """Get flight by designator and requested date"""
        result = await self.db.execute(
            select(Flight)
            .where(and_(Flight.flight_number == flight_number, Flight.flight_date == flight_date))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()
    
    async def upsert(self, flight_number: str, flight_date: str, values: Dict[str, Any]) -> Flight:
        """Insert the flight for (number, date) or update it in place (conflict-safe)"""
        stmt = (
            dialect_insert(self.db, Flight)
            .values(flight_number=flight_number, flight_date=flight_date, **values)
            .on_conflict_do_update(
                index_elements=["flight_number", "flight_date"],
                set_={**values, "updated_at": func.now()}
            )
        )
        await self.db.execute(stmt)
        await self.db.commit()
        return await self.get_by_number_and_date(flight_number, flight_date)
    
    async def get_pollable_flights(self, departing_before: datetime) -> List[Flight]:
        """
        Active, non-terminal flights departing before the given instant.
        Flights without a parseable departure are included.
        """
        result = await self.db.execute(
            select(Flight)
            .where(
                Flight.is_active.is_(True),
                or_(Flight.current_status.is_(None), Flight.current_status.notin_(TERMINAL_VALUES)),
                or_(
                    Flight.scheduled_departure_utc.is_(None),
                    Flight.scheduled_departure_utc <= departing_before,
                ),
            )
            .order_by(Flight.scheduled_departure_utc.asc())
        )
        return list(result.scalars().all())
    
    async def count_active(self) -> int:
        result = await self.db.execute(
            select(func.count()).select_from(Flight).where(Flight.is_active.is_(True))
        )
        return result.scalar() or 0
    
    async def apply_reconciliation(
        self,
        flight_id: int,
        values: Dict[str, Any],
        status_change: Optional[StatusChange] = None
    ) -> Optional[Flight]:
        """
        Write reconciled fields and the optional status change in one transaction.
        """
        if values:
            await self.db.execute(
                update(Flight).where(Flight.id == flight_id).values(**values)
            )
        if status_change is not None:
            self.db.add(status_change)
        await self.db.commit()
        return await self.get_by_id(flight_id)
    
    async def deactivate(self, flight_id: int) -> None:
        await self.db.execute(
            update(Flight).where(Flight.id == flight_id).values(is_active=False)
        )
        await self.db.commit()
    
    async def deactivate_terminal_before(self, cutoff: datetime) -> int:
        """Batch-deactivate terminal flights that departed before the cutoff"""
        result = await self.db.execute(
            update(Flight)
            .where(
                Flight.is_active.is_(True),
                Flight.current_status.in_(TERMINAL_VALUES),
                Flight.scheduled_departure_utc < cutoff,
            )
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount or 0
    
    async def delete_departed_before(self, cutoff: datetime) -> int:
        """
        Batch-delete flights that departed before the cutoff, with their
        subscriptions and status history.
        """
        expired_ids = select(Flight.id).where(Flight.scheduled_departure_utc < cutoff)
        
        await self.db.execute(
            delete(StatusChange)
            .where(StatusChange.flight_id.in_(expired_ids))
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(
            delete(Subscription)
            .where(Subscription.flight_id.in_(expired_ids))
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(
            delete(Flight)
            .where(Flight.scheduled_departure_utc < cutoff)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount or 0
