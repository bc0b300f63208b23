from typing import Optional, List
from sqlalchemy import select, delete, and_, func
from sqlalchemy.ext.asyncio import AsyncSession
from app.database import dialect_insert
from app.models.flight import Flight
from app.models.subscription import Subscription


class SubscriptionRepository:
    """Repository for subscriber/flight pairings"""
    
    def __init__(self, db: AsyncSession):
        self.db = db
    
    async def add(self, subscriber_key: str, flight_id: int) -> bool:
        """
        Subscribe to a flight. Duplicate pairs are ignored.
        
        Returns:
            True when a new subscription was created
        """
        stmt = (
            dialect_insert(self.db, Subscription)
            .values(subscriber_key=subscriber_key, flight_id=flight_id)
            .on_conflict_do_nothing(index_elements=["subscriber_key", "flight_id"])
        )
        result = await self.db.execute(stmt)
        await self.db.commit()
        return (result.rowcount or 0) > 0
    
    async def remove(self, subscriber_key: str, flight_id: int) -> bool:
        result = await self.db.execute(
            delete(Subscription).where(
                and_(Subscription.subscriber_key == subscriber_key, Subscription.flight_id == flight_id)
            )
        )
        await self.db.commit()
        return (result.rowcount or 0) > 0
    
    async def count_for_flight(self, flight_id: int) -> int:
        result = await self.db.execute(
            select(func.count()).select_from(Subscription).where(Subscription.flight_id == flight_id)
        )
        return result.scalar() or 0
    
    async def get_subscriber_keys(self, flight_id: int) -> List[str]:
        """Everyone following a flight"""
        result = await self.db.execute(
            select(Subscription.subscriber_key)
            .where(Subscription.flight_id == flight_id)
            .order_by(Subscription.created_at.asc())
        )
        return list(result.scalars().all())
    
    async def list_flights(self, subscriber_key: str) -> List[Flight]:
        """Flights a subscriber follows, soonest first"""
        result = await self.db.execute(
            select(Flight)
            .join(Subscription, Subscription.flight_id == Flight.id)
            .where(Subscription.subscriber_key == subscriber_key)
            .order_by(Flight.flight_date.asc(), Flight.scheduled_departure_utc.asc())
        )
        return list(result.scalars().all())
    
    async def find_flight(self, subscriber_key: str, flight_number: str) -> Optional[Flight]:
        """
        The subscriber's flight with this designator.
        Active flights win over inactive ones, then the earliest date.
        """
        result = await self.db.execute(
            select(Flight)
            .join(Subscription, Subscription.flight_id == Flight.id)
            .where(
                Subscription.subscriber_key == subscriber_key,
                Flight.flight_number == flight_number,
            )
            .order_by(Flight.is_active.desc(), Flight.flight_date.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()
