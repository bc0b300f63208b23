from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Index, UniqueConstraint
from sqlalchemy.sql import func
from app.database import Base


class Subscription(Base):
    """
    A subscriber following a flight.
    Unique per (subscriber_key, flight_id).
    """
    __tablename__ = "tracked_flights"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscriber_key = Column(String(64), nullable=False, doc="Opaque chat/subscriber identifier")
    flight_id = Column(
        Integer,
        ForeignKey('flights.id', ondelete='CASCADE'),
        nullable=False,
        doc="Tracked flight"
    )

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint('subscriber_key', 'flight_id', name='tracked_flights_chat_id_flight_id_unique'),
        Index('tracked_flights_chat_id_idx', 'subscriber_key'),
        Index('tracked_flights_flight_id_idx', 'flight_id'),
    )

    def __repr__(self):
        return f"<Subscription(subscriber={self.subscriber_key}, flight_id={self.flight_id})>"
