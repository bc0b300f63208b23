from sqlalchemy import Column, String, Integer, Boolean, DateTime, Index
from sqlalchemy.sql import func
from app.database import Base


class Flight(Base):
    """
    Tracked flight model.
    One row per flight instance observed on behalf of one or more subscribers.
    """
    __tablename__ = "flights"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # Flight identification
    flight_number = Column(String(10), nullable=False, doc="IATA designator, e.g. AA123")
    flight_date = Column(String(10), nullable=False, doc="Requested calendar date (YYYY-MM-DD)")

    # Route
    origin = Column(String(4), nullable=False, doc="Origin IATA code")
    destination = Column(String(4), nullable=False, doc="Destination IATA code")

    # Schedule, kept exactly as the provider sent it (with UTC offset)
    scheduled_departure = Column(String(40), nullable=False, doc="Scheduled departure (ISO-8601 with offset)")
    scheduled_arrival = Column(String(40), nullable=False, doc="Scheduled arrival (ISO-8601 with offset)")
    scheduled_departure_utc = Column(DateTime(timezone=True), nullable=True, doc="Scheduled departure in UTC, for range queries")

    # Reconciled state
    current_status = Column(String(20), nullable=True, doc="Canonical status")
    gate = Column(String(20), nullable=True, doc="Departure gate")
    terminal = Column(String(20), nullable=True, doc="Departure terminal")
    delay_minutes = Column(Integer, nullable=True, doc="Departure delay in minutes")
    estimated_departure = Column(String(40), nullable=True, doc="Trusted estimated departure (ISO-8601)")
    estimated_arrival = Column(String(40), nullable=True, doc="Trusted estimated arrival (ISO-8601)")

    last_polled_at = Column(DateTime(timezone=True), nullable=True, doc="Last verified primary-provider poll")
    is_active = Column(Boolean, nullable=False, default=True, server_default="1", index=True)

    # Metadata
    created_at = Column(DateTime(timezone=True), server_default=func.now(), doc="Record creation timestamp")
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), doc="Record update timestamp")

    __table_args__ = (
        Index('flights_flight_number_flight_date_idx', 'flight_number', 'flight_date', unique=True),
        Index('flights_scheduled_departure_idx', 'scheduled_departure_utc'),
    )

    def __repr__(self):
        return f"<Flight(id={self.id}, flight_number={self.flight_number}, date={self.flight_date}, status={self.current_status})>"
