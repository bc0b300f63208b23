from sqlalchemy import Column, String, Text, Integer, DateTime, ForeignKey
from sqlalchemy.sql import func
from app.database import Base


class StatusChange(Base):
    """
    Append-only audit entry, written when a flight's canonical status transitions.
    """
    __tablename__ = "status_changes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    flight_id = Column(
        Integer,
        ForeignKey('flights.id', ondelete='CASCADE'),
        nullable=False,
        index=True,
        doc="Associated flight"
    )
    old_status = Column(String(20), nullable=True)
    new_status = Column(String(20), nullable=False)
    details = Column(Text, nullable=True, doc="Free-text detail, e.g. data sources")
    detected_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    def __repr__(self):
        return f"<StatusChange(flight_id={self.flight_id}, {self.old_status} -> {self.new_status})>"
