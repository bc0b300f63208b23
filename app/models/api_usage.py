from sqlalchemy import Column, String, Integer, DateTime
from app.database import Base


class ApiUsage(Base):
    """
    Primary provider request count for one calendar month.
    """
    __tablename__ = "api_usage"

    id = Column(Integer, primary_key=True, autoincrement=True)
    month = Column(String(7), nullable=False, unique=True, doc="YYYY-MM")
    request_count = Column(Integer, nullable=False, default=0, server_default="0")
    last_request_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<ApiUsage(month={self.month}, count={self.request_count})>"
