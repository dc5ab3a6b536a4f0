"""Single-row fixed-window counters for outgoing research API calls."""
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime
from app.database import Base

RATE_LIMIT_ROW_ID = "default"


class ResearchRateLimit(Base):
    __tablename__ = "research_rate_limits"

    id = Column(String(32), primary_key=True, default=RATE_LIMIT_ROW_ID)
    requests_per_minute = Column(Integer, nullable=False)
    requests_per_day = Column(Integer, nullable=False)
    last_reset_minute = Column(DateTime, nullable=False)
    last_reset_day = Column(DateTime, nullable=False)
    current_minute_count = Column(Integer, nullable=False, default=0)
    current_day_count = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)
