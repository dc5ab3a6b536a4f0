"""Append-only ledger of research calls (cache hits, fresh calls, failures)."""
import uuid
from datetime import datetime
from sqlalchemy import Column, String, Integer, Boolean, DateTime, Text
from app.database import Base


class ResearchAnalytics(Base):
    __tablename__ = "research_analytics"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), nullable=True, index=True)
    query_text = Column(Text, nullable=False, default="")
    system_prompt = Column(Text, nullable=True)
    model = Column(String(64), nullable=True)
    success = Column(Boolean, nullable=False)
    error_message = Column(Text, nullable=True)
    error_type = Column(String(32), nullable=True)  # ResearchErrorType value
    response_time_ms = Column(Integer, nullable=False, default=0)
    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    cached = Column(Boolean, nullable=False, default=False)
    # True when the caller got a placeholder text instead of a real API response
    fallback = Column(Boolean, nullable=False, default=False)
