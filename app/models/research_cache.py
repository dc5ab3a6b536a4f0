"""Cached research responses so a repeated query does not call Perplexity again."""
from datetime import datetime
from sqlalchemy import Column, String, Text, Integer, DateTime
from app.database import Base


class ResearchCacheEntry(Base):
    __tablename__ = "research_cache"

    query_hash = Column(String(64), primary_key=True)  # sha256 of query|system_prompt|model
    query_text = Column(Text, nullable=False)
    system_prompt = Column(Text, nullable=False, default="")
    model = Column(String(64), nullable=True)
    response_text = Column(Text, nullable=False)
    citations = Column(Text, nullable=True)  # JSON list of source URLs
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    last_accessed_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    access_count = Column(Integer, nullable=False, default=1)
