"""
Research persistence: cache entries, the rate-limit singleton row, analytics ledger.
All operations are sync (called from async services via run_in_executor).
Functions commit their own writes.
"""
import json
from datetime import datetime

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from app.models.research_analytics import ResearchAnalytics
from app.models.research_cache import ResearchCacheEntry
from app.models.research_rate_limit import ResearchRateLimit, RATE_LIMIT_ROW_ID


# ---- Cache ----


def get_cache_entry(db: Session, query_hash: str) -> ResearchCacheEntry | None:
    return db.query(ResearchCacheEntry).filter(ResearchCacheEntry.query_hash == query_hash).first()


def touch_cache_entry(db: Session, entry: ResearchCacheEntry, now: datetime) -> ResearchCacheEntry:
    """Record a hit: bump access_count and last_accessed_at."""
    entry.access_count = (entry.access_count or 0) + 1
    entry.last_accessed_at = now
    db.commit()
    db.refresh(entry)
    return entry


def delete_cache_entry(db: Session, query_hash: str) -> None:
    db.query(ResearchCacheEntry).filter(ResearchCacheEntry.query_hash == query_hash).delete(
        synchronize_session=False
    )
    db.commit()


def upsert_cache_entry(
    db: Session,
    query_hash: str,
    query_text: str,
    system_prompt: str,
    response_text: str,
    model: str | None,
    now: datetime,
    citations: list[str] | None = None,
) -> ResearchCacheEntry:
    """Insert a fresh entry (access_count=1). An existing row for the same hash is overwritten."""
    entry = db.get(ResearchCacheEntry, query_hash)
    if entry is None:
        entry = ResearchCacheEntry(query_hash=query_hash)
        db.add(entry)
    entry.query_text = query_text
    entry.system_prompt = system_prompt or ""
    entry.model = model
    entry.response_text = response_text
    entry.citations = json.dumps(citations) if citations else None
    entry.created_at = now
    entry.last_accessed_at = now
    entry.access_count = 1
    db.commit()
    db.refresh(entry)
    return entry


def delete_cache_entries_before(db: Session, cutoff: datetime) -> int:
    deleted = db.query(ResearchCacheEntry).filter(ResearchCacheEntry.created_at < cutoff).delete(
        synchronize_session=False
    )
    db.commit()
    return deleted or 0


def clear_cache_entries(db: Session) -> int:
    deleted = db.query(ResearchCacheEntry).delete(synchronize_session=False)
    db.commit()
    return deleted or 0


def list_cache_entries(db: Session, limit: int = 50) -> list[ResearchCacheEntry]:
    return (
        db.query(ResearchCacheEntry)
        .order_by(ResearchCacheEntry.last_accessed_at.desc())
        .limit(limit)
        .all()
    )


def cache_totals(db: Session) -> tuple[int, int]:
    """(number of entries, sum of access_count)."""
    count, accesses = db.query(
        func.count(ResearchCacheEntry.query_hash),
        func.coalesce(func.sum(ResearchCacheEntry.access_count), 0),
    ).one()
    return int(count or 0), int(accesses or 0)


# ---- Rate limit ----


def get_rate_limit_state(db: Session) -> ResearchRateLimit | None:
    return db.get(ResearchRateLimit, RATE_LIMIT_ROW_ID)


def create_rate_limit_state(
    db: Session,
    requests_per_minute: int,
    requests_per_day: int,
    now: datetime,
) -> ResearchRateLimit:
    state = ResearchRateLimit(
        id=RATE_LIMIT_ROW_ID,
        requests_per_minute=requests_per_minute,
        requests_per_day=requests_per_day,
        last_reset_minute=now,
        last_reset_day=now,
        current_minute_count=0,
        current_day_count=0,
        updated_at=now,
    )
    db.add(state)
    db.commit()
    db.refresh(state)
    return state


def save_rate_limit_state(db: Session, state: ResearchRateLimit) -> None:
    db.add(state)
    db.commit()


# ---- Analytics ----


def add_analytics(db: Session, record: ResearchAnalytics) -> ResearchAnalytics:
    db.add(record)
    db.commit()
    db.refresh(record)
    return record


def list_analytics(db: Session, limit: int = 100) -> list[ResearchAnalytics]:
    return (
        db.query(ResearchAnalytics)
        .order_by(ResearchAnalytics.timestamp.desc())
        .limit(limit)
        .all()
    )


def analytics_totals(db: Session) -> dict:
    """Aggregates over the whole ledger for the cache dashboard."""
    total, hits, failures, fallbacks, avg_ms = db.query(
        func.count(ResearchAnalytics.id),
        func.sum(case((ResearchAnalytics.cached.is_(True), 1), else_=0)),
        func.sum(case((ResearchAnalytics.success.is_(False), 1), else_=0)),
        func.sum(case((ResearchAnalytics.fallback.is_(True), 1), else_=0)),
        func.coalesce(func.avg(ResearchAnalytics.response_time_ms), 0),
    ).one()
    return {
        "total": int(total or 0),
        "hits": int(hits or 0),
        "failures": int(failures or 0),
        "fallbacks": int(fallbacks or 0),
        "avg_response_time_ms": float(avg_ms or 0),
    }


class ResearchRepository:
    """Thin wrapper for dependency injection; delegates to module functions."""

    get_cache_entry = staticmethod(get_cache_entry)
    touch_cache_entry = staticmethod(touch_cache_entry)
    delete_cache_entry = staticmethod(delete_cache_entry)
    upsert_cache_entry = staticmethod(upsert_cache_entry)
    delete_cache_entries_before = staticmethod(delete_cache_entries_before)
    clear_cache_entries = staticmethod(clear_cache_entries)
    list_cache_entries = staticmethod(list_cache_entries)
    cache_totals = staticmethod(cache_totals)
    get_rate_limit_state = staticmethod(get_rate_limit_state)
    create_rate_limit_state = staticmethod(create_rate_limit_state)
    save_rate_limit_state = staticmethod(save_rate_limit_state)
    add_analytics = staticmethod(add_analytics)
    list_analytics = staticmethod(list_analytics)
    analytics_totals = staticmethod(analytics_totals)
