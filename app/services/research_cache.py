"""
Server-side response cache for research queries (database table research_cache).
Read-through for the orchestrator: check() before calling Perplexity, store() after a genuine answer.
All database errors are handled internally; never raise to caller. A broken cache means a miss.
"""
import asyncio
import json
import logging
from datetime import datetime, timedelta
from typing import Callable

from app.config import get_settings
from app.database import SessionLocal
from app.repositories.research_repository import ResearchRepository
from app.services.response_cache import CacheLookup, CACHE_MISS
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)


class ServerResearchCache:
    """Database-backed ResponseCache with TTL on created_at and hit counters."""

    def __init__(
        self,
        session_factory: Callable = SessionLocal,
        repository: ResearchRepository | None = None,
        ttl: timedelta | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._repo = repository or ResearchRepository()
        self._ttl = ttl if ttl is not None else timedelta(days=get_settings().research_cache_ttl_days)
        self._clock = clock

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    async def _run(self, fn):
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, fn)

    def _check_sync(self, query_hash: str) -> CacheLookup:
        db = self._session_factory()
        try:
            entry = self._repo.get_cache_entry(db, query_hash)
            if entry is None:
                logger.debug("Research cache miss: %s", query_hash)
                return CACHE_MISS
            now = self._clock()
            if now - entry.created_at > self._ttl:
                logger.debug("Research cache expired: %s (created %s)", query_hash, entry.created_at)
                self._repo.delete_cache_entry(db, query_hash)
                return CACHE_MISS
            response = entry.response_text
            citations = tuple(json.loads(entry.citations)) if entry.citations else ()
            entry = self._repo.touch_cache_entry(db, entry, now)
            logger.info("Research cache hit: %s (access_count=%s)", query_hash, entry.access_count)
            return CacheLookup(cached=True, response=response, citations=citations)
        finally:
            db.close()

    async def check(self, query_hash: str) -> CacheLookup:
        try:
            return await self._run(lambda: self._check_sync(query_hash))
        except Exception as e:
            logger.warning("Research cache check failed for %s: %s", query_hash, e, exc_info=False)
            return CACHE_MISS

    async def store(
        self,
        query_hash: str,
        query_text: str,
        system_prompt: str,
        response: str,
        model: str | None = None,
        citations: list[str] | None = None,
    ) -> None:
        def _do():
            db = self._session_factory()
            try:
                self._repo.upsert_cache_entry(
                    db, query_hash, query_text, system_prompt, response, model, self._clock(), citations
                )
            finally:
                db.close()

        try:
            await self._run(_do)
            logger.info("Cached research response: %s", query_hash)
        except Exception as e:
            logger.warning("Research cache store failed for %s: %s", query_hash, e, exc_info=False)

    async def clear(self) -> None:
        def _do():
            db = self._session_factory()
            try:
                return self._repo.clear_cache_entries(db)
            finally:
                db.close()

        try:
            deleted = await self._run(_do)
            logger.info("Research cache cleared (%s entries)", deleted)
        except Exception as e:
            logger.warning("Research cache clear failed: %s", e, exc_info=False)

    async def purge_expired(self) -> int:
        """Delete every entry past TTL. Returns number of rows removed (0 on error)."""
        def _do():
            db = self._session_factory()
            try:
                return self._repo.delete_cache_entries_before(db, self._clock() - self._ttl)
            finally:
                db.close()

        try:
            return await self._run(_do)
        except Exception as e:
            logger.warning("Research cache purge failed: %s", e, exc_info=False)
            return 0

    async def list_entries(self, limit: int = 50) -> list[dict]:
        def _do():
            db = self._session_factory()
            try:
                return [
                    {
                        "query_hash": e.query_hash,
                        "query_text": e.query_text,
                        "model": e.model,
                        "created_at": e.created_at,
                        "last_accessed_at": e.last_accessed_at,
                        "access_count": e.access_count,
                    }
                    for e in self._repo.list_cache_entries(db, limit)
                ]
            finally:
                db.close()

        return await self._run(_do)

    async def totals(self) -> tuple[int, int]:
        """(entries, total accesses) for the dashboard."""
        def _do():
            db = self._session_factory()
            try:
                return self._repo.cache_totals(db)
            finally:
                db.close()

        return await self._run(_do)
