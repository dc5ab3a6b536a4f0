"""
Analytics ledger for research calls: one row per terminal outcome (cache hit, fresh answer, failure).
Writes are best-effort: errors are logged, never raised to the request path.
"""
import asyncio
import logging
from datetime import datetime
from typing import Callable

from app.database import SessionLocal
from app.models.research_analytics import ResearchAnalytics
from app.repositories.research_repository import ResearchRepository
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)


class ResearchAnalyticsRecorder:
    def __init__(
        self,
        session_factory: Callable = SessionLocal,
        repository: ResearchRepository | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._repo = repository or ResearchRepository()
        self._clock = clock

    async def record(
        self,
        user_id: str | None,
        query_text: str,
        system_prompt: str | None,
        model: str | None,
        success: bool,
        response_time_ms: int,
        error_message: str | None = None,
        cached: bool = False,
        *,
        error_type: str | None = None,
        fallback: bool = False,
    ) -> None:
        row = ResearchAnalytics(
            user_id=user_id,
            query_text=query_text or "",
            system_prompt=system_prompt,
            model=model,
            success=success,
            error_message=error_message,
            error_type=error_type,
            response_time_ms=max(0, int(response_time_ms)),
            timestamp=self._clock(),
            cached=cached,
            fallback=fallback,
        )

        def _do():
            db = self._session_factory()
            try:
                self._repo.add_analytics(db, row)
            finally:
                db.close()

        try:
            loop = asyncio.get_event_loop()
            await loop.run_in_executor(None, _do)
        except Exception as e:
            logger.warning("Recording research analytics failed: %s", e, exc_info=False)

    async def get_stats(self) -> dict:
        """Hit/miss totals and average latency over the whole ledger."""
        def _do():
            db = self._session_factory()
            try:
                return self._repo.analytics_totals(db)
            finally:
                db.close()

        loop = asyncio.get_event_loop()
        totals = await loop.run_in_executor(None, _do)
        total = totals["total"]
        hits = totals["hits"]
        return {
            "total": total,
            "hits": hits,
            "misses": total - hits,
            "hit_ratio": hits / total if total else 0.0,
            "avg_response_time_ms": totals["avg_response_time_ms"],
            "failures": totals["failures"],
            "fallbacks": totals["fallbacks"],
        }

    async def list_recent(self, limit: int = 100) -> list[dict]:
        def _do():
            db = self._session_factory()
            try:
                return [
                    {
                        "id": r.id,
                        "user_id": r.user_id,
                        "query_text": r.query_text,
                        "model": r.model,
                        "success": r.success,
                        "error_message": r.error_message,
                        "error_type": r.error_type,
                        "response_time_ms": r.response_time_ms,
                        "timestamp": r.timestamp,
                        "cached": r.cached,
                        "fallback": r.fallback,
                    }
                    for r in self._repo.list_analytics(db, limit)
                ]
            finally:
                db.close()

        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, _do)
