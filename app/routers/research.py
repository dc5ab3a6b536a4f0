"""
Research endpoints (Perplexity behind cache + rate limit):
- POST /api/ai/research — research query (anonymous or authenticated; cached)
- GET /api/ai/research/health — upstream configured / database reachable
- GET /api/ai/research/stats — cache hit ratio and latency (admin)
- GET /api/ai/research/analytics — recent ledger rows (admin)
- GET /api/ai/research/cache — cached entries (admin)
- DELETE /api/ai/research/cache — clear server cache (admin)
- POST /api/ai/research/cache/purge — delete expired entries (admin)
- GET/PUT /api/ai/research/rate-limit — limiter state / change limits (admin)
"""
import logging
import math

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import text
from sqlalchemy.orm import Session

from app.auth import get_current_user_admin, get_optional_user
from app.core.research import get_research_service
from app.database import get_db
from app.schemas.auth import TokenPayload
from app.schemas.research import (
    RateLimitStateOut,
    RateLimitUpdate,
    ResearchAnalyticsOut,
    ResearchCacheEntryOut,
    ResearchRequest,
    ResearchResponse,
    ResearchStatsResponse,
)
from app.services.research_errors import ResearchError, ResearchErrorType
from app.services.research_service import ResearchService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ai/research", tags=["research"])

_STATUS_BY_ERROR = {
    ResearchErrorType.RATE_LIMIT: status.HTTP_429_TOO_MANY_REQUESTS,
    ResearchErrorType.AUTH_ERROR: status.HTTP_403_FORBIDDEN,
    ResearchErrorType.TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
}

_DETAIL_BY_ERROR = {
    ResearchErrorType.RATE_LIMIT: "Rate limit exceeded. Please try again later.",
    ResearchErrorType.AUTH_ERROR: "Authentication error with AI service. Please contact support.",
    ResearchErrorType.TIMEOUT: "AI service timed out. Please try again later.",
}


def research_http_error(err: ResearchError) -> HTTPException:
    """User-facing HTTPException for a ResearchError; rate limits carry Retry-After (seconds)."""
    code = _STATUS_BY_ERROR.get(err.error_type, status.HTTP_502_BAD_GATEWAY)
    detail = _DETAIL_BY_ERROR.get(
        err.error_type, "AI service temporarily unavailable. Please try again later."
    )
    headers = None
    if err.error_type is ResearchErrorType.RATE_LIMIT:
        seconds = math.ceil((err.retry_after_ms or 60_000) / 1000)
        headers = {"Retry-After": str(max(1, seconds))}
    return HTTPException(status_code=code, detail=detail, headers=headers)


async def run_research(
    service: ResearchService, body: ResearchRequest, user: TokenPayload | None
) -> ResearchResponse:
    try:
        result = await service.generate(body, user_id=user.sub if user else None)
    except ResearchError as e:
        raise research_http_error(e) from e
    return ResearchResponse(
        text=result.text,
        cached=result.cached,
        fallback=result.fallback,
        citations=result.citations,
    )


@router.post("", response_model=ResearchResponse)
async def research(
    body: ResearchRequest,
    user: TokenPayload | None = Depends(get_optional_user),
    service: ResearchService = Depends(get_research_service),
):
    """Research query. Served from cache when the same (query, system prompt, model) was answered recently."""
    return await run_research(service, body, user)


@router.get("/health")
def research_health(
    db: Session = Depends(get_db),
    service: ResearchService = Depends(get_research_service),
):
    """Health check: Perplexity key configured, database reachable."""
    try:
        db.execute(text("SELECT 1"))
        database = "ok"
    except Exception as e:
        logger.warning("Research health DB check failed: %s", e)
        database = "error"
    return {
        "upstream": "configured" if service.upstream.configured else "not_configured",
        "database": database,
    }


@router.get("/stats", response_model=ResearchStatsResponse)
async def research_stats(
    _admin: TokenPayload = Depends(get_current_user_admin),
    service: ResearchService = Depends(get_research_service),
):
    """Hit ratio and latency over all recorded calls, plus current cache size (admin only)."""
    stats = await service.analytics.get_stats()
    entries, accesses = await service.cache.totals()
    return ResearchStatsResponse(**stats, cache_entries=entries, cache_accesses=accesses)


@router.get("/analytics", response_model=list[ResearchAnalyticsOut])
async def research_analytics(
    limit: int = Query(100, ge=1, le=1000),
    _admin: TokenPayload = Depends(get_current_user_admin),
    service: ResearchService = Depends(get_research_service),
):
    rows = await service.analytics.list_recent(limit)
    return [ResearchAnalyticsOut(**r) for r in rows]


@router.get("/cache", response_model=list[ResearchCacheEntryOut])
async def research_cache_entries(
    limit: int = Query(50, ge=1, le=500),
    _admin: TokenPayload = Depends(get_current_user_admin),
    service: ResearchService = Depends(get_research_service),
):
    rows = await service.cache.list_entries(limit)
    return [ResearchCacheEntryOut(**r) for r in rows]


@router.delete("/cache", status_code=status.HTTP_204_NO_CONTENT)
async def clear_research_cache(
    _admin: TokenPayload = Depends(get_current_user_admin),
    service: ResearchService = Depends(get_research_service),
):
    await service.cache.clear()


@router.post("/cache/purge")
async def purge_research_cache(
    _admin: TokenPayload = Depends(get_current_user_admin),
    service: ResearchService = Depends(get_research_service),
):
    """Delete cache entries older than the TTL."""
    purged = await service.cache.purge_expired()
    return {"purged": purged}


@router.get("/rate-limit", response_model=RateLimitStateOut)
async def research_rate_limit(
    _admin: TokenPayload = Depends(get_current_user_admin),
    service: ResearchService = Depends(get_research_service),
):
    return RateLimitStateOut(**await service.rate_limiter.get_state())


@router.put("/rate-limit", response_model=RateLimitStateOut)
async def update_research_rate_limit(
    body: RateLimitUpdate,
    _admin: TokenPayload = Depends(get_current_user_admin),
    service: ResearchService = Depends(get_research_service),
):
    state = await service.rate_limiter.update_limits(body.requests_per_minute, body.requests_per_day)
    return RateLimitStateOut(**state)
