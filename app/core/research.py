"""
Process-wide ResearchService: one shared httpx client for Perplexity, stores bound to SessionLocal.
Built lazily on first request; closed on shutdown.
"""
import logging

import httpx

from app.config import get_settings
from app.services.perplexity_client import PerplexityClient
from app.services.research_analytics import ResearchAnalyticsRecorder
from app.services.research_cache import ServerResearchCache
from app.services.research_rate_limiter import ResearchRateLimiter
from app.services.research_service import ResearchService

logger = logging.getLogger(__name__)

_research_service: ResearchService | None = None
_http_client: httpx.AsyncClient | None = None


def build_research_service(http_client: httpx.AsyncClient | None = None) -> ResearchService:
    """Wire a ResearchService from settings. Stores use the default SessionLocal."""
    settings = get_settings()
    upstream = PerplexityClient(
        api_key=settings.perplexity_api_key,
        base_url=settings.perplexity_base_url,
        timeout_seconds=settings.perplexity_timeout_seconds,
        http_client=http_client,
    )
    return ResearchService(
        cache=ServerResearchCache(),
        rate_limiter=ResearchRateLimiter(),
        analytics=ResearchAnalyticsRecorder(),
        upstream=upstream,
    )


def get_research_service() -> ResearchService:
    """FastAPI dependency: lazy singleton."""
    global _research_service, _http_client
    if _research_service is None:
        _http_client = httpx.AsyncClient(timeout=get_settings().perplexity_timeout_seconds)
        _research_service = build_research_service(_http_client)
        if not _research_service.upstream.configured:
            logger.warning("PERPLEXITY_API_KEY is not set; research requests will fail or use placeholders")
    return _research_service


async def close_research_service() -> None:
    """Graceful shutdown: close the shared HTTP client."""
    global _research_service, _http_client
    if _http_client is not None:
        try:
            await _http_client.aclose()
        except Exception as e:
            logger.warning("Perplexity HTTP client close error: %s", e)
    _http_client = None
    _research_service = None
