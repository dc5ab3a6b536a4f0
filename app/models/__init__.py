from app.models.research_cache import ResearchCacheEntry
from app.models.research_rate_limit import ResearchRateLimit, RATE_LIMIT_ROW_ID
from app.models.research_analytics import ResearchAnalytics

__all__ = [
    "ResearchCacheEntry", "ResearchRateLimit", "RATE_LIMIT_ROW_ID", "ResearchAnalytics",
]
