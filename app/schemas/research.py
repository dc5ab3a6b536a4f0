from datetime import datetime
from pydantic import BaseModel, Field


# ---- Research query ----

class ResearchRequest(BaseModel):
    user_content: str = Field(..., min_length=1, max_length=8000)
    system_content: str | None = Field(None, max_length=8000, description="Optional system prompt; default is the fitness-expert prompt")
    model: str = "sonar-medium-chat"
    temperature: float = Field(0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(1000, ge=1, le=8000)
    return_citations: bool = False


class ResearchResponse(BaseModel):
    text: str
    cached: bool = False
    fallback: bool = False
    citations: list[str] = []


# ---- Workout research (caller of the research path) ----

class WorkoutResearchRequest(BaseModel):
    goal: str = Field(..., min_length=1, max_length=50)
    experience: str = Field("beginner", max_length=50)
    days_per_week: int = Field(3, ge=1, le=7)
    duration: int = Field(45, ge=10, le=240, description="Minutes per session")
    equipment: str = Field("bodyweight", max_length=200)
    preferences: str | None = Field(None, max_length=1000)
    injuries: str | None = Field(None, max_length=1000)
    include_cardio: bool = False
    include_mobility: bool = False


# ---- Dashboard ----

class ResearchStatsResponse(BaseModel):
    total: int
    hits: int
    misses: int
    hit_ratio: float
    avg_response_time_ms: float
    failures: int = 0
    fallbacks: int = 0
    cache_entries: int = 0
    cache_accesses: int = 0


class ResearchAnalyticsOut(BaseModel):
    id: str
    user_id: str | None = None
    query_text: str
    model: str | None = None
    success: bool
    error_message: str | None = None
    error_type: str | None = None
    response_time_ms: int
    timestamp: datetime
    cached: bool
    fallback: bool = False


class ResearchCacheEntryOut(BaseModel):
    query_hash: str
    query_text: str
    model: str | None = None
    created_at: datetime
    last_accessed_at: datetime
    access_count: int


class RateLimitStateOut(BaseModel):
    requests_per_minute: int
    requests_per_day: int
    current_minute_count: int
    current_day_count: int
    last_reset_minute: datetime
    last_reset_day: datetime


class RateLimitUpdate(BaseModel):
    requests_per_minute: int = Field(..., ge=1, le=10_000)
    requests_per_day: int = Field(..., ge=1, le=1_000_000)
