from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Database
    database_url: str = "sqlite:///./app.db"

    # JWT (tokens are issued by the auth service; we only decode them)
    secret_key: str = "your-secret-key-change-in-production"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24 * 7  # 7 days

    # Frontend URL for CORS
    frontend_url: str = "http://localhost:3000"

    # Perplexity (research API)
    perplexity_api_key: str = ""
    perplexity_base_url: str = "https://api.perplexity.ai"
    perplexity_timeout_seconds: float = 60.0
    research_default_model: str = "sonar-medium-chat"
    # Development only: return a placeholder instead of failing when no API key is set
    research_simulate_without_key: bool = False

    # Server response cache
    research_cache_ttl_days: int = 7

    # Fixed-window rate limits (seed values for the singleton row)
    research_rate_limit_per_minute: int = 10
    research_rate_limit_per_day: int = 1000
    # Longer waits (e.g. daily limit) are returned to the caller instead of slept
    research_rate_limit_max_wait_ms: int = 60_000

    # Retry / backoff
    research_max_retries: int = 3
    research_backoff_base_ms: int = 1000
    research_backoff_max_ms: int = 30_000

    # Client SDK cache and queue
    client_cache_ttl_hours: int = 24
    client_cache_max_entries: int = 50
    client_cache_dir: str = ""  # empty = in-memory storage
    client_queue_spacing_ms: int = 500

    class Config:
        env_file = ".env"


@lru_cache
def get_settings() -> Settings:
    return Settings()
