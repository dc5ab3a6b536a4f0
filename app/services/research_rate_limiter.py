"""
Fixed-window rate limit for outgoing Perplexity calls, shared by all server workers.
- One row (research_rate_limits.id = "default") holds per-minute and per-day counters.
- A window whose last reset is >= 1 whole window ago counts as zero.
- Minute limit is checked before day limit.
- Storage errors fail open: availability matters more than the cost cap.
Read-then-write without locking; concurrent requests may slightly over-admit.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Literal

from app.config import get_settings
from app.database import SessionLocal
from app.repositories.research_repository import ResearchRepository
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)

MINUTE = timedelta(minutes=1)
DAY = timedelta(days=1)

LimitType = Literal["minute", "day"]


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_ms: int | None = None
    limit_type: LimitType | None = None


ALLOWED = RateLimitDecision(allowed=True)


def _whole_windows(elapsed: timedelta, window: timedelta) -> int:
    return int(elapsed // window) if elapsed > timedelta(0) else 0


def _remaining_ms(last_reset: datetime, window: timedelta, now: datetime) -> int:
    return max(0, int((last_reset + window - now).total_seconds() * 1000))


class ResearchRateLimiter:
    def __init__(
        self,
        session_factory: Callable = SessionLocal,
        repository: ResearchRepository | None = None,
        requests_per_minute: int | None = None,
        requests_per_day: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        settings = get_settings()
        self._session_factory = session_factory
        self._repo = repository or ResearchRepository()
        self._default_per_minute = (
            settings.research_rate_limit_per_minute if requests_per_minute is None else requests_per_minute
        )
        self._default_per_day = (
            settings.research_rate_limit_per_day if requests_per_day is None else requests_per_day
        )
        self._clock = clock

    def _check_sync(self) -> RateLimitDecision:
        db = self._session_factory()
        try:
            now = self._clock()
            state = self._repo.get_rate_limit_state(db)
            if state is None:
                state = self._repo.create_rate_limit_state(
                    db, self._default_per_minute, self._default_per_day, now
                )

            minute_rolled = _whole_windows(now - state.last_reset_minute, MINUTE) >= 1
            day_rolled = _whole_windows(now - state.last_reset_day, DAY) >= 1
            minute_count = 0 if minute_rolled else state.current_minute_count
            day_count = 0 if day_rolled else state.current_day_count

            if minute_count >= state.requests_per_minute:
                logger.warning(
                    "Research minute rate limit exceeded (%s/%s)", minute_count, state.requests_per_minute
                )
                return RateLimitDecision(
                    allowed=False,
                    retry_after_ms=_remaining_ms(state.last_reset_minute, MINUTE, now),
                    limit_type="minute",
                )
            if day_count >= state.requests_per_day:
                logger.warning(
                    "Research daily rate limit exceeded (%s/%s)", day_count, state.requests_per_day
                )
                return RateLimitDecision(
                    allowed=False,
                    retry_after_ms=_remaining_ms(state.last_reset_day, DAY, now),
                    limit_type="day",
                )

            state.current_minute_count = minute_count + 1
            state.current_day_count = day_count + 1
            if minute_rolled:
                state.last_reset_minute = now
            if day_rolled:
                state.last_reset_day = now
            state.updated_at = now
            self._repo.save_rate_limit_state(db, state)
            return ALLOWED
        finally:
            db.close()

    async def check(self) -> RateLimitDecision:
        try:
            loop = asyncio.get_event_loop()
            return await loop.run_in_executor(None, self._check_sync)
        except Exception as e:
            logger.warning("Research rate limit check failed, allowing request: %s", e, exc_info=False)
            return ALLOWED

    def _state_sync(self) -> dict:
        db = self._session_factory()
        try:
            state = self._repo.get_rate_limit_state(db)
            if state is None:
                state = self._repo.create_rate_limit_state(
                    db, self._default_per_minute, self._default_per_day, self._clock()
                )
            return {
                "requests_per_minute": state.requests_per_minute,
                "requests_per_day": state.requests_per_day,
                "current_minute_count": state.current_minute_count,
                "current_day_count": state.current_day_count,
                "last_reset_minute": state.last_reset_minute,
                "last_reset_day": state.last_reset_day,
            }
        finally:
            db.close()

    async def get_state(self) -> dict:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._state_sync)

    async def update_limits(self, requests_per_minute: int, requests_per_day: int) -> dict:
        """Change the configured limits; counters and windows are left as they are."""
        def _do():
            db = self._session_factory()
            try:
                state = self._repo.get_rate_limit_state(db)
                if state is None:
                    state = self._repo.create_rate_limit_state(
                        db, requests_per_minute, requests_per_day, self._clock()
                    )
                state.requests_per_minute = requests_per_minute
                state.requests_per_day = requests_per_day
                state.updated_at = self._clock()
                self._repo.save_rate_limit_state(db, state)
            finally:
                db.close()

        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, _do)
        logger.info("Research rate limits updated: %s/minute, %s/day", requests_per_minute, requests_per_day)
        return await self.get_state()
