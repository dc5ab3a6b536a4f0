"""
Research request orchestration (server side).

    HASH -> CHECK_CACHE -> CHECK_RATE_LIMIT <-> WAIT -> INVOKE -> STORE

Terminal outcomes: served_from_cache, served_fresh, served_fallback, rejected_rate_limited,
upstream_exhausted, hard_failure. Analytics is written exactly once per terminal outcome.
Cache and analytics stores swallow their own errors, so they never fail a request.
Retry timing comes from backoff.plan_retry; the attempt counter is shared between
local rate-limit waits and upstream retries.
"""
import asyncio
import enum
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from app.config import get_settings
from app.schemas.research import ResearchRequest
from app.services.backoff import RetryDecision, plan_retry
from app.services.perplexity_client import (
    DEFAULT_SYSTEM_PROMPT,
    PerplexityClient,
    build_messages,
    extract_completion,
    map_model,
)
from app.services.query_hash import create_query_hash
from app.services.research_analytics import ResearchAnalyticsRecorder
from app.services.research_errors import ResearchError, ResearchErrorType, classify_error
from app.services.research_rate_limiter import ResearchRateLimiter
from app.services.response_cache import ResponseCache

logger = logging.getLogger(__name__)

DEFAULT_RATE_LIMIT_WAIT_MS = 60_000


class ResearchState(str, enum.Enum):
    CHECK_RATE_LIMIT = "check_rate_limit"
    INVOKE = "invoke"
    DONE = "done"


class ResearchOutcome(str, enum.Enum):
    SERVED_FROM_CACHE = "served_from_cache"
    SERVED_FRESH = "served_fresh"
    SERVED_FALLBACK = "served_fallback"
    REJECTED_RATE_LIMITED = "rejected_rate_limited"
    UPSTREAM_EXHAUSTED = "upstream_exhausted"
    HARD_FAILURE = "hard_failure"


@dataclass
class ResearchResult:
    text: str
    query_hash: str
    outcome: ResearchOutcome
    citations: list[str] = field(default_factory=list)

    @property
    def cached(self) -> bool:
        return self.outcome is ResearchOutcome.SERVED_FROM_CACHE

    @property
    def fallback(self) -> bool:
        return self.outcome is ResearchOutcome.SERVED_FALLBACK


def simulated_research(user_content: str) -> str:
    """Placeholder text for development without an API key. Never cached."""
    return (
        f"Here's some research on {user_content}:\n\n"
        "The best approach for this exercise is to focus on proper form and controlled movements. "
        "Studies have shown that progressive overload is key to muscle development, but it's equally "
        "important to maintain proper technique to prevent injuries.\n\n"
        "When incorporating this into your routine, aim for 3-4 sets of 8-12 repetitions for hypertrophy "
        "or 4-6 sets of 3-5 repetitions for strength development.\n\n"
        "Remember to allow adequate recovery time between training sessions targeting the same muscle groups."
    )


class ResearchService:
    def __init__(
        self,
        cache: ResponseCache,
        rate_limiter: ResearchRateLimiter,
        analytics: ResearchAnalyticsRecorder,
        upstream: PerplexityClient,
        *,
        max_retries: int | None = None,
        backoff_base_ms: int | None = None,
        backoff_max_ms: int | None = None,
        rate_limit_max_wait_ms: int | None = None,
        simulate_without_key: bool | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        monotonic: Callable[[], float] = time.monotonic,
        rand: Callable[[], float] = random.random,
    ):
        settings = get_settings()
        self._cache = cache
        self._rate_limiter = rate_limiter
        self._analytics = analytics
        self._upstream = upstream
        self._max_retries = settings.research_max_retries if max_retries is None else max_retries
        self._base_ms = settings.research_backoff_base_ms if backoff_base_ms is None else backoff_base_ms
        self._max_ms = settings.research_backoff_max_ms if backoff_max_ms is None else backoff_max_ms
        self._max_wait_ms = (
            settings.research_rate_limit_max_wait_ms if rate_limit_max_wait_ms is None else rate_limit_max_wait_ms
        )
        self._simulate = (
            settings.research_simulate_without_key if simulate_without_key is None else simulate_without_key
        )
        self._sleep = sleep
        self._monotonic = monotonic
        self._rand = rand

    @property
    def cache(self) -> ResponseCache:
        return self._cache

    @property
    def rate_limiter(self) -> ResearchRateLimiter:
        return self._rate_limiter

    @property
    def analytics(self) -> ResearchAnalyticsRecorder:
        return self._analytics

    @property
    def upstream(self) -> PerplexityClient:
        return self._upstream

    def _plan(self, attempt: int, error: ResearchError) -> RetryDecision:
        return plan_retry(
            attempt,
            error.error_type,
            error.retry_after_ms,
            max_retries=self._max_retries,
            base_ms=self._base_ms,
            max_ms=self._max_ms,
            max_wait_ms=self._max_wait_ms,
            rand=self._rand,
        )

    async def generate(self, request: ResearchRequest, user_id: str | None = None) -> ResearchResult:
        started = self._monotonic()
        system_prompt = request.system_content or DEFAULT_SYSTEM_PROMPT
        model = request.model or get_settings().research_default_model

        async def record(success: bool, *, cached: bool = False, error: ResearchError | None = None,
                         fallback: bool = False, error_message: str | None = None) -> None:
            elapsed_ms = int((self._monotonic() - started) * 1000)
            await self._analytics.record(
                user_id,
                request.user_content,
                system_prompt,
                model,
                success,
                elapsed_ms,
                error_message or (error.message if error else None),
                cached,
                error_type=error.error_type.value if error else None,
                fallback=fallback,
            )

        # HASH
        query_hash = create_query_hash(request.user_content, system_prompt, model)
        logger.info("Research query %s (model=%s): %.100s", query_hash[:12], model, request.user_content)

        # CHECK_CACHE
        lookup = await self._cache.check(query_hash)
        if lookup.cached and lookup.response is not None:
            await record(True, cached=True)
            return ResearchResult(
                lookup.response,
                query_hash,
                ResearchOutcome.SERVED_FROM_CACHE,
                citations=list(lookup.citations) if request.return_citations else [],
            )

        if not self._upstream.configured:
            if self._simulate:
                logger.info("Perplexity API key missing; returning simulated research (not cached)")
                await record(True, fallback=True)
                return ResearchResult(
                    simulated_research(request.user_content), query_hash, ResearchOutcome.SERVED_FALLBACK
                )
            error = ResearchError("Perplexity API key is not configured", ResearchErrorType.AUTH_ERROR)
            error.outcome = ResearchOutcome.HARD_FAILURE
            logger.error(error.message)
            await record(False, error=error)
            raise error

        attempt = 0
        state = ResearchState.CHECK_RATE_LIMIT
        completion = None
        while state is not ResearchState.DONE:
            if state is ResearchState.CHECK_RATE_LIMIT:
                decision = await self._rate_limiter.check()
                if decision.allowed:
                    state = ResearchState.INVOKE
                    continue
                error = ResearchError(
                    f"Rate limit exceeded. Please try again later. ({decision.limit_type} limit)",
                    ResearchErrorType.RATE_LIMIT,
                    retry_after_ms=decision.retry_after_ms,
                )
                retry = self._plan(attempt, error)
                if not retry.retry:
                    if error.retry_after_ms is None:
                        error.retry_after_ms = DEFAULT_RATE_LIMIT_WAIT_MS
                    error.outcome = ResearchOutcome.REJECTED_RATE_LIMITED
                    logger.warning("%s (attempt %s/%s)", error.message, attempt, self._max_retries)
                    await record(False, error=error)
                    raise error
                logger.info(
                    "Rate limited locally, retry %s/%s after %sms",
                    attempt + 1, self._max_retries, retry.delay_ms,
                )
                await self._sleep(retry.delay_ms / 1000)
                attempt += 1
                continue

            # INVOKE
            try:
                payload = await self._upstream.complete(
                    build_messages(request.user_content, system_prompt),
                    map_model(model),
                    temperature=request.temperature,
                    max_tokens=request.max_tokens,
                )
                completion = extract_completion(payload, with_citations=True)
                state = ResearchState.DONE
            except Exception as e:
                error = classify_error(e)
                retry = self._plan(attempt, error)
                if retry.retry:
                    logger.info(
                        "Perplexity %s, retry %s/%s after %sms",
                        error.error_type.value, attempt + 1, self._max_retries, retry.delay_ms,
                    )
                    await self._sleep(retry.delay_ms / 1000)
                    attempt += 1
                    state = ResearchState.CHECK_RATE_LIMIT
                    continue
                if error.retryable:
                    message = f"{error.message} (gave up after {attempt} retries)"
                    error.outcome = ResearchOutcome.UPSTREAM_EXHAUSTED
                    logger.warning("Perplexity call exhausted retries: %s", message)
                else:
                    message = error.message
                    error.outcome = ResearchOutcome.HARD_FAILURE
                    logger.error("Perplexity call failed: %s", message)
                await record(False, error=error, error_message=message)
                if error is e:
                    raise
                raise error from e

        # STORE
        # Citations are cached whether or not this request asked for them
        await self._cache.store(
            query_hash, request.user_content, system_prompt, completion.text, model,
            citations=completion.citations,
        )
        await record(True)
        return ResearchResult(
            completion.text,
            query_hash,
            ResearchOutcome.SERVED_FRESH,
            citations=completion.citations if request.return_citations else [],
        )
