"""
Retry timing for research calls.
calculate_backoff: exponential delay with up to 20% jitter.
plan_retry: pure policy (attempt, error type, hint) -> retry or give up, and how long to wait.
"""
import math
import random
from dataclasses import dataclass
from typing import Callable

from app.services.research_errors import ResearchErrorType, RETRYABLE_ERROR_TYPES

DEFAULT_BASE_MS = 1000
DEFAULT_MAX_MS = 30_000
JITTER_RATIO = 0.2


def calculate_backoff(
    attempt: int,
    base_ms: int = DEFAULT_BASE_MS,
    max_ms: int = DEFAULT_MAX_MS,
    rand: Callable[[], float] = random.random,
) -> int:
    backoff = min((2 ** max(0, attempt)) * base_ms, max_ms)
    jitter = rand() * JITTER_RATIO * backoff
    return math.floor(backoff + jitter)


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay_ms: int = 0


def plan_retry(
    attempt: int,
    error_type: ResearchErrorType,
    retry_after_ms: int | None = None,
    *,
    max_retries: int = 3,
    base_ms: int = DEFAULT_BASE_MS,
    max_ms: int = DEFAULT_MAX_MS,
    max_wait_ms: int | None = None,
    rand: Callable[[], float] = random.random,
) -> RetryDecision:
    """
    attempt is the number of retries already spent (0 on first failure).
    A server hint (retry-after) wins over computed backoff; a hint longer than
    max_wait_ms means waiting in-process is pointless, so give up.
    """
    if error_type not in RETRYABLE_ERROR_TYPES or attempt >= max_retries:
        return RetryDecision(retry=False)
    if retry_after_ms is not None and retry_after_ms >= 0:
        if max_wait_ms is not None and retry_after_ms > max_wait_ms:
            return RetryDecision(retry=False)
        return RetryDecision(retry=True, delay_ms=int(retry_after_ms))
    return RetryDecision(retry=True, delay_ms=calculate_backoff(attempt + 1, base_ms, max_ms, rand))
