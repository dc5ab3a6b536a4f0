from app.services.backoff import calculate_backoff, plan_retry
from app.services.research_errors import ResearchErrorType


def test_backoff_grows_exponentially_without_jitter():
    assert calculate_backoff(0, rand=lambda: 0.0) == 1000
    assert calculate_backoff(1, rand=lambda: 0.0) == 2000
    assert calculate_backoff(2, rand=lambda: 0.0) == 4000
    assert calculate_backoff(3, rand=lambda: 0.0) == 8000


def test_backoff_is_capped_and_jitter_stays_within_twenty_percent():
    assert calculate_backoff(10, rand=lambda: 0.0) == 30_000
    for attempt in range(12):
        value = calculate_backoff(attempt, rand=lambda: 0.9999)
        assert value <= 30_000 * 1.2
        assert value >= min(2 ** attempt * 1000, 30_000)


def test_backoff_respects_custom_base_and_max():
    assert calculate_backoff(2, base_ms=100, max_ms=250, rand=lambda: 0.0) == 250
    assert calculate_backoff(1, base_ms=100, max_ms=250, rand=lambda: 0.5) == 220


def test_plan_retry_uses_backoff_for_next_attempt():
    decision = plan_retry(0, ResearchErrorType.SERVER_ERROR, rand=lambda: 0.0)
    assert decision.retry
    assert decision.delay_ms == 2000


def test_plan_retry_prefers_retry_after_hint():
    decision = plan_retry(1, ResearchErrorType.RATE_LIMIT, 5000, rand=lambda: 0.0)
    assert decision.retry
    assert decision.delay_ms == 5000


def test_plan_retry_gives_up_when_hint_exceeds_max_wait():
    decision = plan_retry(0, ResearchErrorType.RATE_LIMIT, 3_600_000, max_wait_ms=60_000)
    assert not decision.retry


def test_plan_retry_gives_up_after_max_retries():
    assert plan_retry(2, ResearchErrorType.TIMEOUT, max_retries=3).retry
    assert not plan_retry(3, ResearchErrorType.TIMEOUT, max_retries=3).retry


def test_plan_retry_never_retries_non_retryable_errors():
    for error_type in (
        ResearchErrorType.AUTH_ERROR,
        ResearchErrorType.API_ERROR,
        ResearchErrorType.EMPTY_RESPONSE,
    ):
        assert not plan_retry(0, error_type).retry
