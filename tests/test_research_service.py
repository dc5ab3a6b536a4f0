import asyncio
import json

import httpx
import pytest

from app.schemas.research import ResearchRequest
from app.services.perplexity_client import PerplexityClient
from app.services.research_analytics import ResearchAnalyticsRecorder
from app.services.research_cache import ServerResearchCache
from app.services.research_errors import ResearchError, ResearchErrorType
from app.services.research_rate_limiter import ResearchRateLimiter
from app.services.research_service import ResearchOutcome, ResearchService


def run_async(coro):
    return asyncio.run(coro)


def completion(text="Squat with a neutral spine.", **extra):
    return {"choices": [{"message": {"role": "assistant", "content": text}}], **extra}


class Upstream:
    """Scripted Perplexity: returns queued responses in order, repeating the last one."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return httpx.Response(item.status_code, headers=item.headers, content=item.content)

    @property
    def calls(self) -> int:
        return len(self.requests)


def make_service(session_factory, clock, sleep, upstream, *, api_key="test-key",
                 per_minute=10, per_day=1000, **kwargs):
    http = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    kwargs.setdefault("simulate_without_key", False)
    kwargs.setdefault("max_retries", 3)
    return ResearchService(
        cache=ServerResearchCache(session_factory, clock=clock),
        rate_limiter=ResearchRateLimiter(
            session_factory, requests_per_minute=per_minute, requests_per_day=per_day, clock=clock
        ),
        analytics=ResearchAnalyticsRecorder(session_factory, clock=clock),
        upstream=PerplexityClient(api_key=api_key, base_url="https://api.test", http_client=http),
        backoff_base_ms=1000,
        backoff_max_ms=30_000,
        rate_limit_max_wait_ms=60_000,
        sleep=sleep,
        rand=lambda: 0.0,
        **kwargs,
    )


REQUEST = ResearchRequest(user_content="How do I squat safely?")


def test_fresh_call_is_cached_and_recorded(session_factory, clock, fake_sleep):
    upstream = Upstream(httpx.Response(200, json=completion()))
    service = make_service(session_factory, clock, fake_sleep, upstream)

    async def scenario():
        result = await service.generate(REQUEST, user_id="u1")
        assert result.outcome is ResearchOutcome.SERVED_FRESH
        assert result.text == "Squat with a neutral spine."
        assert not result.cached
        assert (await service.cache.check(result.query_hash)).cached
        return await service.analytics.list_recent()

    rows = run_async(scenario())
    assert upstream.calls == 1
    assert upstream.requests[0]["model"] == "mixtral-8x7b-instruct"
    assert upstream.requests[0]["messages"][1] == {"role": "user", "content": "How do I squat safely?"}
    assert len(rows) == 1
    assert rows[0]["success"] is True
    assert rows[0]["cached"] is False
    assert rows[0]["user_id"] == "u1"


def test_repeated_call_is_served_from_cache(session_factory, clock, fake_sleep):
    upstream = Upstream(httpx.Response(200, json=completion()))
    service = make_service(session_factory, clock, fake_sleep, upstream)

    async def scenario():
        first = await service.generate(REQUEST)
        second = await service.generate(ResearchRequest(user_content="HOW DO I SQUAT SAFELY?"))
        return first, second, await service.analytics.get_stats()

    first, second, stats = run_async(scenario())
    assert upstream.calls == 1
    assert second.cached
    assert second.outcome is ResearchOutcome.SERVED_FROM_CACHE
    assert second.text == first.text
    assert stats["total"] == 2
    assert stats["hits"] == 1


def test_local_rate_limit_waits_for_window_then_recovers(session_factory, clock, fake_sleep):
    upstream = Upstream(httpx.Response(200, json=completion()))
    service = make_service(session_factory, clock, fake_sleep, upstream, per_minute=1)

    async def scenario():
        await service.generate(ResearchRequest(user_content="first question"))
        return await service.generate(ResearchRequest(user_content="second question"))

    result = run_async(scenario())
    assert result.outcome is ResearchOutcome.SERVED_FRESH
    assert fake_sleep.calls == [60.0]
    assert upstream.calls == 2


def test_daily_limit_is_rejected_without_waiting(session_factory, clock, fake_sleep):
    upstream = Upstream(httpx.Response(200, json=completion()))
    service = make_service(session_factory, clock, fake_sleep, upstream, per_day=1)

    async def scenario():
        await service.generate(ResearchRequest(user_content="first question"))
        with pytest.raises(ResearchError) as exc_info:
            await service.generate(ResearchRequest(user_content="second question"))
        return exc_info.value, await service.analytics.get_stats()

    error, stats = run_async(scenario())
    assert error.error_type is ResearchErrorType.RATE_LIMIT
    assert error.outcome is ResearchOutcome.REJECTED_RATE_LIMITED
    assert error.retry_after_ms == 24 * 60 * 60 * 1000
    assert fake_sleep.calls == []
    assert upstream.calls == 1
    assert stats["failures"] == 1


def test_upstream_429_honours_retry_after(session_factory, clock, fake_sleep):
    upstream = Upstream(
        httpx.Response(429, headers={"retry-after": "2"}, json={"error": {"message": "slow down"}}),
        httpx.Response(200, json=completion("Answer after wait")),
    )
    service = make_service(session_factory, clock, fake_sleep, upstream)

    result = run_async(service.generate(REQUEST))
    assert result.text == "Answer after wait"
    assert fake_sleep.calls == [2.0]
    assert upstream.calls == 2


def test_server_errors_retry_with_backoff_then_exhaust(session_factory, clock, fake_sleep):
    upstream = Upstream(httpx.Response(500, json={"error": "internal"}))
    service = make_service(session_factory, clock, fake_sleep, upstream)

    async def scenario():
        with pytest.raises(ResearchError) as exc_info:
            await service.generate(REQUEST)
        return exc_info.value, await service.analytics.list_recent()

    error, rows = run_async(scenario())
    assert error.error_type is ResearchErrorType.SERVER_ERROR
    assert error.outcome is ResearchOutcome.UPSTREAM_EXHAUSTED
    assert upstream.calls == 4
    assert fake_sleep.calls == [2.0, 4.0, 8.0]
    assert len(rows) == 1
    assert rows[0]["success"] is False
    assert rows[0]["error_type"] == "server_error"


def test_network_error_is_retried(session_factory, clock, fake_sleep):
    upstream = Upstream(
        httpx.ConnectError("connection refused"),
        httpx.Response(200, json=completion()),
    )
    service = make_service(session_factory, clock, fake_sleep, upstream)

    result = run_async(service.generate(REQUEST))
    assert result.outcome is ResearchOutcome.SERVED_FRESH
    assert fake_sleep.calls == [2.0]


def test_client_error_is_a_hard_failure_without_retry(session_factory, clock, fake_sleep):
    upstream = Upstream(httpx.Response(400, json={"error": {"message": "bad model"}}))
    service = make_service(session_factory, clock, fake_sleep, upstream)

    with pytest.raises(ResearchError) as exc_info:
        run_async(service.generate(REQUEST))
    assert exc_info.value.error_type is ResearchErrorType.API_ERROR
    assert exc_info.value.outcome is ResearchOutcome.HARD_FAILURE
    assert exc_info.value.status_code == 400
    assert upstream.calls == 1
    assert fake_sleep.calls == []


def test_empty_completion_is_not_cached(session_factory, clock, fake_sleep):
    upstream = Upstream(httpx.Response(200, json={"choices": []}))
    service = make_service(session_factory, clock, fake_sleep, upstream)

    async def scenario():
        with pytest.raises(ResearchError) as exc_info:
            await service.generate(REQUEST)
        return exc_info.value, await service.cache.totals()

    error, totals = run_async(scenario())
    assert error.error_type is ResearchErrorType.EMPTY_RESPONSE
    assert totals == (0, 0)
    assert upstream.calls == 1


def test_simulated_fallback_is_never_cached(session_factory, clock, fake_sleep):
    upstream = Upstream(httpx.Response(200, json=completion()))
    service = make_service(
        session_factory, clock, fake_sleep, upstream, api_key="", simulate_without_key=True
    )

    async def scenario():
        result = await service.generate(REQUEST)
        again = await service.generate(REQUEST)
        return result, again, await service.cache.totals(), await service.analytics.get_stats()

    result, again, totals, stats = run_async(scenario())
    assert result.fallback
    assert result.outcome is ResearchOutcome.SERVED_FALLBACK
    assert not again.cached
    assert totals == (0, 0)
    assert stats["fallbacks"] == 2
    assert upstream.calls == 0


def test_missing_api_key_is_an_auth_error(session_factory, clock, fake_sleep):
    upstream = Upstream(httpx.Response(200, json=completion()))
    service = make_service(session_factory, clock, fake_sleep, upstream, api_key="")

    with pytest.raises(ResearchError) as exc_info:
        run_async(service.generate(REQUEST))
    assert exc_info.value.error_type is ResearchErrorType.AUTH_ERROR
    assert upstream.calls == 0


def test_citations_are_returned_when_requested(session_factory, clock, fake_sleep):
    upstream = Upstream(httpx.Response(
        200, json=completion(citations=["https://pubmed.example/1", "https://pubmed.example/2"])
    ))
    service = make_service(session_factory, clock, fake_sleep, upstream)

    result = run_async(service.generate(
        ResearchRequest(user_content="hypertrophy volume", model="sonar-medium-online", return_citations=True)
    ))
    assert result.citations == ["https://pubmed.example/1", "https://pubmed.example/2"]
    assert upstream.requests[0]["model"] == "pplx-70b-online"


def test_cached_answer_keeps_citations(session_factory, clock, fake_sleep):
    upstream = Upstream(httpx.Response(
        200, json=completion(citations=["https://pubmed.example/1"])
    ))
    service = make_service(session_factory, clock, fake_sleep, upstream)

    async def scenario():
        plain = await service.generate(ResearchRequest(user_content="protein timing"))
        cited = await service.generate(ResearchRequest(user_content="protein timing", return_citations=True))
        return plain, cited

    plain, cited = run_async(scenario())
    assert plain.citations == []
    assert cited.cached
    assert cited.citations == ["https://pubmed.example/1"]
    assert upstream.calls == 1


def test_timeouts_retry_then_exhaust(session_factory, clock, fake_sleep):
    upstream = Upstream(httpx.ReadTimeout("read timed out"))
    service = make_service(session_factory, clock, fake_sleep, upstream)

    async def scenario():
        with pytest.raises(ResearchError) as exc_info:
            await service.generate(REQUEST)
        return exc_info.value, await service.analytics.list_recent(), await service.cache.totals()

    error, rows, totals = run_async(scenario())
    assert error.error_type is ResearchErrorType.TIMEOUT
    assert error.outcome is ResearchOutcome.UPSTREAM_EXHAUSTED
    assert upstream.calls == 4
    assert fake_sleep.calls == [2.0, 4.0, 8.0]
    assert len(rows) == 1
    assert rows[0]["error_type"] == "timeout"
    assert totals == (0, 0)


def test_explicit_zero_minute_limit_is_respected(session_factory, clock, fake_sleep):
    upstream = Upstream(httpx.Response(200, json=completion()))
    service = make_service(session_factory, clock, fake_sleep, upstream, per_minute=0, max_retries=0)

    with pytest.raises(ResearchError) as exc_info:
        run_async(service.generate(REQUEST))
    assert exc_info.value.error_type is ResearchErrorType.RATE_LIMIT
    assert upstream.calls == 0
