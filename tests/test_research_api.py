import json

import httpx
import pytest
from fastapi.testclient import TestClient

from app.auth import create_access_token
from app.core.research import get_research_service
from app.database import get_db
from app.main import app
from app.services.perplexity_client import PerplexityClient
from app.services.research_analytics import ResearchAnalyticsRecorder
from app.services.research_cache import ServerResearchCache
from app.services.research_rate_limiter import ResearchRateLimiter
from app.services.research_service import ResearchService


class Upstream:
    def __init__(self, status_code=200, text="Use progressive overload."):
        self.status_code = status_code
        self.text = text
        self.requests: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        if self.status_code >= 400:
            return httpx.Response(self.status_code, json={"error": {"message": "upstream failed"}})
        return httpx.Response(200, json={"choices": [{"message": {"content": self.text}}]})


@pytest.fixture
def upstream():
    return Upstream()


@pytest.fixture
def make_api(session_factory, clock, fake_sleep):
    def _make(upstream, per_minute=10, max_retries=3):
        service = ResearchService(
            cache=ServerResearchCache(session_factory, clock=clock),
            rate_limiter=ResearchRateLimiter(
                session_factory, requests_per_minute=per_minute, requests_per_day=1000, clock=clock
            ),
            analytics=ResearchAnalyticsRecorder(session_factory, clock=clock),
            upstream=PerplexityClient(
                api_key="test-key",
                base_url="https://api.test",
                http_client=httpx.AsyncClient(transport=httpx.MockTransport(upstream)),
            ),
            max_retries=max_retries,
            simulate_without_key=False,
            sleep=fake_sleep,
            rand=lambda: 0.0,
        )

        def _get_db():
            db = session_factory()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_research_service] = lambda: service
        app.dependency_overrides[get_db] = _get_db
        return TestClient(app)

    yield _make
    app.dependency_overrides.clear()


def auth(role="USER", user_id="user-1"):
    return {"Authorization": f"Bearer {create_access_token(user_id, role)}"}


def test_research_is_cached_between_calls(make_api, upstream):
    client = make_api(upstream)
    body = {"user_content": "How many sets per week for hypertrophy?"}

    first = client.post("/api/ai/research", json=body)
    second = client.post("/api/ai/research", json=body, headers=auth())

    assert first.status_code == 200
    assert first.json() == {
        "text": "Use progressive overload.", "cached": False, "fallback": False, "citations": [],
    }
    assert second.json()["cached"] is True
    assert len(upstream.requests) == 1


def test_invalid_token_is_rejected(make_api, upstream):
    client = make_api(upstream)
    response = client.post(
        "/api/ai/research",
        json={"user_content": "squat"},
        headers={"Authorization": "Bearer not-a-jwt"},
    )
    assert response.status_code == 401


def test_rate_limit_returns_429_with_retry_after(make_api, upstream):
    client = make_api(upstream, per_minute=1, max_retries=0)

    assert client.post("/api/ai/research", json={"user_content": "first"}).status_code == 200
    response = client.post("/api/ai/research", json={"user_content": "second"})

    assert response.status_code == 429
    assert response.headers["retry-after"] == "60"
    assert response.json()["detail"] == "Rate limit exceeded. Please try again later."


def test_upstream_failure_returns_502(make_api):
    client = make_api(Upstream(status_code=400))
    response = client.post("/api/ai/research", json={"user_content": "squat"})
    assert response.status_code == 502
    assert "temporarily unavailable" in response.json()["detail"]


def test_empty_query_is_a_validation_error(make_api, upstream):
    client = make_api(upstream)
    assert client.post("/api/ai/research", json={"user_content": ""}).status_code == 422


def test_health(make_api, upstream):
    client = make_api(upstream)
    assert client.get("/api/ai/research/health").json() == {
        "upstream": "configured", "database": "ok",
    }


def test_dashboard_requires_admin(make_api, upstream):
    client = make_api(upstream)
    assert client.get("/api/ai/research/stats").status_code == 401
    assert client.get("/api/ai/research/stats", headers=auth()).status_code == 403


def test_stats_analytics_and_cache_endpoints(make_api, upstream):
    client = make_api(upstream)
    admin = auth("ADMIN", "admin-1")
    body = {"user_content": "deadlift cues"}
    client.post("/api/ai/research", json=body)
    client.post("/api/ai/research", json=body)

    stats = client.get("/api/ai/research/stats", headers=admin).json()
    assert stats["total"] == 2
    assert stats["hits"] == 1
    assert stats["hit_ratio"] == 0.5
    assert stats["cache_entries"] == 1
    assert stats["cache_accesses"] == 2

    rows = client.get("/api/ai/research/analytics?limit=10", headers=admin).json()
    assert len(rows) == 2

    entries = client.get("/api/ai/research/cache", headers=admin).json()
    assert [e["query_text"] for e in entries] == ["deadlift cues"]

    assert client.post("/api/ai/research/cache/purge", headers=admin).json() == {"purged": 0}
    assert client.delete("/api/ai/research/cache", headers=admin).status_code == 204
    assert client.get("/api/ai/research/cache", headers=admin).json() == []


def test_rate_limit_settings(make_api, upstream):
    client = make_api(upstream)
    admin = auth("ADMIN", "admin-1")

    state = client.get("/api/ai/research/rate-limit", headers=admin).json()
    assert state["requests_per_minute"] == 10
    assert state["current_minute_count"] == 0

    updated = client.put(
        "/api/ai/research/rate-limit",
        json={"requests_per_minute": 20, "requests_per_day": 2000},
        headers=admin,
    ).json()
    assert updated["requests_per_minute"] == 20
    assert updated["requests_per_day"] == 2000


def test_workout_research_requires_login(make_api, upstream):
    client = make_api(upstream)
    body = {"goal": "strength", "experience": "intermediate", "days_per_week": 4, "include_cardio": True}

    assert client.post("/api/workouts/research", json=body).status_code == 401

    response = client.post("/api/workouts/research", json=body, headers=auth())
    assert response.status_code == 200
    sent = upstream.requests[0]
    assert sent["model"] == "pplx-70b-online"
    assert sent["max_tokens"] == 1500
    assert "intermediate level" in sent["messages"][1]["content"]
    assert "Include cardio exercises." in sent["messages"][1]["content"]


def test_upstream_timeout_returns_504(make_api):
    def timing_out(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("read timed out", request=request)

    client = make_api(timing_out, max_retries=0)
    response = client.post("/api/ai/research", json={"user_content": "squat"})
    assert response.status_code == 504
    assert response.json()["detail"] == "AI service timed out. Please try again later."
