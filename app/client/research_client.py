"""
Research client SDK for the app front end.

search() answers from the local cache when it can; otherwise the request joins a FIFO queue
drained by one asyncio task that calls POST /api/ai/research. A rate-limited request stays at
the head of the queue while the queue pauses for the server's Retry-After; network errors and
timeouts are retried in place with exponential backoff. Consecutive requests are spaced out.
"""
import asyncio
import logging
import math
import random
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable

import httpx

from app.client.cache import ClientResearchCache
from app.client.storage import build_storage
from app.config import get_settings
from app.schemas.research import ResearchRequest, ResearchResponse
from app.services.backoff import plan_retry
from app.services.perplexity_client import DEFAULT_SYSTEM_PROMPT
from app.services.query_hash import create_query_hash
from app.services.research_errors import (
    ResearchError,
    ResearchErrorType,
    classify_error,
    error_type_for_status,
    parse_retry_after,
)
from app.services.response_cache import ResponseCache

logger = logging.getLogger(__name__)

RESEARCH_PATH = "/api/ai/research"
FALLBACK_TEXT = "Error fetching research. Please try again later."
DEFAULT_RETRY_AFTER_MS = 60_000

# Server errors are already retried upstream by the API; the client only waits out
# rate limits and transport failures.
CLIENT_RETRYABLE = frozenset({
    ResearchErrorType.RATE_LIMIT,
    ResearchErrorType.NETWORK_ERROR,
    ResearchErrorType.TIMEOUT,
})


def describe_error(err: ResearchError) -> str:
    """Message suitable for showing to the user."""
    if err.error_type is ResearchErrorType.RATE_LIMIT:
        seconds = math.ceil((err.retry_after_ms or DEFAULT_RETRY_AFTER_MS) / 1000)
        return f"Rate limit exceeded. Please wait {seconds} seconds before trying again."
    if err.error_type is ResearchErrorType.SERVER_ERROR:
        return "The research service is having problems. Please try again later."
    if err.error_type is ResearchErrorType.NETWORK_ERROR:
        return "Network error. Please check your internet connection."
    if err.error_type is ResearchErrorType.TIMEOUT:
        return "The research request timed out. Please try again."
    if err.error_type is ResearchErrorType.AUTH_ERROR:
        return "Authentication error with the research service. Please sign in again."
    return f"Error fetching research: {err.message}"


@dataclass
class QueuedRequest:
    request: ResearchRequest
    future: asyncio.Future
    attempts: int = 0


class ResearchClient:
    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        cache: ResponseCache | None = None,
        http_client: httpx.AsyncClient | None = None,
        max_retries: int | None = None,
        spacing_ms: int | None = None,
        backoff_base_ms: int | None = None,
        backoff_max_ms: int | None = None,
        rate_limit_max_wait_ms: int | None = None,
        timeout_seconds: float = 60.0,
        fallback_on_error: bool = True,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
    ):
        settings = get_settings()
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._cache = cache if cache is not None else ClientResearchCache()
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout_seconds)
        self._max_retries = settings.research_max_retries if max_retries is None else max_retries
        self._spacing_ms = settings.client_queue_spacing_ms if spacing_ms is None else spacing_ms
        self._base_ms = settings.research_backoff_base_ms if backoff_base_ms is None else backoff_base_ms
        self._max_ms = settings.research_backoff_max_ms if backoff_max_ms is None else backoff_max_ms
        self._max_wait_ms = (
            settings.research_rate_limit_max_wait_ms if rate_limit_max_wait_ms is None else rate_limit_max_wait_ms
        )
        self._fallback_on_error = fallback_on_error
        self._sleep = sleep
        self._rand = rand
        self._queue: deque[QueuedRequest] = deque()
        self._worker: asyncio.Task | None = None
        self.last_error: ResearchError | None = None

    @classmethod
    def from_settings(cls, base_url: str, token: str | None = None, **kwargs) -> "ResearchClient":
        settings = get_settings()
        cache = ClientResearchCache(
            build_storage(settings.client_cache_dir),
            ttl_ms=settings.client_cache_ttl_hours * 60 * 60 * 1000,
            max_entries=settings.client_cache_max_entries,
        )
        return cls(base_url, token=token, cache=cache, **kwargs)

    @property
    def cache(self) -> ResponseCache:
        return self._cache

    @property
    def pending(self) -> int:
        return len(self._queue)

    async def __aenter__(self) -> "ResearchClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
        self._reject_pending("Research client closed")
        if self._owns_http:
            await self._http.aclose()

    @staticmethod
    def query_hash(request: ResearchRequest) -> str:
        return create_query_hash(
            request.user_content, request.system_content or DEFAULT_SYSTEM_PROMPT, request.model
        )

    async def search(self, request: ResearchRequest, *, skip_cache: bool = False) -> str:
        query_hash = self.query_hash(request)
        if not skip_cache:
            lookup = await self._cache.check(query_hash)
            if lookup.cached and lookup.response is not None:
                logger.debug("Client cache hit %s", query_hash[:12])
                return lookup.response

        try:
            response = await self._enqueue(request)
        except ResearchError as err:
            self.last_error = err
            logger.warning("Research request failed: %s (%s)", describe_error(err), err.message)
            if self._fallback_on_error:
                return FALLBACK_TEXT
            raise

        self.last_error = None
        if not response.fallback:
            await self._cache.store(
                query_hash,
                request.user_content,
                request.system_content or DEFAULT_SYSTEM_PROMPT,
                response.text,
                request.model,
                citations=response.citations,
            )
        return response.text

    async def clear_cache(self) -> None:
        await self._cache.clear()

    # ---- queue ----

    async def _enqueue(self, request: ResearchRequest) -> ResearchResponse:
        future = asyncio.get_running_loop().create_future()
        self._queue.append(QueuedRequest(request, future))
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._process_queue())
        return await future

    def _reject_pending(self, message: str) -> None:
        while self._queue:
            item = self._queue.popleft()
            if not item.future.done():
                item.future.set_exception(ResearchError(message, ResearchErrorType.NETWORK_ERROR))

    async def _process_queue(self) -> None:
        try:
            while self._queue:
                item = self._queue[0]
                if item.future.done():
                    self._queue.popleft()
                    continue

                try:
                    response = await self._send(item.request)
                except ResearchError as err:
                    if await self._wait_for_retry(item, err):
                        continue
                    self._queue.popleft()
                    if not item.future.done():
                        item.future.set_exception(err)
                else:
                    self._queue.popleft()
                    if not item.future.done():
                        item.future.set_result(response)

                if self._queue and self._spacing_ms > 0:
                    await self._sleep(self._spacing_ms / 1000)
        finally:
            # Anything still queued when the worker stops would otherwise wait forever
            self._reject_pending("Research queue stopped")

    async def _wait_for_retry(self, item: QueuedRequest, err: ResearchError) -> bool:
        """Sleep before retrying the head request; False when it should be rejected."""
        if err.error_type not in CLIENT_RETRYABLE:
            return False
        hint = err.retry_after_ms
        if err.error_type is ResearchErrorType.RATE_LIMIT and hint is None:
            hint = DEFAULT_RETRY_AFTER_MS
        decision = plan_retry(
            item.attempts,
            err.error_type,
            hint,
            max_retries=self._max_retries,
            base_ms=self._base_ms,
            max_ms=self._max_ms,
            max_wait_ms=self._max_wait_ms,
            rand=self._rand,
        )
        if not decision.retry:
            logger.warning(
                "Giving up on research request after %s retries: %s", item.attempts, err.message
            )
            return False
        item.attempts += 1
        if err.error_type is ResearchErrorType.RATE_LIMIT:
            logger.info("Research queue paused for %sms (rate limited)", decision.delay_ms)
        else:
            logger.info(
                "Research request %s, retry %s/%s after %sms",
                err.error_type.value, item.attempts, self._max_retries, decision.delay_ms,
            )
        await self._sleep(decision.delay_ms / 1000)
        return True

    async def _send(self, request: ResearchRequest) -> ResearchResponse:
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
        try:
            resp = await self._http.post(
                f"{self._base_url}{RESEARCH_PATH}",
                json=request.model_dump(),
                headers=headers,
            )
        except Exception as e:
            raise classify_error(e) from e

        if resp.status_code >= 400:
            retry_after_s = parse_retry_after(resp.headers.get("retry-after"))
            try:
                detail = resp.json().get("detail") or resp.text
            except (ValueError, AttributeError):
                detail = resp.text
            raise ResearchError(
                f"Research API error ({resp.status_code}): {detail}",
                error_type_for_status(resp.status_code),
                retry_after_ms=int(retry_after_s * 1000) if retry_after_s is not None else None,
                status_code=resp.status_code,
            )

        try:
            return ResearchResponse.model_validate(resp.json())
        except ValueError as e:
            raise ResearchError(
                f"Invalid research response: {e}", ResearchErrorType.API_ERROR, status_code=resp.status_code
            ) from e
