"""
Typed errors for the research path. Every failure that leaves the orchestrator is a ResearchError,
so routers and the client SDK can map it to a status code / user message without parsing strings.
"""
import asyncio
import enum

import httpx


class ResearchErrorType(str, enum.Enum):
    RATE_LIMIT = "rate_limit"
    SERVER_ERROR = "server_error"
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    AUTH_ERROR = "auth_error"
    API_ERROR = "api_error"
    EMPTY_RESPONSE = "empty_response"


RETRYABLE_ERROR_TYPES = frozenset({
    ResearchErrorType.RATE_LIMIT,
    ResearchErrorType.SERVER_ERROR,
    ResearchErrorType.NETWORK_ERROR,
    ResearchErrorType.TIMEOUT,
})


class ResearchError(Exception):
    def __init__(
        self,
        message: str,
        error_type: ResearchErrorType = ResearchErrorType.API_ERROR,
        *,
        retry_after_ms: int | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.retry_after_ms = retry_after_ms
        self.status_code = status_code
        # Terminal orchestrator state that produced this error, set by ResearchService
        self.outcome = None

    @property
    def retryable(self) -> bool:
        return self.error_type in RETRYABLE_ERROR_TYPES

    def __repr__(self) -> str:
        return f"ResearchError({self.error_type.value!r}, {self.message!r}, retry_after_ms={self.retry_after_ms})"


class UpstreamHTTPError(Exception):
    """Non-2xx answer from the upstream API (status, message, optional retry-after seconds)."""

    def __init__(self, status_code: int, message: str, retry_after_s: float | None = None):
        super().__init__(f"Perplexity API error ({status_code}): {message}")
        self.status_code = status_code
        self.message = message
        self.retry_after_s = retry_after_s


def parse_retry_after(value: str | None) -> float | None:
    """Retry-After header in seconds; HTTP-date form is ignored."""
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def error_type_for_status(status_code: int) -> ResearchErrorType:
    if status_code == 429:
        return ResearchErrorType.RATE_LIMIT
    if status_code >= 500:
        return ResearchErrorType.SERVER_ERROR
    if status_code in (401, 403):
        return ResearchErrorType.AUTH_ERROR
    return ResearchErrorType.API_ERROR


def classify_error(error: Exception) -> ResearchError:
    """Map transport / HTTP exceptions into ResearchError."""
    if isinstance(error, ResearchError):
        return error
    if isinstance(error, UpstreamHTTPError):
        retry_after_ms = int(error.retry_after_s * 1000) if error.retry_after_s is not None else None
        return ResearchError(
            str(error),
            error_type_for_status(error.status_code),
            retry_after_ms=retry_after_ms,
            status_code=error.status_code,
        )
    if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return ResearchError(f"Request timed out: {error}", ResearchErrorType.TIMEOUT)
    if isinstance(error, (httpx.TransportError, ConnectionError)):
        return ResearchError(f"Network error: {error}", ResearchErrorType.NETWORK_ERROR)

    msg = str(error).lower()
    if "rate limit" in msg or "429" in msg:
        return ResearchError(str(error), ResearchErrorType.RATE_LIMIT)
    return ResearchError(str(error) or error.__class__.__name__, ResearchErrorType.API_ERROR)
