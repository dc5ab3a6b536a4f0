"""
Perplexity chat-completions client (OpenAI-compatible wire format) over httpx.
Raises UpstreamHTTPError on non-2xx; transport errors surface as httpx exceptions
and are classified by the orchestrator.
"""
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from app.config import get_settings
from app.services.research_errors import (
    ResearchError,
    ResearchErrorType,
    UpstreamHTTPError,
    parse_retry_after,
)

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a fitness and exercise expert. Provide detailed, evidence-based information about "
    "exercises, workout techniques, and training methodologies."
)

# Public model names accepted by our API -> upstream model identifiers
MODEL_MAP = {
    "default": "mixtral-8x7b-instruct",
    "sonar-small-chat": "mistral-7b-instruct",
    "sonar-medium-chat": "mixtral-8x7b-instruct",
    "sonar-large-chat": "llama-2-70b-chat",
    "sonar-small-online": "pplx-7b-online",
    "sonar-medium-online": "pplx-70b-online",
}
FALLBACK_UPSTREAM_MODEL = MODEL_MAP["default"]


def map_model(model: str | None) -> str:
    return MODEL_MAP.get((model or "default").strip().lower(), FALLBACK_UPSTREAM_MODEL)


def build_messages(user_content: str, system_prompt: str | None) -> list[dict]:
    return [
        {"role": "system", "content": system_prompt or DEFAULT_SYSTEM_PROMPT},
        {"role": "user", "content": user_content},
    ]


@dataclass
class CompletionResult:
    text: str
    citations: list[str] = field(default_factory=list)
    model: str | None = None


def _citations_from(payload: dict, message: dict) -> list[str]:
    """Citations may come as message.citation_metadata or a top-level citations list."""
    out: list[str] = []
    meta = message.get("citation_metadata")
    if isinstance(meta, dict):
        for item in meta.get("citations") or []:
            if isinstance(item, str):
                out.append(item)
            elif isinstance(item, dict) and (item.get("url") or item.get("uri")):
                out.append(item.get("url") or item.get("uri"))
    elif isinstance(meta, list):
        out.extend(str(x) for x in meta if x)
    for item in payload.get("citations") or []:
        if isinstance(item, str) and item not in out:
            out.append(item)
    return out


def extract_completion(payload: Any, *, with_citations: bool = False) -> CompletionResult:
    """Pull the assistant text out of a chat-completions response. Empty text is an error."""
    if not isinstance(payload, dict) or not payload.get("choices"):
        raise ResearchError("Empty response from Perplexity API", ResearchErrorType.EMPTY_RESPONSE)
    message = (payload["choices"][0] or {}).get("message") or {}
    text = message.get("content") or ""
    if not isinstance(text, str) or not text.strip():
        raise ResearchError("No text in Perplexity API response", ResearchErrorType.EMPTY_RESPONSE)
    citations = _citations_from(payload, message) if with_citations else []
    return CompletionResult(text=text, citations=citations, model=payload.get("model"))


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.reason_phrase or f"HTTP {response.status_code}"
    err = data.get("error") if isinstance(data, dict) else None
    if isinstance(err, dict):
        return err.get("message") or response.reason_phrase
    return err or response.reason_phrase or f"HTTP {response.status_code}"


class PerplexityClient:
    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout_seconds: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        settings = get_settings()
        self.api_key = api_key if api_key is not None else settings.perplexity_api_key
        self._base_url = (base_url or settings.perplexity_base_url).rstrip("/")
        self._timeout = settings.perplexity_timeout_seconds if timeout_seconds is None else timeout_seconds
        self._http = http_client

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def complete(
        self,
        messages: list[dict],
        model: str,
        temperature: float = 0.7,
        max_tokens: int = 1000,
    ) -> dict:
        """POST /chat/completions and return the decoded JSON body."""
        body = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        url = f"{self._base_url}/chat/completions"
        if self._http is not None:
            response = await self._http.post(url, json=body, headers=headers, timeout=self._timeout)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(url, json=body, headers=headers)

        if response.status_code >= 400:
            message = _error_message(response)
            logger.warning("Perplexity API returned %s: %s", response.status_code, message)
            raise UpstreamHTTPError(
                response.status_code,
                message,
                retry_after_s=parse_retry_after(response.headers.get("retry-after")),
            )
        try:
            return response.json()
        except ValueError as e:
            raise ResearchError(
                "Malformed JSON from Perplexity API", ResearchErrorType.EMPTY_RESPONSE
            ) from e
