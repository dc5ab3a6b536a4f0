"""Interface shared by the server (database) and client (local storage) response caches."""
from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class CacheLookup:
    cached: bool
    response: str | None = None
    citations: tuple[str, ...] = ()


CACHE_MISS = CacheLookup(cached=False)


class ResponseCache(Protocol):
    """check/store/clear never raise: storage failures are logged and treated as a miss or no-op."""

    async def check(self, query_hash: str) -> CacheLookup: ...

    async def store(
        self,
        query_hash: str,
        query_text: str,
        system_prompt: str,
        response: str,
        model: str | None = None,
        citations: list[str] | None = None,
    ) -> None: ...

    async def clear(self) -> None: ...
