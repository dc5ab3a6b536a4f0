"""
Client-side research response cache over LocalStorage.

Keys:
  research_cache_<hash>     -> {"response": str, "timestamp": ms, "citations": [str]}
  research_cache_metadata   -> {"queryHashes": [... most recently used last], "lastCleanup": ms}

Entries expire after ttl (24h by default). Size is bounded by max_entries; cleanup drops expired
entries first, then least-recently-used ones. Cleanup runs when the recency list outgrows the bound
or when the last cleanup is older than ttl.
Storage/JSON errors are logged and treated as a miss; nothing raises to the caller.
"""
import json
import logging
import time
from typing import Callable

from app.client.storage import LocalStorage, MemoryStorage
from app.services.response_cache import CacheLookup, CACHE_MISS

logger = logging.getLogger(__name__)

CACHE_PREFIX = "research_cache_"
METADATA_KEY = "research_cache_metadata"
DEFAULT_TTL_MS = 24 * 60 * 60 * 1000
DEFAULT_MAX_ENTRIES = 50


def _now_ms() -> int:
    return int(time.time() * 1000)


class ClientResearchCache:
    def __init__(
        self,
        storage: LocalStorage | None = None,
        ttl_ms: int = DEFAULT_TTL_MS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock_ms: Callable[[], int] = _now_ms,
    ):
        self._storage = storage if storage is not None else MemoryStorage()
        self._ttl_ms = ttl_ms
        self._max_entries = max(1, max_entries)
        self._clock_ms = clock_ms

    # ---- metadata ----

    def _get_metadata(self) -> dict:
        try:
            raw = self._storage.get_item(METADATA_KEY)
            if raw:
                data = json.loads(raw)
                hashes = data.get("queryHashes")
                if isinstance(hashes, list):
                    return {
                        "queryHashes": [h for h in hashes if isinstance(h, str)],
                        "lastCleanup": int(data.get("lastCleanup") or 0),
                    }
        except (ValueError, TypeError, AttributeError, OSError) as e:
            logger.warning("Reading client cache metadata failed: %s", e)
        return {"queryHashes": [], "lastCleanup": self._clock_ms()}

    def _save_metadata(self, metadata: dict) -> None:
        try:
            self._storage.set_item(METADATA_KEY, json.dumps(metadata))
        except (OSError, TypeError, ValueError) as e:
            logger.warning("Saving client cache metadata failed: %s", e)

    def _touch(self, query_hash: str) -> None:
        """Move hash to the most-recently-used end; clean up when due."""
        metadata = self._get_metadata()
        hashes = [h for h in metadata["queryHashes"] if h != query_hash]
        hashes.append(query_hash)
        metadata["queryHashes"] = hashes
        now = self._clock_ms()
        if now - metadata["lastCleanup"] > self._ttl_ms or len(hashes) > self._max_entries:
            self._cleanup(metadata, now)
        self._save_metadata(metadata)

    def _forget(self, query_hash: str) -> None:
        metadata = self._get_metadata()
        if query_hash in metadata["queryHashes"]:
            metadata["queryHashes"] = [h for h in metadata["queryHashes"] if h != query_hash]
            self._save_metadata(metadata)

    def _read_entry(self, query_hash: str) -> dict | None:
        raw = self._storage.get_item(CACHE_PREFIX + query_hash)
        if not raw:
            return None
        entry = json.loads(raw)
        if not isinstance(entry, dict) or not isinstance(entry.get("response"), str):
            raise ValueError("malformed cache entry")
        return entry

    def _expired(self, entry: dict, now: int) -> bool:
        return now - int(entry.get("timestamp") or 0) > self._ttl_ms

    def _cleanup(self, metadata: dict, now: int) -> None:
        valid: list[str] = []
        for query_hash in metadata["queryHashes"]:
            try:
                entry = self._read_entry(query_hash)
            except (ValueError, TypeError, OSError) as e:
                logger.warning("Dropping unreadable client cache entry %s: %s", query_hash, e)
                entry = None
            if entry is not None and not self._expired(entry, now):
                valid.append(query_hash)
            else:
                self._storage.remove_item(CACHE_PREFIX + query_hash)

        overflow = len(valid) - self._max_entries
        if overflow > 0:
            for query_hash in valid[:overflow]:
                self._storage.remove_item(CACHE_PREFIX + query_hash)
            valid = valid[overflow:]

        metadata["queryHashes"] = valid
        metadata["lastCleanup"] = now

    # ---- ResponseCache ----

    async def check(self, query_hash: str) -> CacheLookup:
        try:
            entry = self._read_entry(query_hash)
            if entry is None:
                return CACHE_MISS
            if self._expired(entry, self._clock_ms()):
                self._storage.remove_item(CACHE_PREFIX + query_hash)
                self._forget(query_hash)
                return CACHE_MISS
            self._touch(query_hash)
            return CacheLookup(
                cached=True, response=entry["response"], citations=tuple(entry.get("citations") or ())
            )
        except Exception as e:
            logger.warning("Client cache check failed for %s: %s", query_hash, e)
            return CACHE_MISS

    async def store(
        self,
        query_hash: str,
        query_text: str,
        system_prompt: str,
        response: str,
        model: str | None = None,
        citations: list[str] | None = None,
    ) -> None:
        try:
            payload = json.dumps(
                {"response": response, "timestamp": self._clock_ms(), "citations": list(citations or [])}
            )
            self._storage.set_item(CACHE_PREFIX + query_hash, payload)
            self._touch(query_hash)
        except Exception as e:
            logger.warning("Client cache store failed for %s: %s", query_hash, e)

    async def clear(self) -> None:
        try:
            tracked = set(self._get_metadata()["queryHashes"])
            for key in self._storage.keys():
                if key.startswith(CACHE_PREFIX) and key != METADATA_KEY:
                    tracked.add(key[len(CACHE_PREFIX):])
            for query_hash in tracked:
                self._storage.remove_item(CACHE_PREFIX + query_hash)
            self._save_metadata({"queryHashes": [], "lastCleanup": self._clock_ms()})
        except Exception as e:
            logger.warning("Client cache clear failed: %s", e)

    def tracked_hashes(self) -> list[str]:
        """Live hashes, least recently used first."""
        return list(self._get_metadata()["queryHashes"])

    def stats(self) -> dict:
        metadata = self._get_metadata()
        size = 0
        for query_hash in metadata["queryHashes"]:
            raw = self._storage.get_item(CACHE_PREFIX + query_hash)
            size += len(raw.encode("utf-8")) if raw else 0
        return {
            "entries": len(metadata["queryHashes"]),
            "size_bytes": size,
            "last_cleanup_ms": metadata["lastCleanup"],
        }
