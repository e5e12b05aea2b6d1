from __future__ import annotations

import re
import time
from dataclasses import dataclass
from typing import Any, Optional, Union

import structlog

logger = structlog.get_logger()

DEFAULT_TTL_MS = 300_000
DEFAULT_MAX_SIZE = 500


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class CacheEntry:
    etag: str
    data: Any
    expires_at: int  # epoch milliseconds
    resource_key: str
    last_modified: Optional[str] = None

    def is_expired(self, now_ms: Optional[int] = None) -> bool:
        return (now_ms if now_ms is not None else _now_ms()) > self.expires_at


@dataclass(frozen=True)
class CacheStats:
    size: int
    max_size: int


class EtagCacheManager:
    """In-memory ETag store keyed by resource path.

    Bounded (FIFO eviction by insertion order) and TTL based. None of the
    operations raise: a missing or expired entry just reads as "not cached".
    Not thread-safe; meant to be owned by a single event loop.
    """

    def __init__(self, default_ttl_ms: int = DEFAULT_TTL_MS, max_size: int = DEFAULT_MAX_SIZE, debug: bool = False):
        self.default_ttl_ms = default_ttl_ms
        self.max_size = max_size
        self.debug = debug
        self._entries: dict[str, CacheEntry] = {}
        self._log = logger.bind(component="etag_cache")

    def set(
        self,
        key: str,
        etag: str,
        data: Any,
        ttl_seconds: Optional[float] = None,
        last_modified: Optional[str] = None,
    ) -> CacheEntry:
        # a missing or zero max-age still keeps the validator around for revalidation
        ttl_ms = int(ttl_seconds * 1000) if ttl_seconds else self.default_ttl_ms

        if self._entries and key not in self._entries and len(self._entries) >= self.max_size:
            oldest = next(iter(self._entries))
            del self._entries[oldest]
            if self.debug:
                self._log.debug("cache_evicted", key=oldest)

        entry = CacheEntry(
            etag=etag,
            data=data,
            expires_at=_now_ms() + ttl_ms,
            resource_key=key,
            last_modified=last_modified,
        )
        self._entries[key] = entry
        if self.debug:
            self._log.debug("cache_stored", key=key, etag=etag, ttl_ms=ttl_ms)
        return entry

    def get(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            if self.debug:
                self._log.debug("cache_miss", key=key)
            return None
        if entry.is_expired():
            del self._entries[key]
            if self.debug:
                self._log.debug("cache_expired", key=key)
            return None
        if self.debug:
            self._log.debug("cache_hit", key=key, etag=entry.etag)
        return entry

    def invalidate(self, key: str) -> bool:
        removed = self._entries.pop(key, None) is not None
        if self.debug and removed:
            self._log.debug("cache_invalidated", key=key)
        return removed

    def invalidate_pattern(self, pattern: Union[str, re.Pattern[str]]) -> int:
        regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        keys = [k for k in self._entries if regex.search(k)]
        for k in keys:
            del self._entries[k]
        if self.debug:
            self._log.debug("cache_invalidated_pattern", pattern=regex.pattern, count=len(keys))
        return len(keys)

    def clear(self) -> None:
        size = len(self._entries)
        self._entries.clear()
        if self.debug:
            self._log.debug("cache_cleared", count=size)

    def cleanup(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        now = _now_ms()
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for k in expired:
            del self._entries[k]
        if self.debug and expired:
            self._log.debug("cache_cleanup", count=len(expired))
        return len(expired)

    def get_stats(self) -> CacheStats:
        return CacheStats(size=len(self._entries), max_size=self.max_size)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries
