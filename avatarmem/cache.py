"""Short-lived cache for read-heavy, slow-changing store queries.

Entries expire after a TTL. Keys for scope-bound data start with
``ScopeKey.cache_key()`` so a write can drop every entry for its scope with
``invalidate_scope`` before it reports success.
"""

from __future__ import annotations

import logging
import time
from threading import Lock
from typing import Any, Callable, Dict, Optional, Tuple

from avatarmem.scope import ScopeKey

logger = logging.getLogger("avatarmem.cache")

_MISSING = object()


def scoped_key(scope: ScopeKey, *parts: Any) -> str:
    return "|".join([scope.cache_key(), *(str(part) for part in parts)])


class ScopedCache:
    def __init__(
        self,
        *,
        default_ttl: float = 300.0,
        max_entries: int = 1024,
        time_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        if default_ttl <= 0:
            raise ValueError("default_ttl must be positive")
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._default_ttl = default_ttl
        self._max_entries = max_entries
        self._time_fn = time_fn
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._lock = Lock()
        self._hits = 0
        self._misses = 0

    def get_cached(self, key: str, default: Any = None) -> Any:
        """Return the cached value, or ``default`` when absent or expired."""
        value = self._lookup(key)
        return default if value is _MISSING else value

    def contains(self, key: str) -> bool:
        return self._lookup(key) is not _MISSING

    def _lookup(self, key: str) -> Any:
        now = self._time_fn()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return _MISSING
            expires_at, value = entry
            if expires_at <= now:
                del self._entries[key]
                self._misses += 1
                return _MISSING
            self._hits += 1
            return value

    def set_cached(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ttl = self._default_ttl if ttl is None else ttl
        if ttl <= 0:
            self.invalidate(key)
            return
        expires_at = self._time_fn() + ttl
        with self._lock:
            self._entries.pop(key, None)
            if len(self._entries) >= self._max_entries:
                self._evict_locked()
            self._entries[key] = (expires_at, value)

    def _evict_locked(self) -> None:
        now = self._time_fn()
        expired = [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        # Drop the oldest half when nothing has expired yet
        if len(self._entries) >= self._max_entries:
            keys_to_remove = list(self._entries.keys())[: max(1, self._max_entries // 2)]
            for key in keys_to_remove:
                del self._entries[key]
            logger.debug("Cache full, evicted %d entries", len(keys_to_remove))

    def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        with self._lock:
            keys = [key for key in self._entries if key.startswith(prefix)]
            for key in keys:
                del self._entries[key]
        return len(keys)

    def invalidate_scope(self, scope: ScopeKey) -> int:
        removed = self.invalidate_prefix(scope.cache_key() + "|")
        if removed:
            logger.debug("Invalidated %d cache entries for %s", removed, scope)
        return removed

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "entries": len(self._entries),
                "max_entries": self._max_entries,
                "default_ttl": self._default_ttl,
                "hits": self._hits,
                "misses": self._misses,
            }
