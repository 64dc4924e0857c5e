"""Key-value backends for dashboard metrics.

Both backends store JSON-serializable values under string keys with an
optional TTL in seconds.
"""

import json
import threading
import time
from collections import OrderedDict
from typing import Any, Optional, Protocol

import redis


def _resolve_ttl(ttl_seconds: Optional[int], default: Optional[int]) -> Optional[int]:
    ttl = ttl_seconds if ttl_seconds is not None else default
    if ttl is not None and ttl <= 0:
        raise ValueError(f"ttl_seconds must be positive or None, got {ttl}")
    return ttl


class CacheBackend(Protocol):
    def get(self, key: str) -> Optional[Any]:
        """Return the value for ``key``, or ``None`` if missing or expired."""
        ...

    def set(self, key: str, value: Any, *, ttl_seconds: Optional[int] = None) -> None:
        """Store ``value``; ``ttl_seconds=None`` uses the backend default.

        A default of ``None`` means no expiry. Zero or negative TTLs raise
        ``ValueError``.
        """
        ...

    def delete(self, key: str) -> None:
        ...

    def exists(self, key: str) -> bool:
        ...


class InMemoryCache:
    """Bounded LRU cache with lazy TTL expiry, for tests and single-process use."""

    def __init__(self, *, max_size: int = 10_000, default_ttl_seconds: Optional[int] = 3600):
        self._store: "OrderedDict[str, tuple]" = OrderedDict()
        self._max_size = max_size
        self._default_ttl = _resolve_ttl(None, default_ttl_seconds)
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None

            value, expires_at = entry
            if expires_at is not None and time.time() > expires_at:
                del self._store[key]
                return None

            self._store.move_to_end(key)
            # Round-trip so callers never share mutable state with the cache.
            return json.loads(value)

    def set(self, key: str, value: Any, *, ttl_seconds: Optional[int] = None) -> None:
        ttl = _resolve_ttl(ttl_seconds, self._default_ttl)
        expires_at = (time.time() + ttl) if ttl is not None else None
        serialized = json.dumps(value)

        with self._lock:
            if key not in self._store and len(self._store) >= self._max_size:
                self._store.popitem(last=False)
            self._store[key] = (serialized, expires_at)
            self._store.move_to_end(key)

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def exists(self, key: str) -> bool:
        return self.get(key) is not None

    def ttl(self, key: str) -> Optional[float]:
        """Seconds left before ``key`` expires, ``None`` if missing or unbounded."""
        with self._lock:
            entry = self._store.get(key)
        if entry is None or entry[1] is None:
            return None
        return max(0.0, entry[1] - time.time())

    def size(self) -> int:
        with self._lock:
            return len(self._store)


class RedisCache:
    def __init__(self, url: str = "redis://localhost:6379/0", *,
                 default_ttl_seconds: Optional[int] = 3600,
                 client: Optional[redis.Redis] = None):
        self._client = client if client is not None else redis.from_url(url, decode_responses=True)
        self._default_ttl = _resolve_ttl(None, default_ttl_seconds)

    def get(self, key: str) -> Optional[Any]:
        raw = self._client.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, key: str, value: Any, *, ttl_seconds: Optional[int] = None) -> None:
        ttl = _resolve_ttl(ttl_seconds, self._default_ttl)
        serialized = json.dumps(value)

        if ttl is not None:
            self._client.setex(key, ttl, serialized)
        else:
            self._client.set(key, serialized)

    def delete(self, key: str) -> None:
        self._client.delete(key)

    def exists(self, key: str) -> bool:
        return bool(self._client.exists(key))
