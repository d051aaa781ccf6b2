"""
Cache backends.

Minimal key/value interface with TTL and namespace deletion:
- InMemoryCacheBackend: process-local, expiry driven by the injected clock
- RedisCacheBackend: shared cache over a redis client

Values are opaque strings; serialization belongs to the caller.
"""

from __future__ import annotations

import re
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta

import redis
from loguru import logger

from src.scheduling.clock import Clock, SystemClock
from src.scheduling.errors import UnavailableError


class CacheBackend(ABC):
    """Key/value cache with per-entry TTL."""

    name: str = "base"

    @abstractmethod
    def get(self, key: str) -> str | None:
        """Value for key, or None when absent or expired."""

    @abstractmethod
    def set(self, key: str, value: str, ttl: float) -> None:
        """Store value for ``ttl`` seconds."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete one key. Returns True if it existed."""

    @abstractmethod
    def delete_prefix(self, prefix: str) -> int:
        """Delete every key starting with prefix as one operation. Returns the count."""

    def close(self) -> None:
        """Release connections."""


class InMemoryCacheBackend(CacheBackend):
    """Dict-backed cache. Expired entries are dropped lazily on read."""

    name = "memory"

    def __init__(self, clock: Clock | None = None):
        self._clock = clock or SystemClock()
        self._entries: dict[str, tuple[str, datetime]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock.now() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: str, ttl: float) -> None:
        expires_at = self._clock.now() + timedelta(seconds=ttl)
        with self._lock:
            self._entries[key] = (value, expires_at)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [k for k in self._entries if k.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def _escape_glob(text: str) -> str:
    """Escape redis MATCH pattern metacharacters."""
    return re.sub(r"([*?\[\]\\])", r"\\\1", text)


class RedisCacheBackend(CacheBackend):
    """Redis-backed cache; any redis error becomes UnavailableError."""

    name = "redis"

    def __init__(
        self,
        client: redis.Redis | None = None,
        url: str = "redis://localhost:6379/0",
        socket_timeout: float = 2.0,
        scan_count: int = 500,
    ):
        self._client = client or redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._scan_count = scan_count

    def _unavailable(self, operation: str, error: Exception) -> UnavailableError:
        logger.warning(f"Redis {operation} failed: {error}")
        return UnavailableError("cache unavailable", operation=f"cache.{operation}")

    def get(self, key: str) -> str | None:
        try:
            value = self._client.get(key)
        except redis.RedisError as e:
            raise self._unavailable("get", e) from e
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    def set(self, key: str, value: str, ttl: float) -> None:
        try:
            self._client.set(key, value, px=max(1, int(ttl * 1000)))
        except redis.RedisError as e:
            raise self._unavailable("set", e) from e

    def delete(self, key: str) -> bool:
        try:
            return bool(self._client.delete(key))
        except redis.RedisError as e:
            raise self._unavailable("delete", e) from e

    def delete_prefix(self, prefix: str) -> int:
        try:
            keys = list(self._client.scan_iter(match=f"{_escape_glob(prefix)}*", count=self._scan_count))
            if not keys:
                return 0
            pipe = self._client.pipeline(transaction=True)
            pipe.delete(*keys)
            (deleted,) = pipe.execute()
            return int(deleted)
        except redis.RedisError as e:
            raise self._unavailable("delete_prefix", e) from e

    def close(self) -> None:
        self._client.close()
