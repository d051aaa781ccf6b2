"""Caching of derived scheduling views."""

from src.cache.backends import CacheBackend, InMemoryCacheBackend, RedisCacheBackend
from src.cache.schedule_cache import DEFAULT_TTLS, ScheduleCache

__all__ = [
    "DEFAULT_TTLS",
    "CacheBackend",
    "InMemoryCacheBackend",
    "RedisCacheBackend",
    "ScheduleCache",
]
