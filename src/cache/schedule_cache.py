"""
Schedule Cache - cache-aside layer for derived scheduling views.

Views and keys (ids are URL-quoted):
- due list          {prefix}:student:{sid}:due
- overdue list      {prefix}:student:{sid}:overdue:{grace}
- statistics        {prefix}:student:{sid}:stats
- item performance  {prefix}:item:{iid}:performance

Every view write also refreshes a long-lived last-known-good copy under
{prefix}:lkg:..., served only when the store cannot be reached. Invalidation
never touches the last-known-good namespace.

Read failures count as misses. Invalidation failures raise
CacheInvalidationError so the caller can surface them.
"""

from __future__ import annotations

import json
import threading
from typing import Any
from urllib.parse import quote

from loguru import logger

from src.cache.backends import CacheBackend
from src.scheduling.errors import CacheInvalidationError, SchedulingError

DEFAULT_TTLS = {
    "due": 300,
    "overdue": 180,
    "stats": 600,
    "performance": 1800,
    "last_known_good": 86400,
}


def _quote(value: str) -> str:
    return quote(value, safe="")


class ScheduleCache:
    """JSON cache of derived views on top of a CacheBackend."""

    def __init__(self, backend: CacheBackend, ttls: dict[str, float] | None = None, prefix: str = "srs"):
        self.backend = backend
        self.ttls = {**DEFAULT_TTLS, **(ttls or {})}
        self.prefix = prefix
        self._counters = {"hits": 0, "misses": 0, "sets": 0, "deletes": 0, "errors": 0, "stale_hits": 0}
        self._counter_lock = threading.Lock()

    # =========================================================================
    # Keys
    # =========================================================================

    def student_prefix(self, student_id: str) -> str:
        return f"{self.prefix}:student:{_quote(student_id)}:"

    def due_key(self, student_id: str) -> str:
        return f"{self.student_prefix(student_id)}due"

    def overdue_key(self, student_id: str, grace_days: float) -> str:
        # Full precision: 1.0 and 1.0000001 are separate windows
        return f"{self.student_prefix(student_id)}overdue:{float(grace_days)!r}"

    def stats_key(self, student_id: str) -> str:
        return f"{self.student_prefix(student_id)}stats"

    def performance_key(self, item_id: str) -> str:
        return f"{self.prefix}:item:{_quote(item_id)}:performance"

    def last_known_good_key(self, key: str) -> str:
        return f"{self.prefix}:lkg:{key.removeprefix(self.prefix + ':')}"

    # =========================================================================
    # Reads and writes
    # =========================================================================

    def _count(self, name: str, amount: int = 1) -> None:
        with self._counter_lock:
            self._counters[name] += amount

    def _read(self, key: str) -> Any | None:
        try:
            raw = self.backend.get(key)
        except SchedulingError as e:
            self._count("errors")
            logger.warning(f"Cache read failed for {key}, treating as miss: {e}")
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            self._count("errors")
            logger.warning(f"Discarding undecodable cache entry {key}")
            return None

    def get(self, key: str) -> Any | None:
        """Decoded value for key, or None on miss or backend failure."""
        value = self._read(key)
        if value is None:
            self._count("misses")
            logger.debug(f"Cache miss: {key}")
        else:
            self._count("hits")
            logger.debug(f"Cache hit: {key}")
        return value

    def get_last_known_good(self, key: str) -> Any | None:
        value = self._read(self.last_known_good_key(key))
        if value is not None:
            self._count("stale_hits")
        return value

    def put(self, key: str, value: Any, view: str) -> bool:
        """
        Cache a view value and refresh its last-known-good copy.

        Returns False (after logging) if the backend rejected the write.
        """
        payload = json.dumps(value, sort_keys=True)
        try:
            self.backend.set(key, payload, self.ttls[view])
            self.backend.set(self.last_known_good_key(key), payload, self.ttls["last_known_good"])
        except SchedulingError as e:
            self._count("errors")
            logger.warning(f"Cache write failed for {key}: {e}")
            return False
        self._count("sets")
        return True

    # =========================================================================
    # Invalidation
    # =========================================================================

    def invalidate_student(self, student_id: str) -> int:
        """Drop every live view of a student with one prefix deletion."""
        prefix = self.student_prefix(student_id)
        try:
            deleted = self.backend.delete_prefix(prefix)
        except SchedulingError as e:
            self._count("errors")
            raise CacheInvalidationError(
                f"could not invalidate views under {prefix}",
                student_id=student_id,
                operation="invalidate_student",
            ) from e
        self._count("deletes", deleted)
        logger.debug(f"Invalidated {deleted} cached views for student {student_id}")
        return deleted

    def invalidate_item(self, item_id: str) -> bool:
        key = self.performance_key(item_id)
        try:
            deleted = self.backend.delete(key)
        except SchedulingError as e:
            self._count("errors")
            raise CacheInvalidationError(
                f"could not invalidate {key}", item_id=item_id, operation="invalidate_item"
            ) from e
        if deleted:
            self._count("deletes")
        return deleted

    def invalidate_pair(self, student_id: str, item_id: str) -> None:
        """
        Invalidate everything a mutation of (student, item) affects.

        Both deletions are attempted; the first failure is raised afterwards.
        """
        failure: CacheInvalidationError | None = None
        for step in (lambda: self.invalidate_student(student_id), lambda: self.invalidate_item(item_id)):
            try:
                step()
            except CacheInvalidationError as e:
                failure = failure or e
        if failure is not None:
            raise failure.with_context(student_id=student_id, item_id=item_id)

    def stats(self) -> dict[str, Any]:
        with self._counter_lock:
            counters = dict(self._counters)
        lookups = counters["hits"] + counters["misses"]
        counters["hit_rate"] = round(counters["hits"] / lookups, 4) if lookups else 0.0
        counters["backend"] = self.backend.name
        return counters
