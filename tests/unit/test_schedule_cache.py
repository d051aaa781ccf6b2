"""
Unit tests for the schedule cache and its backends.

Redis is exercised through a mocked client; the in-memory backend runs on the
manual clock so TTL expiry is deterministic.
"""

from unittest.mock import MagicMock

import pytest
import redis

from src.cache.backends import InMemoryCacheBackend, RedisCacheBackend
from src.cache.schedule_cache import ScheduleCache
from src.scheduling.errors import CacheInvalidationError, UnavailableError


# =============================================================================
# Keys
# =============================================================================


class TestKeys:
    """Key layout and namespace isolation."""

    def test_view_keys(self, cache):
        assert cache.due_key("alice") == "srs:student:alice:due"
        assert cache.overdue_key("alice", 1.0) == "srs:student:alice:overdue:1.0"
        assert cache.overdue_key("alice", 0.5) == "srs:student:alice:overdue:0.5"
        assert cache.stats_key("alice") == "srs:student:alice:stats"
        assert cache.performance_key("card-1") == "srs:item:card-1:performance"

    def test_overdue_key_keeps_full_precision(self, cache):
        assert cache.overdue_key("alice", 1) == cache.overdue_key("alice", 1.0)
        assert cache.overdue_key("alice", 1.0) != cache.overdue_key("alice", 1.0000001)

    def test_ids_are_quoted(self, cache):
        assert cache.due_key("a:b*") == "srs:student:a%3Ab%2A:due"

    def test_last_known_good_namespace(self, cache):
        assert cache.last_known_good_key(cache.due_key("alice")) == "srs:lkg:student:alice:due"

    def test_custom_prefix(self, backend):
        cache = ScheduleCache(backend, prefix="tenant1")
        assert cache.stats_key("alice") == "tenant1:student:alice:stats"


# =============================================================================
# Reads, writes and TTL
# =============================================================================


class TestReadWrite:
    def test_miss_then_hit(self, cache):
        key = cache.stats_key("alice")
        assert cache.get(key) is None

        cache.put(key, {"total_items": 3}, "stats")

        assert cache.get(key) == {"total_items": 3}
        stats = cache.stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["sets"] == 1
        assert stats["hit_rate"] == 0.5

    def test_empty_list_is_a_hit(self, cache):
        key = cache.due_key("alice")
        cache.put(key, [], "due")
        assert cache.get(key) == []

    def test_values_are_copies(self, cache):
        key = cache.due_key("alice")
        value = [{"item_id": "card-1"}]
        cache.put(key, value, "due")
        value.append({"item_id": "card-2"})

        assert cache.get(key) == [{"item_id": "card-1"}]

    def test_view_ttl_expires(self, cache, clock):
        key = cache.overdue_key("alice", 1.0)
        cache.put(key, ["x"], "overdue")

        clock.advance(seconds=179)
        assert cache.get(key) == ["x"]
        clock.advance(seconds=2)
        assert cache.get(key) is None

    def test_last_known_good_outlives_view(self, cache, clock):
        key = cache.due_key("alice")
        cache.put(key, ["x"], "due")
        clock.advance(hours=2)

        assert cache.get(key) is None
        assert cache.get_last_known_good(key) == ["x"]

    def test_read_failure_is_a_miss(self):
        backend = MagicMock()
        backend.get.side_effect = UnavailableError("down")
        cache = ScheduleCache(backend)

        assert cache.get("srs:student:alice:due") is None
        assert cache.stats()["errors"] == 1

    def test_write_failure_reported(self):
        backend = MagicMock()
        backend.set.side_effect = UnavailableError("down")
        cache = ScheduleCache(backend)

        assert cache.put("srs:student:alice:due", [], "due") is False
        assert cache.stats()["errors"] == 1


# =============================================================================
# Invalidation
# =============================================================================


class TestInvalidation:
    """One prefix deletion per student; last-known-good untouched."""

    @pytest.fixture
    def filled(self, cache):
        for sid in ("alice", "al", "bob"):
            cache.put(cache.due_key(sid), [sid], "due")
            cache.put(cache.overdue_key(sid, 1.0), [sid], "overdue")
            cache.put(cache.stats_key(sid), {"student_id": sid}, "stats")
        cache.put(cache.performance_key("card-1"), {"item_id": "card-1"}, "performance")
        return cache

    def test_student_views_dropped(self, filled):
        filled.invalidate_student("alice")

        assert filled.get(filled.due_key("alice")) is None
        assert filled.get(filled.overdue_key("alice", 1.0)) is None
        assert filled.get(filled.stats_key("alice")) is None

    def test_similar_ids_untouched(self, filled):
        filled.invalidate_student("al")

        assert filled.get(filled.due_key("alice")) == ["alice"]
        assert filled.get(filled.due_key("bob")) == ["bob"]

    def test_last_known_good_kept(self, filled):
        filled.invalidate_student("alice")
        assert filled.get_last_known_good(filled.due_key("alice")) == ["alice"]

    def test_single_prefix_deletion(self):
        backend = MagicMock()
        backend.delete_prefix.return_value = 3
        cache = ScheduleCache(backend)

        cache.invalidate_pair("alice", "card-1")

        backend.delete_prefix.assert_called_once_with("srs:student:alice:")
        backend.delete.assert_called_once_with("srs:item:card-1:performance")

    def test_pair_drops_item_performance(self, filled):
        filled.invalidate_pair("alice", "card-1")
        assert filled.get(filled.performance_key("card-1")) is None

    def test_failure_raises_after_attempting_both(self):
        backend = MagicMock()
        backend.delete_prefix.side_effect = UnavailableError("down")
        cache = ScheduleCache(backend)

        with pytest.raises(CacheInvalidationError) as exc_info:
            cache.invalidate_pair("alice", "card-1")

        backend.delete.assert_called_once()
        assert exc_info.value.student_id == "alice"
        assert exc_info.value.item_id == "card-1"


# =============================================================================
# Backends
# =============================================================================


class TestInMemoryBackend:
    def test_delete_prefix_counts(self, clock):
        backend = InMemoryCacheBackend(clock)
        backend.set("p:1", "a", 60)
        backend.set("p:2", "b", 60)
        backend.set("q:1", "c", 60)

        assert backend.delete_prefix("p:") == 2
        assert backend.keys() == ["q:1"]

    def test_delete_reports_presence(self, clock):
        backend = InMemoryCacheBackend(clock)
        backend.set("k", "v", 60)

        assert backend.delete("k") is True
        assert backend.delete("k") is False


class TestRedisBackend:
    """Redis backend against a mocked client."""

    @pytest.fixture
    def client(self):
        return MagicMock(spec=redis.Redis)

    def test_get_decodes_bytes(self, client):
        client.get.return_value = b'{"a": 1}'
        assert RedisCacheBackend(client).get("k") == '{"a": 1}'

    def test_set_uses_millisecond_ttl(self, client):
        RedisCacheBackend(client).set("k", "v", 1.5)
        client.set.assert_called_once_with("k", "v", px=1500)

    def test_delete_prefix_scans_and_deletes_in_one_transaction(self, client):
        client.scan_iter.return_value = iter(["srs:student:alice:due", "srs:student:alice:stats"])
        pipe = MagicMock()
        pipe.execute.return_value = [2]
        client.pipeline.return_value = pipe

        deleted = RedisCacheBackend(client).delete_prefix("srs:student:alice:")

        assert deleted == 2
        client.scan_iter.assert_called_once_with(match="srs:student:alice:*", count=500)
        client.pipeline.assert_called_once_with(transaction=True)
        pipe.delete.assert_called_once_with("srs:student:alice:due", "srs:student:alice:stats")

    def test_delete_prefix_escapes_pattern(self, client):
        client.scan_iter.return_value = iter([])

        assert RedisCacheBackend(client).delete_prefix("a*[b]:") == 0
        client.scan_iter.assert_called_once_with(match=r"a\*\[b\]:*", count=500)
        client.pipeline.assert_not_called()

    def test_redis_errors_become_unavailable(self, client):
        client.get.side_effect = redis.ConnectionError("refused")

        with pytest.raises(UnavailableError) as exc_info:
            RedisCacheBackend(client).get("k")
        assert exc_info.value.retryable
