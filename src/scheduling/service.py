"""
Scheduling Service - orchestrates policy, store, cache and clock.

Read path (cache-aside):
    cache hit -> value
    miss      -> store (with timeout) -> cache -> value
    store down -> last-known-good copy (stale=True) or UNAVAILABLE

Write path (submit_feedback):
    validate -> lock pair -> load/seed -> policy -> StudyRecord plus
    compare-and-swap schedule in one store call -> invalidate views
    -> FeedbackOutcome

Every public operation returns an OperationResult; SchedulingErrors never
escape as exceptions.
"""

from __future__ import annotations

import math
import threading
import uuid
from collections import defaultdict
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from typing import Any, TypeVar

from loguru import logger

from config import Settings, get_settings
from src.cache.backends import CacheBackend, InMemoryCacheBackend, RedisCacheBackend
from src.cache.schedule_cache import ScheduleCache
from src.scheduling.clock import Clock, SystemClock, end_of_day, start_of_day
from src.scheduling.errors import (
    CacheInvalidationError,
    NotFoundError,
    ScheduleUpdateError,
    SchedulingError,
    UnavailableError,
    ValidationError,
)
from src.scheduling.locks import ShardedLock
from src.scheduling.models import (
    FeedbackOutcome,
    Grade,
    ItemPerformance,
    ResponseMeta,
    ReviewSchedule,
    ScheduleStatus,
    StudentStatistics,
    StudyRecord,
)
from src.scheduling.policy import IntervalPolicy, PolicyConfig, RetentionState
from src.scheduling.result import OperationResult
from src.store.base import ReviewScheduleStore

T = TypeVar("T")

MAX_ID_LENGTH = 255


def _mean(values: list[float]) -> float:
    return round(sum(values) / len(values), 4) if values else 0.0


class SchedulingService:
    """
    Spaced-repetition scheduling over an injected store, cache and clock.

    Mutations of the same (student, item) pair are serialized in-process by a
    sharded lock and across processes by the store's version check.
    """

    def __init__(
        self,
        store: ReviewScheduleStore,
        cache: ScheduleCache,
        policy: IntervalPolicy | None = None,
        clock: Clock | None = None,
        *,
        overdue_grace_days: float = 1.0,
        store_timeout_seconds: float = 5.0,
        store_workers: int = 8,
        lock_shards: int = 64,
    ):
        self.store = store
        self.policy = policy or IntervalPolicy()
        self.clock = clock or SystemClock()
        self.overdue_grace_days = overdue_grace_days
        self.store_timeout_seconds = store_timeout_seconds
        self._cache = cache
        self._locks = ShardedLock(lock_shards)
        self._executor = ThreadPoolExecutor(max_workers=store_workers, thread_name_prefix="srs-store")
        # Bumped on every invalidation; a read that started before the bump must not repopulate
        self._generations: dict[tuple[str, str], int] = defaultdict(int)
        self._generation_lock = threading.Lock()
        self._scope_locks = ShardedLock(lock_shards)

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        clock: Clock | None = None,
        store: ReviewScheduleStore | None = None,
        cache_backend: CacheBackend | None = None,
    ) -> SchedulingService:
        """Wire a service from configuration."""
        settings = settings or get_settings()
        clock = clock or SystemClock()

        if store is None:
            if settings.store_backend == "memory":
                from src.store.memory_store import InMemoryReviewScheduleStore

                store = InMemoryReviewScheduleStore()
            else:
                from src.db.database import create_db_engine, init_db
                from src.store.sql_store import SqlReviewScheduleStore

                engine = create_db_engine(settings.database_url, echo=settings.log_level == "DEBUG")
                init_db(engine)
                store = SqlReviewScheduleStore(engine)

        if cache_backend is None:
            if settings.cache_backend == "redis":
                cache_backend = RedisCacheBackend(url=settings.redis_url, socket_timeout=settings.redis_socket_timeout)
            else:
                cache_backend = InMemoryCacheBackend(clock)

        cache = ScheduleCache(cache_backend, ttls=settings.get_cache_ttls(), prefix=settings.cache_key_prefix)
        logger.debug(f"Scheduling service: store={store.name}, cache={cache_backend.name}")

        return cls(
            store,
            cache,
            IntervalPolicy(PolicyConfig.from_settings(settings)),
            clock,
            overdue_grace_days=settings.overdue_grace_days,
            store_timeout_seconds=settings.store_timeout_seconds,
            store_workers=settings.store_workers,
            lock_shards=settings.lock_shards,
        )

    def close(self) -> None:
        self._executor.shutdown(wait=True)
        self.store.close()
        self._cache.backend.close()

    # =========================================================================
    # Internals
    # =========================================================================

    def _call_store(self, operation: str, fn: Callable[..., T], *args: Any, student_id=None, item_id=None) -> T:
        """Run a store call on the worker pool with the configured timeout."""
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=self.store_timeout_seconds)
        except FuturesTimeout:
            future.cancel()
            logger.warning(f"Store call timed out after {self.store_timeout_seconds}s: {operation}")
            raise UnavailableError(
                "schedule store timed out", student_id=student_id, item_id=item_id, operation=operation
            ) from None
        except SchedulingError as e:
            raise e.with_context(student_id=student_id, item_id=item_id, operation=operation)

    def _generation(self, scope: tuple[str, str]) -> int:
        with self._generation_lock:
            return self._generations[scope]

    def _bump(self, *scopes: tuple[str, str]) -> None:
        for scope in scopes:
            # Serialized with the check-and-put in _cached_read
            with self._scope_locks.hold(*scope), self._generation_lock:
                self._generations[scope] += 1

    def _cached_read(
        self,
        operation: str,
        key: str,
        view: str,
        scope: tuple[str, str],
        loader: Callable[[], T],
        encode: Callable[[T], Any],
        decode: Callable[[Any], T],
        **context: str,
    ) -> OperationResult[T]:
        cached = self._cache.get(key)
        if cached is not None:
            return OperationResult.success(decode(cached))

        generation = self._generation(scope)
        try:
            value = self._call_store(operation, loader, **context)
        except UnavailableError as e:
            fallback = self._cache.get_last_known_good(key)
            if fallback is not None:
                logger.warning(f"{operation}: store unavailable, serving last-known-good {key}")
                return OperationResult.success(decode(fallback), stale=True)
            return OperationResult.failure(e)
        except SchedulingError as e:
            return OperationResult.failure(e)

        with self._scope_locks.hold(*scope):
            if self._generation(scope) != generation:
                logger.debug(f"{operation}: views invalidated during load, not caching {key}")
                return OperationResult.success(value)
            self._cache.put(key, encode(value), view)
        return OperationResult.success(value)

    def _invalidate(self, student_id: str, item_id: str) -> tuple[bool, str | None]:
        """Invalidate every view touched by a mutation; never raises."""
        self._bump(("student", student_id), ("item", item_id))
        try:
            self._cache.invalidate_pair(student_id, item_id)
        except CacheInvalidationError as e:
            logger.warning(f"Cache invalidation failed for ({student_id}, {item_id}): {e}")
            return False, str(e)
        return True, None

    @staticmethod
    def _validate_id(value: Any, name: str, operation: str) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"{name} must be a non-empty string", operation=operation)
        if len(value) > MAX_ID_LENGTH:
            raise ValidationError(f"{name} exceeds {MAX_ID_LENGTH} characters", operation=operation)
        return value

    def _validate_pair(self, student_id: Any, item_id: Any, operation: str) -> None:
        self._validate_id(student_id, "student_id", operation)
        self._validate_id(item_id, "item_id", operation)

    @staticmethod
    def _encode_schedules(schedules: list[ReviewSchedule]) -> list[dict]:
        return [s.to_dict() for s in schedules]

    @staticmethod
    def _decode_schedules(data: list[dict]) -> list[ReviewSchedule]:
        return [ReviewSchedule.from_dict(d) for d in data]

    # =========================================================================
    # Views
    # =========================================================================

    def get_due_today(self, student_id: str) -> OperationResult[list[ReviewSchedule]]:
        """Active schedules due by the end of the current UTC day, earliest first."""
        operation = "get_due_today"
        try:
            self._validate_id(student_id, "student_id", operation)
        except ValidationError as e:
            return OperationResult.failure(e)

        as_of = end_of_day(self.clock.now())
        return self._cached_read(
            operation,
            self._cache.due_key(student_id),
            "due",
            ("student", student_id),
            lambda: self.store.find_due(student_id, as_of),
            self._encode_schedules,
            self._decode_schedules,
            student_id=student_id,
        )

    def get_overdue(self, student_id: str, grace_days: float | None = None) -> OperationResult[list[ReviewSchedule]]:
        """Active schedules past due by more than the grace window."""
        operation = "get_overdue"
        grace = self.overdue_grace_days if grace_days is None else grace_days
        try:
            self._validate_id(student_id, "student_id", operation)
            if isinstance(grace, bool) or not isinstance(grace, (int, float)) or not math.isfinite(grace) or grace < 0:
                raise ValidationError("grace_days must be a non-negative number", operation=operation)
        except ValidationError as e:
            return OperationResult.failure(e.with_context(student_id=student_id))

        now = self.clock.now()
        return self._cached_read(
            operation,
            self._cache.overdue_key(student_id, grace),
            "overdue",
            ("student", student_id),
            lambda: self.store.find_overdue(student_id, now, grace),
            self._encode_schedules,
            self._decode_schedules,
            student_id=student_id,
        )

    def get_statistics(self, student_id: str) -> OperationResult[StudentStatistics]:
        """Aggregate counts for a student; all zeros when nothing is scheduled."""
        operation = "get_statistics"
        try:
            self._validate_id(student_id, "student_id", operation)
        except ValidationError as e:
            return OperationResult.failure(e)

        now = self.clock.now()
        grace = self.overdue_grace_days

        def load() -> StudentStatistics:
            counts = self.store.count_by_status(student_id, now, grace)
            active = self.store.find_by_student(student_id)
            reviewed_today = self.store.find_records(student_id=student_id, since=start_of_day(now))
            return StudentStatistics(
                student_id=student_id,
                total_items=len(active),
                due_today=self.store.count_due(student_id, end_of_day(now)),
                overdue=counts[ScheduleStatus.OVERDUE],
                new_items=counts[ScheduleStatus.NEW],
                completed_today=len(reviewed_today),
                average_ease_factor=_mean([s.ease_factor for s in active]),
            )

        return self._cached_read(
            operation,
            self._cache.stats_key(student_id),
            "stats",
            ("student", student_id),
            load,
            StudentStatistics.to_dict,
            StudentStatistics.from_dict,
            student_id=student_id,
        )

    def get_item_performance(self, item_id: str) -> OperationResult[ItemPerformance]:
        """How an item performs across all students."""
        operation = "get_item_performance"
        try:
            self._validate_id(item_id, "item_id", operation)
        except ValidationError as e:
            return OperationResult.failure(e)

        def load() -> ItemPerformance:
            records = self.store.find_records(item_id=item_id)
            schedules = self.store.find_by_item(item_id)
            timings = [r.response_time_ms for r in records if r.response_time_ms is not None]
            correct = sum(1 for r in records if r.correct)
            return ItemPerformance(
                item_id=item_id,
                total_reviews=len(records),
                success_rate=round(100.0 * correct / len(records), 2) if records else 0.0,
                avg_response_time_ms=_mean(timings),
                lapse_count=sum(1 for r in records if r.lapse),
                active_schedules=len(schedules),
                average_ease_factor=_mean([s.ease_factor for s in schedules]),
                average_interval_days=_mean([s.interval_days for s in schedules]),
            )

        return self._cached_read(
            operation,
            self._cache.performance_key(item_id),
            "performance",
            ("item", item_id),
            load,
            ItemPerformance.to_dict,
            ItemPerformance.from_dict,
            item_id=item_id,
        )

    def get_schedule(self, student_id: str, item_id: str) -> OperationResult[ReviewSchedule]:
        """Current schedule of a pair, read straight from the store."""
        operation = "get_schedule"
        try:
            self._validate_pair(student_id, item_id, operation)
            schedule = self._call_store(
                operation, self.store.find, student_id, item_id, student_id=student_id, item_id=item_id
            )
        except SchedulingError as e:
            return OperationResult.failure(e.with_context(student_id=student_id, item_id=item_id))
        if schedule is None:
            return OperationResult.failure(
                NotFoundError("no schedule for this pair", student_id=student_id, item_id=item_id, operation=operation)
            )
        return OperationResult.success(schedule)

    def cache_stats(self) -> OperationResult[dict[str, Any]]:
        return OperationResult.success(self._cache.stats())

    # =========================================================================
    # Mutations
    # =========================================================================

    def submit_feedback(
        self,
        student_id: str,
        item_id: str,
        grade: Grade | int | str,
        response_meta: ResponseMeta | None = None,
    ) -> OperationResult[FeedbackOutcome]:
        """
        Record one review and reschedule the item.

        The StudyRecord and the schedule are written by one store call. A
        CONFLICT means nothing was written and the submission can be retried
        once. A store whose record_review is not atomic may report
        ScheduleUpdateError carrying the record id instead; reconcile_schedule
        repairs the schedule from the log and the submission must not be
        resent.

        A write that times out is reported as UNAVAILABLE, but the store may
        still complete it. Check find_records for the pair before resending,
        or the grade is logged twice.
        """
        operation = "submit_feedback"
        context = {"student_id": student_id, "item_id": item_id, "operation": operation}
        meta = response_meta or ResponseMeta()
        try:
            self._validate_pair(student_id, item_id, operation)
            try:
                grade = Grade.parse(grade)
            except ValueError as e:
                raise ValidationError(str(e), operation=operation) from e
            rt = meta.response_time_ms
            if rt is not None and (isinstance(rt, bool) or not isinstance(rt, int) or rt < 0):
                raise ValidationError("response_time_ms must be a non-negative integer", operation=operation)
        except ValidationError as e:
            return OperationResult.failure(e.with_context(student_id=student_id, item_id=item_id))

        with self._locks.hold(student_id, item_id):
            try:
                current = self._call_store(
                    operation, self.store.find, student_id, item_id, student_id=student_id, item_id=item_id
                )
                if current is not None and current.completed:
                    raise ValidationError("schedule is completed", **context)

                now = self.clock.now()
                base = current or self.policy.new_schedule(student_id, item_id, now)
                outcome = self.policy.compute_next(
                    RetentionState.of(current) if current else None, grade, now
                )
            except SchedulingError as e:
                return OperationResult.failure(e.with_context(student_id=student_id, item_id=item_id))

            state = outcome.state
            record = StudyRecord(
                record_id=uuid.uuid4().hex,
                student_id=student_id,
                item_id=item_id,
                grade=grade,
                correct=meta.correct if meta.correct is not None else grade != Grade.AGAIN,
                reviewed_at=now,
                response_time_ms=meta.response_time_ms,
                interval_days=state.interval_days,
                ease_factor=state.ease_factor,
                next_due_at=state.next_due_at,
                lapse=outcome.lapse,
                late=outcome.late,
            )
            updated = state.apply_to(base).with_changes(
                version=base.version + 1,
                created_at=base.created_at or now,
                updated_at=now,
            )
            try:
                self._call_store(
                    operation,
                    self.store.record_review,
                    updated,
                    base.version,
                    record,
                    student_id=student_id,
                    item_id=item_id,
                )
            except ScheduleUpdateError as e:
                logger.error(f"Schedule update failed after record {e.record_id} was stored: {e}")
                return OperationResult.failure(e)
            except SchedulingError as e:
                return OperationResult.failure(e)

            invalidated, invalidation_error = self._invalidate(student_id, item_id)

        logger.info(
            f"Feedback {grade.name} for ({student_id}, {item_id}): "
            f"interval={updated.interval_days:.2f}d ease={updated.ease_factor:.2f} "
            f"next_due={updated.next_due_at.isoformat()}"
            + (" [lapse]" if outcome.lapse else "")
            + (" [late]" if outcome.late else "")
        )
        return OperationResult.success(
            FeedbackOutcome(
                student_id=student_id,
                item_id=item_id,
                record_id=record.record_id,
                grade=grade,
                next_due_at=updated.next_due_at,
                interval_days=updated.interval_days,
                ease_factor=updated.ease_factor,
                consecutive_failures=updated.consecutive_failures,
                status=updated.status_at(now, self.overdue_grace_days),
                lapse=outcome.lapse,
                late=outcome.late,
                cache_invalidated=invalidated,
                invalidation_error=invalidation_error,
            )
        )

    def enroll(self, student_id: str, item_id: str) -> OperationResult[ReviewSchedule]:
        """First exposure: create a seed schedule due now. Existing schedules are returned unchanged."""
        operation = "enroll"
        try:
            self._validate_pair(student_id, item_id, operation)
        except ValidationError as e:
            return OperationResult.failure(e.with_context(student_id=student_id, item_id=item_id))

        with self._locks.hold(student_id, item_id):
            try:
                current = self._call_store(
                    operation, self.store.find, student_id, item_id, student_id=student_id, item_id=item_id
                )
                if current is not None:
                    return OperationResult.success(current)
                schedule = self.policy.new_schedule(student_id, item_id, self.clock.now()).with_changes(version=1)
                self._call_store(operation, self.store.save, schedule, 0, student_id=student_id, item_id=item_id)
            except SchedulingError as e:
                return OperationResult.failure(e)
            self._invalidate(student_id, item_id)

        logger.info(f"Enrolled ({student_id}, {item_id}), due {schedule.next_due_at.isoformat()}")
        return OperationResult.success(schedule)

    def complete_schedule(self, student_id: str, item_id: str) -> OperationResult[ReviewSchedule]:
        """Deactivate a schedule. The row and its records are kept."""
        operation = "complete_schedule"
        try:
            self._validate_pair(student_id, item_id, operation)
        except ValidationError as e:
            return OperationResult.failure(e.with_context(student_id=student_id, item_id=item_id))

        with self._locks.hold(student_id, item_id):
            try:
                current = self._call_store(
                    operation, self.store.find, student_id, item_id, student_id=student_id, item_id=item_id
                )
                if current is None:
                    raise NotFoundError("no schedule for this pair", student_id=student_id, item_id=item_id)
                if current.completed:
                    return OperationResult.success(current)
                updated = current.with_changes(
                    completed=True, version=current.version + 1, updated_at=self.clock.now()
                )
                self._call_store(
                    operation, self.store.save, updated, current.version, student_id=student_id, item_id=item_id
                )
            except SchedulingError as e:
                return OperationResult.failure(e.with_context(operation=operation))
            self._invalidate(student_id, item_id)

        logger.info(f"Completed schedule ({student_id}, {item_id})")
        return OperationResult.success(updated)

    def reconcile_schedule(self, student_id: str, item_id: str) -> OperationResult[ReviewSchedule]:
        """
        Rebuild a schedule by replaying its study records from seed values.

        Repairs a schedule left behind by a ScheduleUpdateError. A pair with
        no records is returned unchanged.
        """
        operation = "reconcile_schedule"
        try:
            self._validate_pair(student_id, item_id, operation)
        except ValidationError as e:
            return OperationResult.failure(e.with_context(student_id=student_id, item_id=item_id))

        with self._locks.hold(student_id, item_id):
            try:
                records = self._call_store(
                    operation,
                    lambda: self.store.find_records(student_id=student_id, item_id=item_id),
                    student_id=student_id,
                    item_id=item_id,
                )
                current = self._call_store(
                    operation, self.store.find, student_id, item_id, student_id=student_id, item_id=item_id
                )
                if not records:
                    if current is None:
                        raise NotFoundError("no schedule or study records for this pair", operation=operation)
                    return OperationResult.success(current)

                state = self.policy.replay(records)
                now = self.clock.now()
                base = current or self.policy.new_schedule(student_id, item_id, records[0].reviewed_at)
                rebuilt = state.apply_to(base).with_changes(version=base.version + 1, updated_at=now)
                self._call_store(
                    operation, self.store.save, rebuilt, base.version, student_id=student_id, item_id=item_id
                )
            except SchedulingError as e:
                return OperationResult.failure(e.with_context(student_id=student_id, item_id=item_id))
            self._invalidate(student_id, item_id)

        logger.info(
            f"Reconciled ({student_id}, {item_id}) from {len(records)} records: "
            f"interval={rebuilt.interval_days:.2f}d next_due={rebuilt.next_due_at.isoformat()}"
        )
        return OperationResult.success(rebuilt)
