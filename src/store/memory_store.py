"""
In-memory review schedule store.

Dict keyed by (student_id, item_id) behind a single lock. Stored objects are
copies so callers can never mutate store state by accident.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timedelta

from loguru import logger

from src.scheduling.clock import ensure_utc
from src.scheduling.errors import ConflictError
from src.scheduling.models import ReviewSchedule, StudyRecord
from src.store.base import ReviewScheduleStore, due_order_key


class InMemoryReviewScheduleStore(ReviewScheduleStore):
    """Thread-safe process-local store."""

    name = "memory"

    def __init__(self):
        self._schedules: dict[tuple[str, str], ReviewSchedule] = {}
        self._records: list[StudyRecord] = []
        self._record_ids: set[str] = set()
        self._lock = threading.Lock()

    def find(self, student_id: str, item_id: str) -> ReviewSchedule | None:
        with self._lock:
            schedule = self._schedules.get((student_id, item_id))
            return replace(schedule) if schedule else None

    def _check_version(self, schedule: ReviewSchedule, expected_version: int, operation: str) -> None:
        current = self._schedules.get(schedule.key)
        current_version = current.version if current else 0
        if current_version != expected_version:
            logger.debug(f"Version conflict on {schedule.key}: stored={current_version}, expected={expected_version}")
            raise ConflictError(
                "schedule was modified concurrently",
                student_id=schedule.student_id,
                item_id=schedule.item_id,
                operation=operation,
            )

    def _check_new_record(self, record: StudyRecord) -> None:
        if record.record_id in self._record_ids:
            raise ConflictError(
                f"duplicate study record {record.record_id}",
                student_id=record.student_id,
                item_id=record.item_id,
                operation="append_record",
            )

    def save(self, schedule: ReviewSchedule, expected_version: int | None = None) -> ReviewSchedule:
        with self._lock:
            if expected_version is not None:
                self._check_version(schedule, expected_version, "save")
            self._schedules[schedule.key] = replace(schedule)
            return replace(schedule)

    def record_review(
        self, schedule: ReviewSchedule, expected_version: int, record: StudyRecord
    ) -> ReviewSchedule:
        with self._lock:
            self._check_version(schedule, expected_version, "record_review")
            self._check_new_record(record)
            self._records.append(record)
            self._record_ids.add(record.record_id)
            self._schedules[schedule.key] = replace(schedule)
            return replace(schedule)

    def find_by_student(self, student_id: str, include_completed: bool = False) -> list[ReviewSchedule]:
        with self._lock:
            found = [
                replace(s)
                for (sid, _), s in self._schedules.items()
                if sid == student_id and (include_completed or not s.completed)
            ]
        return sorted(found, key=due_order_key)

    def find_due(self, student_id: str, as_of: datetime) -> list[ReviewSchedule]:
        as_of = ensure_utc(as_of)
        return [s for s in self.find_by_student(student_id) if s.next_due_at <= as_of]

    def find_overdue(self, student_id: str, as_of: datetime, grace_days: float) -> list[ReviewSchedule]:
        cutoff = ensure_utc(as_of) - timedelta(days=grace_days)
        return [s for s in self.find_by_student(student_id) if s.next_due_at < cutoff]

    def find_by_item(self, item_id: str, include_completed: bool = False) -> list[ReviewSchedule]:
        with self._lock:
            found = [
                replace(s)
                for (_, iid), s in self._schedules.items()
                if iid == item_id and (include_completed or not s.completed)
            ]
        return sorted(found, key=lambda s: s.student_id)

    def append_record(self, record: StudyRecord) -> StudyRecord:
        with self._lock:
            self._check_new_record(record)
            self._records.append(record)
            self._record_ids.add(record.record_id)
        return record

    def find_records(
        self,
        student_id: str | None = None,
        item_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[StudyRecord]:
        since = ensure_utc(since) if since else None
        until = ensure_utc(until) if until else None
        with self._lock:
            records = list(self._records)
        return sorted(
            (
                r
                for r in records
                if (student_id is None or r.student_id == student_id)
                and (item_id is None or r.item_id == item_id)
                and (since is None or r.reviewed_at >= since)
                and (until is None or r.reviewed_at < until)
            ),
            key=lambda r: (r.reviewed_at, r.record_id),
        )
