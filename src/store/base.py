"""
Base Review Schedule Store.

Persistence contract for review schedules and the study record log.
The store is the source of truth; every derived view is rebuilt from it.

Subclasses must implement:
- find / save: single-row lookup and (compare-and-swap) upsert
- find_by_student / find_due / find_overdue / find_by_item: ordered queries
- append_record / find_records: the append-only feedback log

record_review writes a study record and its schedule together. The default
runs the two single-row writes in sequence; stores with transactions
override it so a version conflict leaves no record behind.

Failures surface as ``SchedulingError`` subclasses; driver exceptions never
leak out of an implementation.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from src.scheduling.errors import ConflictError, ScheduleUpdateError, SchedulingError
from src.scheduling.models import ReviewSchedule, ScheduleStatus, StudyRecord


def due_order_key(schedule: ReviewSchedule) -> tuple:
    """Earliest due first, then most consecutive failures, then item id."""
    return (schedule.next_due_at, -schedule.consecutive_failures, schedule.item_id)


class ReviewScheduleStore(ABC):
    """Abstract persistence for ReviewSchedule and StudyRecord."""

    name: str = "base"

    @abstractmethod
    def find(self, student_id: str, item_id: str) -> ReviewSchedule | None:
        """Schedule for the pair, or None."""

    @abstractmethod
    def save(self, schedule: ReviewSchedule, expected_version: int | None = None) -> ReviewSchedule:
        """
        Upsert a schedule keyed by (student, item).

        Args:
            schedule: Schedule to write, version included
            expected_version: When given, write only if the stored version
                equals it (0 = the row must not exist yet)

        Returns:
            The schedule as stored

        Raises:
            ConflictError: expected_version did not match
            UnavailableError: storage unreachable
        """

    @abstractmethod
    def find_by_student(self, student_id: str, include_completed: bool = False) -> list[ReviewSchedule]:
        """All schedules of a student in due order."""

    @abstractmethod
    def find_due(self, student_id: str, as_of: datetime) -> list[ReviewSchedule]:
        """Active schedules with next-due <= as_of, in due order."""

    @abstractmethod
    def find_overdue(self, student_id: str, as_of: datetime, grace_days: float) -> list[ReviewSchedule]:
        """Active schedules past due by more than the grace window, in due order."""

    @abstractmethod
    def find_by_item(self, item_id: str, include_completed: bool = False) -> list[ReviewSchedule]:
        """All schedules of an item across students."""

    @abstractmethod
    def append_record(self, record: StudyRecord) -> StudyRecord:
        """Append a study record. Records are never updated."""

    @abstractmethod
    def find_records(
        self,
        student_id: str | None = None,
        item_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[StudyRecord]:
        """Study records matching the filters, oldest first. ``until`` is exclusive."""

    def record_review(
        self, schedule: ReviewSchedule, expected_version: int, record: StudyRecord
    ) -> ReviewSchedule:
        """
        Append ``record`` and compare-and-swap ``schedule`` for one review.

        Args:
            schedule: Rescheduled state, version already advanced
            expected_version: Version the schedule was computed from (0 = new)
            record: The study record for this review

        Raises:
            ConflictError: The stored version moved; nothing was written
            ScheduleUpdateError: The record was appended but the schedule
                write failed
            UnavailableError: Storage unreachable before anything was written
        """
        current = self.find(schedule.student_id, schedule.item_id)
        if (current.version if current else 0) != expected_version:
            raise ConflictError(
                "schedule was modified concurrently",
                student_id=schedule.student_id,
                item_id=schedule.item_id,
                operation="record_review",
            )

        self.append_record(record)
        try:
            return self.save(schedule, expected_version)
        except SchedulingError as e:
            raise ScheduleUpdateError(
                "study record saved but schedule update failed",
                record_id=record.record_id,
                cause=e,
                student_id=schedule.student_id,
                item_id=schedule.item_id,
                operation="record_review",
            ) from e

    def count_due(self, student_id: str, as_of: datetime) -> int:
        return len(self.find_due(student_id, as_of))

    def count_by_status(
        self, student_id: str, as_of: datetime, grace_days: float = 0.0
    ) -> dict[ScheduleStatus, int]:
        """Number of schedules per status; every status is present."""
        counts = {status: 0 for status in ScheduleStatus}
        for schedule in self.find_by_student(student_id, include_completed=True):
            counts[schedule.status_at(as_of, grace_days)] += 1
        return counts

    def close(self) -> None:
        """Release resources held by the store."""
