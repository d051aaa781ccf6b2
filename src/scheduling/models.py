"""
Domain model for review scheduling.

- Grade / ScheduleStatus enums
- ReviewSchedule: per-(student, item) retention state
- StudyRecord: append-only feedback log entry
- View value objects served through the cache (statistics, item performance)

Everything here is a plain dataclass with a JSON-friendly ``to_dict`` /
``from_dict`` pair so cached views round-trip exactly.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum, IntEnum
from typing import Any

from src.scheduling.clock import ensure_utc

# =============================================================================
# ENUMS
# =============================================================================


class Grade(IntEnum):
    """Ordered feedback grades (Again < Hard < Good < Easy)."""

    AGAIN = 1  # Failed recall
    HARD = 2  # Recalled with serious difficulty
    GOOD = 3  # Recalled with normal effort
    EASY = 4  # Recalled with little effort

    @classmethod
    def parse(cls, value: Grade | int | str) -> Grade:
        """
        Coerce user input into a Grade.

        Accepts a Grade, its integer value (1-4) or its name (any case).
        Raises ValueError for anything else.
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, bool):
            raise ValueError(f"invalid grade: {value!r}")
        if isinstance(value, int):
            return cls(value)
        if isinstance(value, str):
            text = value.strip()
            if text.isdigit():
                return cls(int(text))
            try:
                return cls[text.upper()]
            except KeyError:
                raise ValueError(f"invalid grade: {value!r}") from None
        raise ValueError(f"invalid grade: {value!r}")


class ScheduleStatus(str, Enum):
    """Status of a schedule relative to an instant and a grace window."""

    NEW = "new"
    SCHEDULED = "scheduled"
    DUE = "due"
    OVERDUE = "overdue"
    COMPLETED = "completed"


# =============================================================================
# HELPERS
# =============================================================================


def _dump_dt(value: datetime | None) -> str | None:
    return ensure_utc(value).isoformat() if value is not None else None


def _load_dt(value: str | None) -> datetime | None:
    return ensure_utc(datetime.fromisoformat(value)) if value else None


# =============================================================================
# SCHEDULE
# =============================================================================


@dataclass
class ReviewSchedule:
    """Retention state for one student and one learning item."""

    student_id: str
    item_id: str
    interval_days: float
    ease_factor: float
    next_due_at: datetime
    consecutive_failures: int = 0
    review_count: int = 0
    lapse_count: int = 0
    last_reviewed_at: datetime | None = None
    completed: bool = False
    version: int = 0  # 0 = never persisted
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.student_id, self.item_id)

    def status_at(self, as_of: datetime, grace_days: float = 0.0) -> ScheduleStatus:
        """Derive the status at ``as_of``; overdue means past due by more than the grace window."""
        if self.completed:
            return ScheduleStatus.COMPLETED
        as_of = ensure_utc(as_of)
        if self.next_due_at < as_of - timedelta(days=grace_days):
            return ScheduleStatus.OVERDUE
        if self.next_due_at <= as_of:
            return ScheduleStatus.DUE
        if self.review_count == 0:
            return ScheduleStatus.NEW
        return ScheduleStatus.SCHEDULED

    def is_due(self, as_of: datetime) -> bool:
        return not self.completed and self.next_due_at <= ensure_utc(as_of)

    def is_overdue(self, as_of: datetime, grace_days: float) -> bool:
        return not self.completed and self.next_due_at < ensure_utc(as_of) - timedelta(days=grace_days)

    def days_overdue(self, as_of: datetime) -> float:
        """Days past next-due (0 when not yet due)."""
        delta = ensure_utc(as_of) - self.next_due_at
        return max(0.0, delta.total_seconds() / 86400)

    def with_changes(self, **changes: Any) -> ReviewSchedule:
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for name in ("next_due_at", "last_reviewed_at", "created_at", "updated_at"):
            data[name] = _dump_dt(data[name])
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReviewSchedule:
        return cls(
            student_id=data["student_id"],
            item_id=data["item_id"],
            interval_days=float(data["interval_days"]),
            ease_factor=float(data["ease_factor"]),
            next_due_at=_load_dt(data["next_due_at"]),
            consecutive_failures=int(data.get("consecutive_failures", 0)),
            review_count=int(data.get("review_count", 0)),
            lapse_count=int(data.get("lapse_count", 0)),
            last_reviewed_at=_load_dt(data.get("last_reviewed_at")),
            completed=bool(data.get("completed", False)),
            version=int(data.get("version", 0)),
            created_at=_load_dt(data.get("created_at")),
            updated_at=_load_dt(data.get("updated_at")),
        )


# =============================================================================
# STUDY RECORD
# =============================================================================


@dataclass(frozen=True)
class ResponseMeta:
    """Optional context captured with a feedback submission."""

    response_time_ms: int | None = None
    correct: bool | None = None  # Defaults to grade != AGAIN


@dataclass(frozen=True)
class StudyRecord:
    """One feedback submission. Never mutated after creation."""

    record_id: str
    student_id: str
    item_id: str
    grade: Grade
    correct: bool
    reviewed_at: datetime
    response_time_ms: int | None = None
    interval_days: float | None = None
    ease_factor: float | None = None
    next_due_at: datetime | None = None
    lapse: bool = False
    late: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["grade"] = int(self.grade)
        data["reviewed_at"] = _dump_dt(self.reviewed_at)
        data["next_due_at"] = _dump_dt(self.next_due_at)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StudyRecord:
        return cls(
            record_id=data["record_id"],
            student_id=data["student_id"],
            item_id=data["item_id"],
            grade=Grade(int(data["grade"])),
            correct=bool(data["correct"]),
            reviewed_at=_load_dt(data["reviewed_at"]),
            response_time_ms=data.get("response_time_ms"),
            interval_days=data.get("interval_days"),
            ease_factor=data.get("ease_factor"),
            next_due_at=_load_dt(data.get("next_due_at")),
            lapse=bool(data.get("lapse", False)),
            late=bool(data.get("late", False)),
        )


# =============================================================================
# VIEWS
# =============================================================================


@dataclass
class StudentStatistics:
    """Aggregate counts for a student's dashboard."""

    student_id: str
    total_items: int = 0
    due_today: int = 0
    overdue: int = 0
    new_items: int = 0
    completed_today: int = 0
    average_ease_factor: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StudentStatistics:
        return cls(**data)


@dataclass
class ItemPerformance:
    """How a single learning item performs across all students."""

    item_id: str
    total_reviews: int = 0
    success_rate: float = 0.0  # Percent, 0-100
    avg_response_time_ms: float = 0.0
    lapse_count: int = 0
    active_schedules: int = 0
    average_ease_factor: float = 0.0
    average_interval_days: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ItemPerformance:
        return cls(**data)


@dataclass
class FeedbackOutcome:
    """What ``submit_feedback`` reports back to the caller."""

    student_id: str
    item_id: str
    record_id: str
    grade: Grade
    next_due_at: datetime
    interval_days: float
    ease_factor: float
    consecutive_failures: int
    status: ScheduleStatus
    lapse: bool = False
    late: bool = False
    cache_invalidated: bool = True
    invalidation_error: str | None = field(default=None)
