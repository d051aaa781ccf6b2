"""
Spaced-repetition scheduling core.

The orchestrating SchedulingService lives in ``src.scheduling.service``; it
is not re-exported here so that importing the domain model stays free of
store and cache dependencies.
"""

from src.scheduling.clock import Clock, ManualClock, SystemClock
from src.scheduling.errors import (
    CacheInvalidationError,
    ConflictError,
    ErrorKind,
    InvariantViolationError,
    NotFoundError,
    ScheduleUpdateError,
    SchedulingError,
    UnavailableError,
    ValidationError,
)
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
from src.scheduling.policy import IntervalPolicy, PolicyConfig, PolicyOutcome, RetentionState
from src.scheduling.result import OperationResult

__all__ = [
    "CacheInvalidationError",
    "Clock",
    "ConflictError",
    "ErrorKind",
    "FeedbackOutcome",
    "Grade",
    "IntervalPolicy",
    "InvariantViolationError",
    "ItemPerformance",
    "ManualClock",
    "NotFoundError",
    "OperationResult",
    "PolicyConfig",
    "PolicyOutcome",
    "ResponseMeta",
    "RetentionState",
    "ReviewSchedule",
    "ScheduleStatus",
    "ScheduleUpdateError",
    "SchedulingError",
    "StudentStatistics",
    "StudyRecord",
    "SystemClock",
    "UnavailableError",
    "ValidationError",
]
