"""
Typed failures for the scheduling core.

Every error carries the student id, item id and operation name so a failure
can be traced without exposing storage details to the caller.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Failure categories exposed to callers."""

    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    UNAVAILABLE = "unavailable"
    INVALID = "invalid"
    INTERNAL = "internal"


class SchedulingError(Exception):
    """Base class for all scheduling failures."""

    kind: ErrorKind = ErrorKind.INTERNAL
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        student_id: str | None = None,
        item_id: str | None = None,
        operation: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.student_id = student_id
        self.item_id = item_id
        self.operation = operation

    def with_context(
        self,
        *,
        student_id: str | None = None,
        item_id: str | None = None,
        operation: str | None = None,
    ) -> SchedulingError:
        """Fill in context the raising layer did not know about."""
        self.student_id = self.student_id or student_id
        self.item_id = self.item_id or item_id
        self.operation = self.operation or operation
        return self

    def to_dict(self) -> dict[str, str | bool | None]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "student_id": self.student_id,
            "item_id": self.item_id,
            "operation": self.operation,
            "retryable": self.retryable,
        }

    def __str__(self) -> str:
        context = ", ".join(
            f"{name}={value}"
            for name, value in (
                ("operation", self.operation),
                ("student", self.student_id),
                ("item", self.item_id),
            )
            if value
        )
        return f"{self.message} ({context})" if context else self.message


class ValidationError(SchedulingError):
    """Malformed input. Rejected before touching store or cache; never retried."""

    kind = ErrorKind.INVALID


class NotFoundError(SchedulingError):
    """The requested schedule does not exist."""

    kind = ErrorKind.NOT_FOUND


class ConflictError(SchedulingError):
    """A concurrent update won the race; retry once against fresh state."""

    kind = ErrorKind.CONFLICT
    retryable = True


class UnavailableError(SchedulingError):
    """Store or cache unreachable or timed out; retry with backoff."""

    kind = ErrorKind.UNAVAILABLE
    retryable = True


class InvariantViolationError(SchedulingError):
    """The policy produced a value outside its designed bounds."""

    kind = ErrorKind.INTERNAL


class ScheduleUpdateError(SchedulingError):
    """
    The StudyRecord was persisted but the schedule write failed.

    ``record_id`` identifies the persisted record; reconciling the pair
    replays the log and repairs the schedule. Resubmitting the feedback
    would log it twice.
    """

    retryable = True

    def __init__(self, message: str, *, record_id: str, cause: SchedulingError, **context):
        super().__init__(message, **context)
        self.record_id = record_id
        self.cause = cause
        self.kind = cause.kind if cause.kind in (ErrorKind.CONFLICT, ErrorKind.UNAVAILABLE) else ErrorKind.UNAVAILABLE

    def to_dict(self) -> dict[str, str | bool | None]:
        data = super().to_dict()
        data["record_id"] = self.record_id
        return data


class CacheInvalidationError(SchedulingError):
    """Derived views could not be invalidated after a successful mutation."""

    kind = ErrorKind.UNAVAILABLE
    retryable = True
