"""
Operation results.

Service operations never raise for expected failures; they return an
OperationResult that is either a value or a typed SchedulingError.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

from src.scheduling.errors import ErrorKind, SchedulingError

T = TypeVar("T")


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    """Success-with-value or typed failure."""

    value: T | None = None
    error: SchedulingError | None = None
    stale: bool = False  # Served from last-known-good cache

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def kind(self) -> ErrorKind | None:
        return self.error.kind if self.error else None

    @classmethod
    def success(cls, value: T, *, stale: bool = False) -> OperationResult[T]:
        return cls(value=value, stale=stale)

    @classmethod
    def failure(cls, error: SchedulingError) -> OperationResult[T]:
        return cls(error=error)

    def unwrap(self) -> T:
        """Return the value or raise the carried error."""
        if self.error is not None:
            raise self.error
        return self.value
