"""
Review scheduling tables.

Implements:
- ReviewScheduleRow: one row per (student, item) with an optimistic version
- StudyRecordRow: append-only feedback log

Timestamps are stored as timezone-aware UTC values. SQLite drops the offset,
so readers must re-attach UTC (see ``ensure_utc``).
"""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class ReviewScheduleRow(Base):
    """Retention state for a (student, item) pair."""

    __tablename__ = "review_schedules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    student_id: Mapped[str] = mapped_column(String(255), nullable=False)
    item_id: Mapped[str] = mapped_column(String(255), nullable=False)
    interval_days: Mapped[float] = mapped_column(Float, nullable=False)
    ease_factor: Mapped[float] = mapped_column(Float, nullable=False)
    next_due_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    review_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    lapse_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("student_id", "item_id", name="uq_schedule_student_item"),
        Index("idx_schedule_student_due", "student_id", "next_due_at"),
        Index("idx_schedule_item", "item_id"),
    )


class StudyRecordRow(Base):
    """A single feedback submission."""

    __tablename__ = "study_records"

    record_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    student_id: Mapped[str] = mapped_column(String(255), nullable=False)
    item_id: Mapped[str] = mapped_column(String(255), nullable=False)
    grade: Mapped[int] = mapped_column(Integer, nullable=False)  # 1-4
    correct: Mapped[bool] = mapped_column(Boolean, nullable=False)
    response_time_ms: Mapped[int | None] = mapped_column(Integer)
    reviewed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    interval_days: Mapped[float | None] = mapped_column(Float)
    ease_factor: Mapped[float | None] = mapped_column(Float)
    next_due_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    lapse: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    late: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        Index("idx_record_student_reviewed", "student_id", "reviewed_at"),
        Index("idx_record_item", "item_id"),
    )
