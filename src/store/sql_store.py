"""
SQLAlchemy review schedule store.

Backs the ``review_schedules`` and ``study_records`` tables (SQLite by
default, PostgreSQL through psycopg2). Compare-and-swap writes use
``UPDATE ... WHERE version = :expected`` so writers in other processes
cannot lose updates either.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta

from loguru import logger
from sqlalchemy import Engine, select, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from src.db.database import get_session_factory, session_scope
from src.db.models import ReviewScheduleRow, StudyRecordRow
from src.scheduling.clock import ensure_utc
from src.scheduling.errors import ConflictError, UnavailableError
from src.scheduling.models import Grade, ReviewSchedule, StudyRecord
from src.store.base import ReviewScheduleStore

_SCHEDULE_FIELDS = (
    "interval_days",
    "ease_factor",
    "next_due_at",
    "consecutive_failures",
    "review_count",
    "lapse_count",
    "last_reviewed_at",
    "completed",
    "version",
    "created_at",
    "updated_at",
)


def _utc_or_none(value: datetime | None) -> datetime | None:
    return ensure_utc(value) if value is not None else None


def _to_schedule(row: ReviewScheduleRow) -> ReviewSchedule:
    return ReviewSchedule(
        student_id=row.student_id,
        item_id=row.item_id,
        interval_days=row.interval_days,
        ease_factor=row.ease_factor,
        next_due_at=ensure_utc(row.next_due_at),
        consecutive_failures=row.consecutive_failures,
        review_count=row.review_count,
        lapse_count=row.lapse_count,
        last_reviewed_at=_utc_or_none(row.last_reviewed_at),
        completed=row.completed,
        version=row.version,
        created_at=_utc_or_none(row.created_at),
        updated_at=_utc_or_none(row.updated_at),
    )


def _schedule_values(schedule: ReviewSchedule) -> dict:
    values = {name: getattr(schedule, name) for name in _SCHEDULE_FIELDS}
    for name in ("next_due_at", "last_reviewed_at", "created_at", "updated_at"):
        values[name] = _utc_or_none(values[name])
    return values


def _to_record(row: StudyRecordRow) -> StudyRecord:
    return StudyRecord(
        record_id=row.record_id,
        student_id=row.student_id,
        item_id=row.item_id,
        grade=Grade(row.grade),
        correct=row.correct,
        reviewed_at=ensure_utc(row.reviewed_at),
        response_time_ms=row.response_time_ms,
        interval_days=row.interval_days,
        ease_factor=row.ease_factor,
        next_due_at=_utc_or_none(row.next_due_at),
        lapse=row.lapse,
        late=row.late,
    )


class SqlReviewScheduleStore(ReviewScheduleStore):
    """Relational store over SQLAlchemy 2.0 sessions."""

    name = "sql"

    def __init__(self, engine: Engine | None = None):
        self._engine = engine
        self._factory = get_session_factory(engine)

    @contextmanager
    def _session(self, operation: str, student_id: str | None = None, item_id: str | None = None) -> Iterator[Session]:
        """Transactional session with driver errors translated."""
        try:
            with session_scope(self._factory) as session:
                yield session
        except IntegrityError as e:
            logger.debug(f"Store integrity error during {operation}: {e}")
            raise ConflictError(
                "concurrent write on the same schedule", student_id=student_id, item_id=item_id, operation=operation
            ) from e
        except OperationalError as e:
            logger.warning(f"Store unavailable during {operation}: {e}")
            raise UnavailableError(
                "schedule store unavailable", student_id=student_id, item_id=item_id, operation=operation
            ) from e
        except SQLAlchemyError as e:
            logger.warning(f"Store failure during {operation}: {e}")
            raise UnavailableError(
                "schedule store failure", student_id=student_id, item_id=item_id, operation=operation
            ) from e

    @staticmethod
    def _select_pair(student_id: str, item_id: str):
        return select(ReviewScheduleRow).where(
            ReviewScheduleRow.student_id == student_id,
            ReviewScheduleRow.item_id == item_id,
        )

    @staticmethod
    def _due_order(stmt):
        return stmt.order_by(
            ReviewScheduleRow.next_due_at.asc(),
            ReviewScheduleRow.consecutive_failures.desc(),
            ReviewScheduleRow.item_id.asc(),
        )

    def find(self, student_id: str, item_id: str) -> ReviewSchedule | None:
        with self._session("find", student_id, item_id) as session:
            row = session.execute(self._select_pair(student_id, item_id)).scalar_one_or_none()
            return _to_schedule(row) if row else None

    def _write_schedule(
        self, session: Session, schedule: ReviewSchedule, expected_version: int | None, operation: str
    ) -> None:
        sid, iid = schedule.key
        values = _schedule_values(schedule)

        if expected_version is None:
            row = session.execute(self._select_pair(sid, iid)).scalar_one_or_none()
            if row is None:
                session.add(ReviewScheduleRow(student_id=sid, item_id=iid, **values))
            else:
                for name, value in values.items():
                    setattr(row, name, value)
        elif expected_version == 0:
            # Unique constraint rejects a concurrent first insert
            session.add(ReviewScheduleRow(student_id=sid, item_id=iid, **values))
            session.flush()
        else:
            result = session.execute(
                update(ReviewScheduleRow)
                .where(
                    ReviewScheduleRow.student_id == sid,
                    ReviewScheduleRow.item_id == iid,
                    ReviewScheduleRow.version == expected_version,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                logger.debug(f"Version conflict on ({sid}, {iid}): expected={expected_version}")
                raise ConflictError(
                    "schedule was modified concurrently", student_id=sid, item_id=iid, operation=operation
                )

    @staticmethod
    def _add_record(session: Session, record: StudyRecord) -> None:
        session.add(
            StudyRecordRow(
                record_id=record.record_id,
                student_id=record.student_id,
                item_id=record.item_id,
                grade=int(record.grade),
                correct=record.correct,
                response_time_ms=record.response_time_ms,
                reviewed_at=ensure_utc(record.reviewed_at),
                interval_days=record.interval_days,
                ease_factor=record.ease_factor,
                next_due_at=_utc_or_none(record.next_due_at),
                lapse=record.lapse,
                late=record.late,
            )
        )

    def save(self, schedule: ReviewSchedule, expected_version: int | None = None) -> ReviewSchedule:
        with self._session("save", *schedule.key) as session:
            self._write_schedule(session, schedule, expected_version, "save")
        return schedule

    def record_review(
        self, schedule: ReviewSchedule, expected_version: int, record: StudyRecord
    ) -> ReviewSchedule:
        # Schedule first: a version conflict rolls back before the record is added
        with self._session("record_review", *schedule.key) as session:
            self._write_schedule(session, schedule, expected_version, "record_review")
            self._add_record(session, record)
        return schedule

    def find_by_student(self, student_id: str, include_completed: bool = False) -> list[ReviewSchedule]:
        stmt = select(ReviewScheduleRow).where(ReviewScheduleRow.student_id == student_id)
        if not include_completed:
            stmt = stmt.where(ReviewScheduleRow.completed.is_(False))
        with self._session("find_by_student", student_id) as session:
            return [_to_schedule(r) for r in session.execute(self._due_order(stmt)).scalars()]

    def find_due(self, student_id: str, as_of: datetime) -> list[ReviewSchedule]:
        stmt = select(ReviewScheduleRow).where(
            ReviewScheduleRow.student_id == student_id,
            ReviewScheduleRow.completed.is_(False),
            ReviewScheduleRow.next_due_at <= ensure_utc(as_of),
        )
        with self._session("find_due", student_id) as session:
            return [_to_schedule(r) for r in session.execute(self._due_order(stmt)).scalars()]

    def find_overdue(self, student_id: str, as_of: datetime, grace_days: float) -> list[ReviewSchedule]:
        cutoff = ensure_utc(as_of) - timedelta(days=grace_days)
        stmt = select(ReviewScheduleRow).where(
            ReviewScheduleRow.student_id == student_id,
            ReviewScheduleRow.completed.is_(False),
            ReviewScheduleRow.next_due_at < cutoff,
        )
        with self._session("find_overdue", student_id) as session:
            return [_to_schedule(r) for r in session.execute(self._due_order(stmt)).scalars()]

    def find_by_item(self, item_id: str, include_completed: bool = False) -> list[ReviewSchedule]:
        stmt = select(ReviewScheduleRow).where(ReviewScheduleRow.item_id == item_id)
        if not include_completed:
            stmt = stmt.where(ReviewScheduleRow.completed.is_(False))
        stmt = stmt.order_by(ReviewScheduleRow.student_id.asc())
        with self._session("find_by_item", item_id=item_id) as session:
            return [_to_schedule(r) for r in session.execute(stmt).scalars()]

    def append_record(self, record: StudyRecord) -> StudyRecord:
        with self._session("append_record", record.student_id, record.item_id) as session:
            self._add_record(session, record)
        return record

    def find_records(
        self,
        student_id: str | None = None,
        item_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[StudyRecord]:
        stmt = select(StudyRecordRow)
        if student_id is not None:
            stmt = stmt.where(StudyRecordRow.student_id == student_id)
        if item_id is not None:
            stmt = stmt.where(StudyRecordRow.item_id == item_id)
        if since is not None:
            stmt = stmt.where(StudyRecordRow.reviewed_at >= ensure_utc(since))
        if until is not None:
            stmt = stmt.where(StudyRecordRow.reviewed_at < ensure_utc(until))
        stmt = stmt.order_by(StudyRecordRow.reviewed_at.asc(), StudyRecordRow.record_id.asc())
        with self._session("find_records", student_id, item_id) as session:
            return [_to_record(r) for r in session.execute(stmt).scalars()]

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
