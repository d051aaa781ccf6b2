"""
Unit tests for the review schedule stores.

The same contract runs against the in-memory store and the SQLAlchemy store
(in-memory SQLite).
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from src.db.database import create_db_engine, init_db
from src.db.models import Base
from src.scheduling.errors import ConflictError, ErrorKind, ScheduleUpdateError, UnavailableError
from src.scheduling.models import Grade, ReviewSchedule, ScheduleStatus, StudyRecord
from src.store.base import ReviewScheduleStore
from src.store.memory_store import InMemoryReviewScheduleStore
from src.store.sql_store import SqlReviewScheduleStore

NOW = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


def make_schedule(item_id, next_due, student_id="alice", failures=0, review_count=1, completed=False, version=1):
    return ReviewSchedule(
        student_id=student_id,
        item_id=item_id,
        interval_days=2.0,
        ease_factor=2.5,
        next_due_at=next_due,
        consecutive_failures=failures,
        review_count=review_count,
        completed=completed,
        version=version,
        created_at=NOW - timedelta(days=7),
        updated_at=NOW - timedelta(days=1),
    )


def make_record(record_id, reviewed_at, student_id="alice", item_id="card-1", grade=Grade.GOOD):
    return StudyRecord(
        record_id=record_id,
        student_id=student_id,
        item_id=item_id,
        grade=grade,
        correct=grade != Grade.AGAIN,
        reviewed_at=reviewed_at,
        response_time_ms=1500,
        interval_days=2.5,
        ease_factor=2.5,
        next_due_at=reviewed_at + timedelta(days=2.5),
    )


@pytest.fixture
def sql_engine():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture(params=["memory", "sql"])
def any_store(request):
    if request.param == "memory":
        yield InMemoryReviewScheduleStore()
    else:
        yield SqlReviewScheduleStore(request.getfixturevalue("sql_engine"))


# =============================================================================
# Single-row operations
# =============================================================================


class TestFindAndSave:
    """Lookup and upsert keyed by (student, item)."""

    def test_find_missing_returns_none(self, any_store):
        assert any_store.find("alice", "nope") is None

    def test_save_then_find(self, any_store):
        schedule = make_schedule("card-1", NOW)
        any_store.save(schedule)

        assert any_store.find("alice", "card-1") == schedule

    def test_unconditional_upsert_is_idempotent(self, any_store):
        schedule = make_schedule("card-1", NOW)
        any_store.save(schedule)
        any_store.save(schedule)

        assert len(any_store.find_by_student("alice")) == 1

    def test_upsert_overwrites(self, any_store):
        any_store.save(make_schedule("card-1", NOW))
        any_store.save(make_schedule("card-1", NOW + timedelta(days=3), version=2))

        found = any_store.find("alice", "card-1")
        assert found.next_due_at == NOW + timedelta(days=3)
        assert found.version == 2

    def test_returned_objects_are_detached(self, any_store):
        any_store.save(make_schedule("card-1", NOW))
        found = any_store.find("alice", "card-1")
        found.ease_factor = 1.3

        assert any_store.find("alice", "card-1").ease_factor == 2.5


class TestCompareAndSwap:
    """expected_version guards against lost updates."""

    def test_insert_when_absent(self, any_store):
        any_store.save(make_schedule("card-1", NOW, version=1), expected_version=0)
        assert any_store.find("alice", "card-1").version == 1

    def test_insert_conflicts_when_present(self, any_store):
        any_store.save(make_schedule("card-1", NOW, version=1), expected_version=0)

        with pytest.raises(ConflictError):
            any_store.save(make_schedule("card-1", NOW, version=1), expected_version=0)

    def test_update_with_matching_version(self, any_store):
        any_store.save(make_schedule("card-1", NOW, version=1), expected_version=0)
        any_store.save(make_schedule("card-1", NOW + timedelta(days=1), version=2), expected_version=1)

        assert any_store.find("alice", "card-1").version == 2

    def test_stale_version_conflicts(self, any_store):
        any_store.save(make_schedule("card-1", NOW, version=1), expected_version=0)
        any_store.save(make_schedule("card-1", NOW, version=2), expected_version=1)

        with pytest.raises(ConflictError):
            any_store.save(make_schedule("card-1", NOW + timedelta(days=9), version=2), expected_version=1)
        assert any_store.find("alice", "card-1").next_due_at == NOW

    def test_update_of_missing_row_conflicts(self, any_store):
        with pytest.raises(ConflictError):
            any_store.save(make_schedule("card-1", NOW, version=3), expected_version=2)


# =============================================================================
# Queries
# =============================================================================


class TestQueries:
    """Due ordering, overdue window and status counts."""

    @pytest.fixture
    def populated(self, any_store):
        any_store.save(make_schedule("a-easy", NOW - timedelta(hours=2)))
        any_store.save(make_schedule("b-failing", NOW - timedelta(hours=2), failures=2))
        any_store.save(make_schedule("c-oldest", NOW - timedelta(days=3)))
        any_store.save(make_schedule("d-future", NOW + timedelta(days=2)))
        any_store.save(make_schedule("e-new", NOW + timedelta(hours=1), review_count=0))
        any_store.save(make_schedule("f-done", NOW - timedelta(days=10), completed=True))
        any_store.save(make_schedule("other", NOW - timedelta(days=1), student_id="bob"))
        return any_store

    def test_find_due_ordering(self, populated):
        due = populated.find_due("alice", NOW)
        assert [s.item_id for s in due] == ["c-oldest", "b-failing", "a-easy"]

    def test_find_due_boundary_inclusive(self, populated):
        due = populated.find_due("alice", NOW + timedelta(hours=1))
        assert "e-new" in [s.item_id for s in due]

    def test_find_overdue_respects_grace(self, populated):
        assert [s.item_id for s in populated.find_overdue("alice", NOW, 1.0)] == ["c-oldest"]
        assert [s.item_id for s in populated.find_overdue("alice", NOW, 0.0)] == [
            "c-oldest",
            "b-failing",
            "a-easy",
        ]

    def test_count_due(self, populated):
        assert populated.count_due("alice", NOW) == 3
        assert populated.count_due("nobody", NOW) == 0

    def test_count_by_status(self, populated):
        counts = populated.count_by_status("alice", NOW, 1.0)

        assert counts == {
            ScheduleStatus.NEW: 1,
            ScheduleStatus.SCHEDULED: 1,
            ScheduleStatus.DUE: 2,
            ScheduleStatus.OVERDUE: 1,
            ScheduleStatus.COMPLETED: 1,
        }

    def test_count_by_status_empty_student(self, any_store):
        counts = any_store.count_by_status("nobody", NOW, 1.0)
        assert set(counts) == set(ScheduleStatus)
        assert sum(counts.values()) == 0

    def test_find_by_student_excludes_completed(self, populated):
        active = populated.find_by_student("alice")
        everything = populated.find_by_student("alice", include_completed=True)

        assert len(active) == 5
        assert len(everything) == 6

    def test_find_by_item(self, any_store):
        any_store.save(make_schedule("card-1", NOW, student_id="bob"))
        any_store.save(make_schedule("card-1", NOW, student_id="alice"))
        any_store.save(make_schedule("card-1", NOW, student_id="carol", completed=True))

        assert [s.student_id for s in any_store.find_by_item("card-1")] == ["alice", "bob"]


# =============================================================================
# Study records
# =============================================================================


class TestStudyRecords:
    """Append-only log."""

    def test_append_and_filter(self, any_store):
        any_store.append_record(make_record("r2", NOW + timedelta(days=2)))
        any_store.append_record(make_record("r1", NOW))
        any_store.append_record(make_record("r3", NOW + timedelta(days=1), item_id="card-2"))
        any_store.append_record(make_record("r4", NOW, student_id="bob"))

        assert [r.record_id for r in any_store.find_records(student_id="alice")] == ["r1", "r3", "r2"]
        assert [r.record_id for r in any_store.find_records(item_id="card-1")] == ["r1", "r4", "r2"]
        assert [r.record_id for r in any_store.find_records(student_id="alice", item_id="card-1")] == ["r1", "r2"]

    def test_since_inclusive_until_exclusive(self, any_store):
        for i in range(4):
            any_store.append_record(make_record(f"r{i}", NOW + timedelta(days=i)))

        window = any_store.find_records(since=NOW + timedelta(days=1), until=NOW + timedelta(days=3))
        assert [r.record_id for r in window] == ["r1", "r2"]

    def test_record_round_trip(self, any_store):
        record = make_record("r1", NOW)
        any_store.append_record(record)

        assert any_store.find_records()[0] == record

    def test_duplicate_record_id_rejected(self, any_store):
        any_store.append_record(make_record("r1", NOW))

        with pytest.raises(ConflictError):
            any_store.append_record(make_record("r1", NOW + timedelta(days=1)))


class TestRecordReview:
    """A review writes its record and its schedule together or not at all."""

    def test_first_review_inserts_both(self, any_store):
        any_store.record_review(make_schedule("card-1", NOW, version=1), 0, make_record("r1", NOW))

        assert any_store.find("alice", "card-1").version == 1
        assert [r.record_id for r in any_store.find_records()] == ["r1"]

    def test_follow_up_review_advances_version(self, any_store):
        any_store.record_review(make_schedule("card-1", NOW, version=1), 0, make_record("r1", NOW))
        later = NOW + timedelta(days=2)
        any_store.record_review(make_schedule("card-1", later, version=2), 1, make_record("r2", later))

        assert any_store.find("alice", "card-1").next_due_at == later
        assert [r.record_id for r in any_store.find_records()] == ["r1", "r2"]

    def test_version_conflict_writes_no_record(self, any_store):
        any_store.record_review(make_schedule("card-1", NOW, version=1), 0, make_record("r1", NOW))
        any_store.record_review(make_schedule("card-1", NOW, version=2), 1, make_record("r2", NOW))

        with pytest.raises(ConflictError):
            any_store.record_review(
                make_schedule("card-1", NOW + timedelta(days=9), version=2), 1, make_record("r3", NOW)
            )

        assert any_store.find("alice", "card-1").version == 2
        assert [r.record_id for r in any_store.find_records()] == ["r1", "r2"]

    def test_duplicate_record_leaves_schedule_untouched(self, any_store):
        any_store.record_review(make_schedule("card-1", NOW, version=1), 0, make_record("r1", NOW))

        with pytest.raises(ConflictError):
            any_store.record_review(
                make_schedule("card-1", NOW + timedelta(days=9), version=2), 1, make_record("r1", NOW)
            )

        assert any_store.find("alice", "card-1").version == 1
        assert len(any_store.find_records()) == 1


class SequentialStore(InMemoryReviewScheduleStore):
    """Store relying on the default append-then-save record_review."""

    record_review = ReviewScheduleStore.record_review


class TestSequentialRecordReview:
    """Default record_review for stores without multi-row transactions."""

    def test_conflict_detected_before_append(self):
        store = SequentialStore()
        store.save(make_schedule("card-1", NOW, version=2))

        with pytest.raises(ConflictError):
            store.record_review(make_schedule("card-1", NOW, version=2), 1, make_record("r1", NOW))

        assert store.find_records() == []

    def test_save_failure_after_append(self):
        store = SequentialStore()
        store.save(make_schedule("card-1", NOW, version=1))

        with patch.object(store, "save", side_effect=UnavailableError("down")):
            with pytest.raises(ScheduleUpdateError) as exc_info:
                store.record_review(make_schedule("card-1", NOW, version=2), 1, make_record("r1", NOW))

        assert exc_info.value.record_id == "r1"
        assert exc_info.value.kind is ErrorKind.UNAVAILABLE
        assert [r.record_id for r in store.find_records()] == ["r1"]


class TestSqlErrorTranslation:
    """Driver failures surface as typed errors without schema details."""

    def test_missing_tables_reported_unavailable(self, sql_engine):
        store = SqlReviewScheduleStore(sql_engine)
        Base.metadata.drop_all(sql_engine)

        with pytest.raises(UnavailableError) as exc_info:
            store.find("alice", "card-1")

        assert exc_info.value.retryable
        assert "review_schedules" not in str(exc_info.value)
        assert exc_info.value.__cause__ is not None
