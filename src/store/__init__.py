"""Review schedule persistence."""

from src.store.base import ReviewScheduleStore, due_order_key
from src.store.memory_store import InMemoryReviewScheduleStore
from src.store.sql_store import SqlReviewScheduleStore

__all__ = [
    "InMemoryReviewScheduleStore",
    "ReviewScheduleStore",
    "SqlReviewScheduleStore",
    "due_order_key",
]
