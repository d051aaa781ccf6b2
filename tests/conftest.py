"""
Pytest Configuration and Fixtures.

This file configures pytest and provides shared fixtures for all tests.
"""
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from src.cache.backends import InMemoryCacheBackend  # noqa: E402
from src.cache.schedule_cache import ScheduleCache  # noqa: E402
from src.scheduling.clock import ManualClock  # noqa: E402
from src.scheduling.policy import IntervalPolicy  # noqa: E402
from src.scheduling.service import SchedulingService  # noqa: E402
from src.store.memory_store import InMemoryReviewScheduleStore  # noqa: E402


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "smoke: Smoke tests for CLI commands")
    config.addinivalue_line("markers", "slow: Slow tests")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        # Mark based on test file location
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "smoke" in str(item.fspath):
            item.add_marker(pytest.mark.smoke)


@pytest.fixture(scope="session")
def project_root():
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def start_time():
    """Monday morning, UTC."""
    return datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(start_time):
    """Settable clock shared by the service and the cache backend."""
    return ManualClock(start_time)


@pytest.fixture
def store():
    return InMemoryReviewScheduleStore()


@pytest.fixture
def backend(clock):
    return InMemoryCacheBackend(clock)


@pytest.fixture
def cache(backend):
    return ScheduleCache(backend)


@pytest.fixture
def policy():
    return IntervalPolicy()


@pytest.fixture
def service(store, cache, policy, clock):
    """Service over in-memory store and cache with a manual clock."""
    svc = SchedulingService(store, cache, policy, clock, store_timeout_seconds=2.0)
    yield svc
    svc.close()
