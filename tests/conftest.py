#tests\conftest.py

"""Pytest configuration and fixtures."""

from typing import Callable, List

import pytest

from hft_control.control.vault import StoreVault
from hft_control.core.events import LogEventEmitter, LogNotifier
from hft_control.core.models import FailoverEntry, HealthStatus
from hft_control.infrastructure.memory.store import InMemoryControlStore
from hft_control.infrastructure.postgres.database import (
    create_db_engine,
    drop_db,
    get_session_factory,
    init_db,
)
from hft_control.infrastructure.postgres.store import SqlControlStore
from hft_control.signing.key_cache import KeyCache
from tests.fakes import TEST_KEY, FakeSession


@pytest.fixture
def fake_session():
    return FakeSession()


# ============================================
# Store / events
# ============================================

@pytest.fixture
def store():
    """In-memory store."""
    return InMemoryControlStore()


@pytest.fixture
def emitter():
    return LogEventEmitter()


@pytest.fixture
def notifier():
    return LogNotifier()


@pytest.fixture
def key_cache(store):
    return KeyCache(store=store, fallback_key=TEST_KEY)


@pytest.fixture
def vault(store, key_cache):
    return StoreVault(store, key_cache)


@pytest.fixture
def no_sleep() -> Callable[[float], None]:
    """sleep() replacement that records the requested delays."""
    sleeps: List[float] = []

    def sleep(seconds: float) -> None:
        sleeps.append(seconds)

    sleep.calls = sleeps
    return sleep


# ============================================
# SQL store (sqlite file per test)
# ============================================

@pytest.fixture(scope="function")
def test_engine(tmp_path):
    """Create a sqlite engine with every table."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'control.db'}")
    init_db(engine)

    yield engine

    # Cleanup
    drop_db(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def test_session_factory(test_engine):
    """Create session factory for tests."""
    return get_session_factory(test_engine)


@pytest.fixture
def sql_store(test_session_factory):
    """Create store with test database session factory."""
    return SqlControlStore(session_factory=test_session_factory)


# ============================================
# Failover table
# ============================================

@pytest.fixture
def make_entry():
    def factory(provider: str, priority: int, **kwargs) -> FailoverEntry:
        kwargs.setdefault("health_url", f"http://{provider}.example/health")
        return FailoverEntry(provider=provider, priority=priority, **kwargs)
    return factory


@pytest.fixture
def two_entries(store, make_entry):
    """A (priority 1, primary) and B (priority 2), both last seen healthy."""
    store.save_failover_entry(make_entry("aws", 1, is_primary=True, last_status=HealthStatus.HEALTHY))
    store.save_failover_entry(make_entry("vultr", 2, last_status=HealthStatus.HEALTHY))
    return store
