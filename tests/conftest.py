"""
Shared pytest fixtures for session cache tests.

This file contains reusable fixtures for:
- Environment setup
- In-process Redis (fakeredis) shared by several simulated nodes
- Settings, state snapshots and coordinators
- A controllable clock
"""

import os
from typing import Callable

import pytest


# ============================================================================
# Environment Setup
# ============================================================================


@pytest.fixture(scope="session", autouse=True)
def setup_test_environment():
    """Set up test environment variables before any tests run."""
    os.environ["SESSIOND_ENCRYPTION_KEY"] = "test-encryption-key"
    os.environ["SESSIOND_REDIS_URL"] = "redis://localhost:6379/15"
    os.environ["SESSIOND_PUBSUB_CHANNEL"] = "test:sessionevents"
    yield


# ============================================================================
# Clock
# ============================================================================


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, now: int = 1_700_000_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, millis: int) -> int:
        self.now += millis
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ============================================================================
# Redis
# ============================================================================


@pytest.fixture
def redis_server():
    """One fake Redis server; every client created on it sees the same data."""
    import fakeredis

    return fakeredis.FakeServer()


@pytest.fixture
def make_client(redis_server) -> Callable:
    import fakeredis

    def _make():
        return fakeredis.FakeRedis(server=redis_server, decode_responses=True)

    return _make


@pytest.fixture
def redis_client(make_client):
    return make_client()


@pytest.fixture
def connector(redis_client):
    from sessiond.storage.connector import RedisConnector

    return RedisConnector(redis_client)


# ============================================================================
# Settings and State
# ============================================================================


@pytest.fixture
def make_settings() -> Callable:
    """Build Settings with overrides for lifetime, limits and job groups."""
    from sessiond.settings import JobSettings, LifetimeSettings, SessionLimitSettings, Settings

    def _make(limits=None, lifetime=None, jobs=None, **kwargs):
        lifetime_values = {
            "default_lifetime": 60 * 60 * 1000,
            "long_lifetime": 7 * 24 * 60 * 60 * 1000,
            "local_lifetime": 5 * 60 * 1000,
            "check_existence_threshold": 0,
            "ensure_existence_on_local_fetch": True,
            "try_lock_before_lookup": True,
            "local_cache_max_size": 1000,
        }
        lifetime_values.update(lifetime or {})
        limit_values = {
            "max_sessions": 0,
            "max_sessions_per_user_type": 0,
            "user_type_limits": {},
            "max_sessions_per_client": 0,
        }
        limit_values.update(limits or {})
        job_values = {
            "consistency_check_interval_minutes": 0,
            "expirer_interval_minutes": 0,
        }
        job_values.update(jobs or {})
        kwargs.setdefault("encryption_key", "test-encryption-key")
        return Settings(
            limits=SessionLimitSettings(**limit_values),
            lifetime=LifetimeSettings(**lifetime_values),
            jobs=JobSettings(**job_values),
            **kwargs,
        )

    return _make


@pytest.fixture
def make_state(make_settings) -> Callable:
    from sessiond.state import SessiondState

    def _make(user_type_resolver=None, **kwargs):
        return SessiondState.from_settings(make_settings(**kwargs), user_type_resolver)

    return _make


# ============================================================================
# Coordinators (simulated cluster nodes)
# ============================================================================


@pytest.fixture
def make_coordinator(make_client, make_state, clock) -> Callable:
    """Create a node on the shared fake Redis.

    Nodes get no executor, so background work runs in the calling thread.
    """
    from sessiond.core.coordinator import SessionCoordinator
    from sessiond.pubsub.channel import InvalidationChannel
    from sessiond.storage.connector import RedisConnector

    created = []

    def _make(state=None, with_channel=True, replicas=None, event_bus=None, **state_kwargs):
        connector = RedisConnector(make_client())
        channel = InvalidationChannel(connector, "test:sessionevents") if with_channel else None
        coordinator = SessionCoordinator(
            connector,
            state or make_state(**state_kwargs),
            channel=channel,
            replicas=replicas,
            event_bus=event_bus,
            clock=clock,
        )
        created.append(coordinator)
        return coordinator

    yield _make

    for coordinator in created:
        if coordinator._state is not None:
            coordinator.shut_down()


@pytest.fixture
def coordinator(make_coordinator):
    return make_coordinator()


@pytest.fixture
def session_params() -> Callable:
    from sessiond.storage.models import AddSessionParameter

    def _make(user_id=7, context_id=42, **kwargs):
        kwargs.setdefault("login", f"user{user_id}@context{context_id}")
        kwargs.setdefault("password", "secret-password")
        kwargs.setdefault("client_ip", "10.0.0.1")
        kwargs.setdefault("client", "open-xchange-appsuite")
        return AddSessionParameter(user_id=user_id, context_id=context_id, **kwargs)

    return _make
