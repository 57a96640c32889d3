"""
Shared pytest fixtures and configuration for spine-jobs tests.

This module provides:
- A file-backed SQLite job store per test (real multi-connection locking)
- ``FakeClock`` so lease expiry and backoff are deterministic
- A fresh handler registry and queue wired to both

Usage:
    Fixtures are auto-discovered by pytest::

        def test_claim(queue, clock):
            queue.enqueue("user-1", "noop")
            clock.advance(seconds=5)
            ...
"""

from __future__ import annotations

import threading
from collections.abc import Generator
from datetime import UTC, datetime, timedelta

import pytest
import structlog
from sqlalchemy.exc import OperationalError

from spine_jobs.orm import create_jobs_engine, create_schema
from spine_jobs.queue import JobQueue
from spine_jobs.registry import HandlerRegistry, reset_default_registry
from spine_jobs.settings import JobQueueSettings, clear_settings_cache

LEASE_TIMEOUT = 30.0


# =============================================================================
# Clock
# =============================================================================


class FakeClock:
    """Manually advanced UTC clock, safe to read from several threads."""

    def __init__(self, start: datetime | None = None):
        self._now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, seconds: float = 0, **kwargs: float) -> datetime:
        with self._lock:
            self._now += timedelta(seconds=seconds, **kwargs)
            return self._now


# =============================================================================
# Isolation
# =============================================================================


@pytest.fixture(autouse=True)
def _isolate_globals() -> Generator[None, None, None]:
    """Reset structlog config, settings cache and default registry around each test."""
    clear_settings_cache()
    reset_default_registry()
    yield
    structlog.reset_defaults()
    clear_settings_cache()
    reset_default_registry()


# =============================================================================
# Store fixtures
# =============================================================================


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'jobs.db'}"


@pytest.fixture()
def settings(db_url) -> JobQueueSettings:
    return JobQueueSettings(
        _env_file=None,
        database_url=db_url,
        lease_timeout_seconds=LEASE_TIMEOUT,
        heartbeat_interval_seconds=5.0,
        worker_alive_threshold_seconds=60.0,
        poll_interval_seconds=0.01,
        max_poll_interval_seconds=0.05,
        backoff_base_seconds=2.0,
        backoff_max_seconds=600.0,
        backoff_jitter_seconds=0.0,
    )


@pytest.fixture()
def engine(db_url):
    eng = create_jobs_engine(db_url)
    create_schema(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def registry() -> HandlerRegistry:
    return HandlerRegistry()


@pytest.fixture()
def queue(engine, registry, settings, clock) -> JobQueue:
    return JobQueue(engine, registry=registry, settings=settings, clock=clock)


@pytest.fixture()
def store(queue):
    return queue.store


@pytest.fixture()
def break_store(engine, monkeypatch):
    """Call the returned function to make every new transaction fail."""

    def _break() -> None:
        def begin(*args, **kwargs):
            raise OperationalError("BEGIN IMMEDIATE", {}, Exception("database is locked"))

        monkeypatch.setattr(engine, "begin", begin)

    return _break
