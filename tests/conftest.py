"""Pytest configuration and fixtures for pmsheet tests"""

from __future__ import annotations

import logging
import random
from datetime import UTC, datetime

import pytest

from pmsheet.concurrency.coordinator import ResourceOperationCoordinator
from pmsheet.concurrency.retry import RetryExecutor
from pmsheet.core.constants import TABLE_SCHEMAS
from pmsheet.core.exceptions import FileStoreError
from pmsheet.core.locks import LockManager
from pmsheet.projects.service import ProjectService
from pmsheet.store.files import LocalFileStore
from pmsheet.store.properties import InMemoryPropertyStore
from pmsheet.store.tables import InMemoryTabularStore

# 2026-03-02T09:00:00Z
T0_MS = int(datetime(2026, 3, 2, 9, 0, tzinfo=UTC).timestamp() * 1000)


class FakeClock:
    """Epoch-millisecond clock whose ``sleep`` advances time instead of blocking."""

    def __init__(self, start_ms: int = T0_MS):
        self.now = start_ms
        self.sleeps: list[float] = []

    def __call__(self) -> int:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += int(round(seconds * 1000))

    def advance(self, ms: int) -> None:
        self.now += ms


class FlakyFileStore:
    """Wraps a file store and fails the first ``failures`` folder creations.

    ``failures=None`` fails every creation.
    """

    def __init__(self, inner: LocalFileStore, failures: int | None = 1, message: str = "Rate Limit Exceeded"):
        self.inner = inner
        self.failures = failures
        self.message = message
        self.create_calls = 0

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def create_folder(self, parent, name):
        self.create_calls += 1
        if self.failures is None or self.create_calls <= self.failures:
            raise FileStoreError(self.message, "create_folder")
        return self.inner.create_folder(parent, name)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def property_store():
    return InMemoryPropertyStore()


@pytest.fixture
def make_lock_manager(property_store, clock):
    """Factory for lock managers that share one store and one clock."""

    def _make(owner: str = "alice@host", store=None, **kwargs) -> LockManager:
        return LockManager(
            store if store is not None else property_store,
            owner,
            clock=clock,
            sleep=clock.sleep,
            **kwargs,
        )

    return _make


@pytest.fixture
def lock_manager(make_lock_manager):
    return make_lock_manager()


@pytest.fixture
def tables():
    return InMemoryTabularStore(TABLE_SCHEMAS)


@pytest.fixture
def file_store(tmp_path):
    return LocalFileStore(tmp_path / "files")


@pytest.fixture
def make_flaky_files(file_store):
    """Factory for file stores that fail folder creation ``failures`` times (None: always)."""

    def _make(failures: int | None = 1) -> FlakyFileStore:
        return FlakyFileStore(file_store, failures=failures)

    return _make


@pytest.fixture
def executor(clock):
    return RetryExecutor(sleep=clock.sleep, rng=random.Random(0))


@pytest.fixture
def coordinator(lock_manager, executor):
    return ResourceOperationCoordinator(lock_manager, executor=executor)


@pytest.fixture
def make_service(tables, file_store, executor, make_lock_manager, clock):
    """Factory for project services over the shared in-memory stores."""

    def _make(owner: str = "alice@host", files=None) -> ProjectService:
        coordinator = ResourceOperationCoordinator(make_lock_manager(owner), executor=executor)
        return ProjectService(
            tables,
            files if files is not None else file_store,
            coordinator,
            executor=executor,
            clock=clock,
        )

    return _make


@pytest.fixture
def service(make_service):
    return make_service()


@pytest.fixture
def restore_root_logging():
    """Undo ``setup_logging`` changes to the root logger."""
    handlers = logging.root.handlers[:]
    level = logging.root.level
    yield
    for handler in logging.root.handlers[:]:
        handler.close()
        logging.root.removeHandler(handler)
    for handler in handlers:
        logging.root.addHandler(handler)
    logging.root.setLevel(level)
