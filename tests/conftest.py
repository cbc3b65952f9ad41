"""
Shared pytest fixtures for memstash tests.

Stores are driven by a controllable fake clock so that timestamps,
eviction order and expiry are deterministic.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from memstash.config import StoreConfig
from memstash.memory import MemoryManager
from memstash.store import MemoryStore

START = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """
    Clock that advances by *step* every time it is read, so that memories
    added one after the other get strictly increasing timestamps.
    """

    def __init__(self, start: datetime = START, step: timedelta = timedelta(seconds=1)) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now += self.step
        return current

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store(clock: FakeClock) -> MemoryStore:
    """Store with default configuration and the fake clock."""
    with MemoryStore(clock=clock) as s:
        yield s


@pytest.fixture()
def make_store(clock: FakeClock):
    """Factory for stores with a custom configuration; closed after the test."""
    created: list[MemoryStore] = []

    def _make(**config_kwargs) -> MemoryStore:
        s = MemoryStore(StoreConfig(**config_kwargs), clock=clock)
        created.append(s)
        return s

    yield _make
    for s in created:
        s.close()


@pytest.fixture()
def snapshot_path(tmp_path: Path) -> Path:
    return tmp_path / "memories.json"


@pytest.fixture()
def memory_manager(snapshot_path: Path, clock: FakeClock) -> MemoryManager:
    """MemoryManager persisting to a temporary snapshot file."""
    manager = MemoryManager(path=snapshot_path, _store=MemoryStore(clock=clock))
    yield manager
    manager.close()
