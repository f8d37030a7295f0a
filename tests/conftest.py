"""Shared fixtures for decay_mem tests."""

from pathlib import Path

import pytest

from decay_mem.memory import Memory
from decay_mem.storage.sqlite_store import SqliteStore
from decay_mem.temporal.engine import DAY_MS


class FakeClock:
    """Stands in for decay_mem.memory._now_ms; moves only when told to."""

    def __init__(self, start: int = 1_767_225_600_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, days: float = 0, ms: int = 0) -> int:
        self.now += int(days * DAY_MS) + ms
        return self.now


@pytest.fixture
def clock(monkeypatch) -> FakeClock:
    fake = FakeClock()
    monkeypatch.setattr("decay_mem.memory._now_ms", fake)
    return fake


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "memories.db"


@pytest.fixture
def store(db_path: Path) -> SqliteStore:
    store = SqliteStore(str(db_path))
    yield store
    store.close()


@pytest.fixture
def memory(db_path: Path, clock: FakeClock) -> Memory:
    mem = Memory({"sqlite_path": str(db_path)})
    yield mem
    mem.close()
