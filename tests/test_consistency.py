"""Write-ordering and concurrency checks across the four indexes.

The store takes no cross-structure lock, so these tests interleave a
reader with every single backend write and assert it never sees an index
entry that does not resolve to a primary record.
"""

import threading
from pathlib import Path

import pytest

from decay_mem.memory import Memory
from decay_mem.storage.sqlite_store import SqliteStore
from decay_mem.taxonomy import CATEGORIES

_ORPHANS_SQL = """
    SELECT member FROM zsets WHERE member NOT IN (SELECT id FROM memories)
    UNION
    SELECT member FROM sets WHERE member NOT IN (SELECT id FROM memories)
"""

_MULTI_CATEGORY_SQL = """
    SELECT member FROM sets
    WHERE key LIKE '%_mem_cat:%'
    GROUP BY member HAVING COUNT(*) > 1
"""


class CheckingStore(SqliteStore):
    """SqliteStore that inspects the whole index set after every write."""

    WRITES = (
        "insert",
        "set_fields",
        "boost",
        "scale_importance",
        "delete_record",
        "zadd",
        "zadd_if_record",
        "zadd_importance",
        "zrem",
        "ztrim",
        "sadd",
        "sadd_if_record",
        "srem",
        "smove",
    )

    def __init__(self, path: str) -> None:
        self.violations: list[tuple[str, list[str]]] = []
        self.writes: list[str] = []
        super().__init__(path)
        for name in self.WRITES:
            setattr(self, name, self._checked(name, getattr(self, name)))

    def _checked(self, name, method):
        def wrapper(*args, **kwargs):
            result = method(*args, **kwargs)
            self.writes.append(name)
            self._check(name)
            return result

        return wrapper

    def _query(self, sql: str) -> list[str]:
        with self._transaction() as cur:
            cur.execute(sql)
            return [row[0] for row in cur.fetchall()]

    def _check(self, op: str) -> None:
        orphans = self._query(_ORPHANS_SQL)
        if orphans:
            self.violations.append((op, orphans))
        doubled = self._query(_MULTI_CATEGORY_SQL)
        if doubled:
            self.violations.append((f"{op}:multi-category", doubled))


@pytest.fixture
def checking_memory(db_path: Path, clock) -> Memory:
    store = CheckingStore(str(db_path))
    mem = Memory(store=store)
    yield mem
    mem.close()


class TestWriteOrdering:
    """Every intermediate state between backend writes is resolvable."""

    def test_add_writes_primary_first(self, checking_memory: Memory):
        store = checking_memory.metadata_store
        checking_memory.add("Quarterly planning", "Active Projects")
        assert store.writes[0] == "insert"
        assert store.violations == []

    def test_delete_removes_primary_last(self, checking_memory: Memory):
        store = checking_memory.metadata_store
        mem = checking_memory.add("Quarterly planning", "Active Projects")
        store.writes.clear()
        checking_memory.delete(mem.id)
        # indexes go before the row; the sweep after it only removes
        first_row_write = store.writes.index("delete_record")
        assert {"zrem", "srem"} <= set(store.writes[:first_row_write])
        assert set(store.writes[first_row_write + 1 :]) <= {"zrem", "srem"}
        assert store.violations == []

    def test_full_lifecycle(self, checking_memory: Memory, clock):
        store = checking_memory.metadata_store
        a = checking_memory.add("Quarterly planning", "Active Projects")
        b = checking_memory.add("Dentist on the 4th", "Key Dates & Milestones", pinned=True)
        checking_memory.get(a.id)
        checking_memory.update(a.id, category="Decisions & Commitments", importance=7)
        checking_memory.update(b.id, content="Dentist on the 5th")
        clock.advance(days=2)
        checking_memory.apply_decay()
        checking_memory.prune_memories(10)
        checking_memory.delete(b.id)
        assert store.violations == []

    def test_category_move_is_single_write(self, checking_memory: Memory):
        store = checking_memory.metadata_store
        mem = checking_memory.add("Quarterly planning", "Active Projects")
        store.writes.clear()
        checking_memory.update(mem.id, category="Pending Action Items")
        assert store.writes.count("smove") == 1
        assert "srem" not in store.writes
        assert "sadd" not in store.writes
        assert store.violations == []

    def test_rescore_after_delete_does_not_resurrect(self, checking_memory: Memory):
        store = checking_memory.metadata_store
        mem = checking_memory.add("Quarterly planning", "Active Projects")
        checking_memory.delete(mem.id)
        checking_memory._rescore(mem.id)
        checking_memory._touch_recent(mem.id, 1)
        assert store.zcard(checking_memory.keys.all) == 0
        assert store.zcard(checking_memory.keys.accessed) == 0
        assert store.violations == []


class TestConcurrentCallers:
    """Threads sharing one store."""

    def test_concurrent_boosts_lose_no_increments(self, memory: Memory):
        mem = memory.add("Shared fact", "Notes")
        threads = [
            threading.Thread(target=lambda: [memory.get(mem.id) for _ in range(10)])
            for _ in range(4)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        final = memory.get(mem.id, boost=False)
        assert final.access_count == 40
        assert final.importance == 100
        assert memory.metadata_store.zscore(memory.keys.all, mem.id) == final.importance
        assert memory.get_stats().counters["total_accesses"] == 40

    def test_readers_only_see_whole_records(self, memory: Memory):
        errors: list[BaseException] = []
        done = threading.Event()

        def writer():
            try:
                for i in range(40):
                    mem = memory.add(f"churn fact {i}", CATEGORIES[i % 3])
                    if i % 2:
                        memory.update(mem.id, category=CATEGORIES[(i + 1) % 3])
                    if i % 3 == 0:
                        memory.delete(mem.id)
            except BaseException as e:
                errors.append(e)
            finally:
                done.set()

        def reader():
            try:
                while not done.is_set():
                    for category in CATEGORIES[:3]:
                        for mem in memory.list_by_category(category, 50):
                            assert mem.content.startswith("churn fact")
                            assert 0 <= mem.importance <= 100
                    for hit in memory.search("churn", limit=20):
                        assert hit.record.content.startswith("churn fact")
            except BaseException as e:
                errors.append(e)

        threads = [threading.Thread(target=writer), threading.Thread(target=reader)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        stats = memory.get_stats()
        assert stats.total_memories == sum(stats.categories.values())


def _run_before_first_call(monkeypatch, store: SqliteStore, name: str, action) -> None:
    """Make the first call to store.<name> run `action` before doing its write."""
    original = getattr(store, name)
    fired: list[bool] = []

    def wrapper(*args, **kwargs):
        if not fired:
            fired.append(True)
            action()
        return original(*args, **kwargs)

    monkeypatch.setattr(store, name, wrapper)


def _run_after_first_call(monkeypatch, store: SqliteStore, name: str, action) -> None:
    """Make the first call to store.<name> run `action` right after its write."""
    original = getattr(store, name)
    fired: list[bool] = []

    def wrapper(*args, **kwargs):
        result = original(*args, **kwargs)
        if not fired:
            fired.append(True)
            action()
        return result

    monkeypatch.setattr(store, name, wrapper)


def assert_indexes_match_rows(memory: Memory) -> None:
    db = memory.metadata_store
    with db._transaction() as cur:
        cur.execute(_ORPHANS_SQL)
        orphans = [row[0] for row in cur.fetchall()]
        cur.execute(_MULTI_CATEGORY_SQL)
        doubled = [row[0] for row in cur.fetchall()]
    assert orphans == []
    assert doubled == []

    for mem_id, score in db.zrange(memory.keys.all):
        row = db.get_by_id(mem_id)
        assert score == pytest.approx(row.importance)
        assert mem_id in db.smembers(memory.keys.category(row.category))


class TestInterleavings:
    """One operation forced to run in the middle of another."""

    def test_boost_between_unindex_and_row_delete(self, memory: Memory, monkeypatch):
        mem = memory.add("Quarterly planning", "Active Projects")
        _run_before_first_call(
            monkeypatch, memory.metadata_store, "delete_record", lambda: memory.get(mem.id)
        )

        assert memory.delete(mem.id)
        assert memory.get(mem.id) is None
        assert memory.metadata_store.zcard(memory.keys.all) == 0
        assert memory.metadata_store.zcard(memory.keys.accessed) == 0
        assert_indexes_match_rows(memory)

    def test_category_move_while_delete_unindexes(self, memory: Memory, monkeypatch):
        mem = memory.add("Quarterly planning", "Active Projects")
        _run_before_first_call(
            monkeypatch,
            memory.metadata_store,
            "srem",
            lambda: memory.update(mem.id, category="Pending Action Items"),
        )

        assert memory.delete(mem.id)
        assert memory.list_by_category("Pending Action Items") == []
        assert memory.list_by_category("Active Projects") == []
        assert memory.get_stats().categories["Pending Action Items"] == 0
        assert_indexes_match_rows(memory)

    def test_delete_during_category_move(self, memory: Memory, monkeypatch):
        mem = memory.add("Quarterly planning", "Active Projects")
        _run_before_first_call(
            monkeypatch, memory.metadata_store, "smove", lambda: memory.delete(mem.id)
        )

        memory.update(mem.id, category="Pending Action Items")
        assert memory.get(mem.id, boost=False) is None
        assert sum(memory.get_stats().categories.values()) == 0
        assert_indexes_match_rows(memory)

    def test_delete_during_boost(self, memory: Memory, monkeypatch):
        mem = memory.add("Quarterly planning", "Active Projects")
        _run_after_first_call(
            monkeypatch, memory.metadata_store, "boost", lambda: memory.delete(mem.id)
        )

        memory.get(mem.id)
        assert memory.get(mem.id, boost=False) is None
        assert memory.metadata_store.zcard(memory.keys.all) == 0
        assert memory.metadata_store.zcard(memory.keys.accessed) == 0
        assert_indexes_match_rows(memory)

    def test_overlapping_boosts_keep_index_at_row_value(self, memory: Memory, monkeypatch):
        mem = memory.add("Shared fact", "Notes")  # importance 50
        _run_after_first_call(
            monkeypatch, memory.metadata_store, "boost", lambda: memory.get(mem.id)
        )

        memory.get(mem.id)
        row = memory.get(mem.id, boost=False)
        assert row.importance == 66
        assert memory.metadata_store.zscore(memory.keys.all, mem.id) == 66
        assert_indexes_match_rows(memory)

        # prune walks the index, so a stale low score would wrongly remove it
        assert memory.prune_memories(60) == 0
        assert memory.get(mem.id, boost=False) is not None

    def test_decay_between_boost_and_rescore(self, memory: Memory, monkeypatch):
        mem = memory.add("Quarterly planning", "Active Projects")  # 90, rate 0.93
        _run_after_first_call(
            monkeypatch, memory.metadata_store, "boost", memory.apply_decay
        )

        memory.get(mem.id)
        row = memory.get(mem.id, boost=False)
        assert row.importance == pytest.approx(98 * 0.93)
        assert memory.metadata_store.zscore(memory.keys.all, mem.id) == pytest.approx(
            row.importance
        )
        assert_indexes_match_rows(memory)
