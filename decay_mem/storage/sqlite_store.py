# decay_mem/storage/sqlite_store.py

import json
import os
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from ..errors import BackendError
from ..models import MemoryRecord

_RECORD_COLUMNS = (
    "id",
    "content",
    "category",
    "importance",
    "confidence",
    "created_at",
    "last_accessed_at",
    "access_count",
    "decay_rate",
    "related_ids",
    "pinned",
)


class SqliteStore:
    """
    SQLite-backed persistence for the memory indexes.

    Exposes key-value style primitives: record rows with field-level writes,
    scored sets, plain sets, scalars and counter hashes. Every public method
    is one transaction; nothing spans two calls.
    """

    def __init__(self, path: str = "~/.decay_mem/memories.db") -> None:
        if path == ":memory:":
            self.path = path
        else:
            self.path = os.path.expanduser(path)
            parent = os.path.dirname(self.path)
            if parent:
                os.makedirs(parent, exist_ok=True)
        self._lock = threading.RLock()
        try:
            self.conn: sqlite3.Connection | None = sqlite3.connect(
                self.path, check_same_thread=False, timeout=10.0
            )
        except sqlite3.Error as e:
            raise BackendError(f"Cannot open {self.path}: {e}") from e
        self.conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self) -> None:
        with self._transaction() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS memories (
                    id TEXT PRIMARY KEY,
                    content TEXT NOT NULL,
                    category TEXT NOT NULL,
                    importance REAL NOT NULL,
                    confidence REAL NOT NULL,
                    created_at INTEGER NOT NULL,
                    last_accessed_at INTEGER NOT NULL,
                    access_count INTEGER NOT NULL DEFAULT 0,
                    decay_rate REAL NOT NULL,
                    related_ids TEXT,
                    pinned INTEGER NOT NULL DEFAULT 0
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS zsets (
                    key TEXT NOT NULL,
                    member TEXT NOT NULL,
                    score REAL NOT NULL,
                    PRIMARY KEY (key, member)
                );
                """
            )
            cur.execute("CREATE INDEX IF NOT EXISTS idx_zsets_key_score ON zsets(key, score);")
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS sets (
                    key TEXT NOT NULL,
                    member TEXT NOT NULL,
                    PRIMARY KEY (key, member)
                );
                """
            )
            cur.execute("CREATE TABLE IF NOT EXISTS kv (key TEXT PRIMARY KEY, value TEXT);")
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS hashes (
                    key TEXT NOT NULL,
                    field TEXT NOT NULL,
                    value NUMERIC NOT NULL DEFAULT 0,
                    PRIMARY KEY (key, field)
                );
                """
            )

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        with self._lock:
            if self.conn is None:
                raise BackendError("Store is closed")
            cur = self.conn.cursor()
            try:
                yield cur
                self.conn.commit()
            except sqlite3.Error as e:
                self.conn.rollback()
                raise BackendError(str(e)) from e
            except Exception:
                self.conn.rollback()
                raise
            finally:
                cur.close()

    # ------------------------------------------------------------------ #
    # Records
    # ------------------------------------------------------------------ #

    @staticmethod
    def _row_to_model(row: sqlite3.Row) -> MemoryRecord:
        return MemoryRecord(
            id=row["id"],
            content=row["content"],
            category=row["category"],
            importance=row["importance"],
            confidence=row["confidence"],
            created_at=row["created_at"],
            last_accessed_at=row["last_accessed_at"],
            access_count=row["access_count"],
            decay_rate=row["decay_rate"],
            related_ids=json.loads(row["related_ids"]) if row["related_ids"] else [],
            pinned=bool(row["pinned"]),
        )

    @staticmethod
    def _to_column(field: str, value: Any) -> Any:
        if field == "related_ids":
            return json.dumps(list(value or []))
        if field == "pinned":
            return 1 if value else 0
        return value

    def insert(self, mem: MemoryRecord) -> None:
        data = mem.model_dump()
        placeholders = ", ".join("?" for _ in _RECORD_COLUMNS)
        with self._transaction() as cur:
            cur.execute(
                f"INSERT OR REPLACE INTO memories ({', '.join(_RECORD_COLUMNS)}) VALUES ({placeholders});",
                tuple(self._to_column(col, data[col]) for col in _RECORD_COLUMNS),
            )

    def get_by_id(self, mem_id: str) -> MemoryRecord | None:
        with self._transaction() as cur:
            cur.execute("SELECT * FROM memories WHERE id = ? LIMIT 1;", (mem_id,))
            row = cur.fetchone()
        if row is None:
            return None
        return self._row_to_model(row)

    def set_fields(self, mem_id: str, fields: dict[str, Any]) -> bool:
        """Overwrite the given columns of one record. Unknown fields raise ValueError."""
        unknown = set(fields) - set(_RECORD_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown record fields: {sorted(unknown)}")
        if not fields:
            return self.get_by_id(mem_id) is not None

        assignments = ", ".join(f"{name} = ?" for name in fields)
        params = [self._to_column(name, value) for name, value in fields.items()]
        with self._transaction() as cur:
            cur.execute(f"UPDATE memories SET {assignments} WHERE id = ?;", (*params, mem_id))
            return cur.rowcount > 0

    def boost(
        self,
        mem_id: str,
        amount: float,
        accessed_at: int,
        ceiling: float = 100.0,
    ) -> MemoryRecord | None:
        """
        Add to importance (clamped at ceiling) and record the access in one
        statement, so concurrent boosts never lose an increment.
        """
        with self._transaction() as cur:
            cur.execute(
                """
                UPDATE memories
                SET importance = MIN(?, importance + ?),
                    last_accessed_at = ?,
                    access_count = access_count + 1
                WHERE id = ?
                RETURNING *;
                """,
                (ceiling, amount, accessed_at, mem_id),
            )
            rows = cur.fetchall()
        if not rows:
            return None
        return self._row_to_model(rows[0])

    def scale_importance(
        self,
        mem_id: str,
        factor: float,
        floor: float = 0.0,
        ceiling: float = 100.0,
    ) -> float | None:
        """
        Multiply importance in place for an unpinned record.

        Returns the new importance, or None when the record is gone or pinned.
        """
        with self._transaction() as cur:
            cur.execute(
                """
                UPDATE memories
                SET importance = MAX(?, MIN(?, importance * ?))
                WHERE id = ? AND pinned = 0
                RETURNING importance;
                """,
                (floor, ceiling, factor, mem_id),
            )
            rows = cur.fetchall()
        return float(rows[0]["importance"]) if rows else None

    def delete_record(self, mem_id: str) -> str | None:
        """Delete one record row. Returns the category it held at deletion, or None."""
        with self._transaction() as cur:
            cur.execute("DELETE FROM memories WHERE id = ? RETURNING category;", (mem_id,))
            rows = cur.fetchall()
        return rows[0]["category"] if rows else None

    # ------------------------------------------------------------------ #
    # Scored sets
    # ------------------------------------------------------------------ #

    def zadd(self, key: str, score: float, member: str) -> None:
        with self._transaction() as cur:
            cur.execute(
                """
                INSERT INTO zsets (key, member, score) VALUES (?, ?, ?)
                ON CONFLICT(key, member) DO UPDATE SET score = excluded.score;
                """,
                (key, member, float(score)),
            )

    def zadd_if_record(self, key: str, score: float, member: str) -> bool:
        """
        zadd that only lands while the member's record row exists.

        Re-scoring after a boost or decay must not resurrect an index entry
        for a record deleted in between.
        """
        with self._transaction() as cur:
            cur.execute(
                """
                INSERT INTO zsets (key, member, score)
                SELECT ?, ?, ? WHERE EXISTS (SELECT 1 FROM memories WHERE id = ?)
                ON CONFLICT(key, member) DO UPDATE SET score = excluded.score;
                """,
                (key, member, float(score), member),
            )
            return cur.rowcount > 0

    def zadd_importance(self, key: str, member: str) -> bool:
        """
        Score a member with its record's current importance, read in the same
        statement. Overlapping boosts and decays can then never leave the index
        holding an older value than the row.
        """
        with self._transaction() as cur:
            cur.execute(
                """
                INSERT INTO zsets (key, member, score)
                SELECT ?, id, importance FROM memories WHERE id = ?
                ON CONFLICT(key, member) DO UPDATE SET score = excluded.score;
                """,
                (key, member),
            )
            return cur.rowcount > 0

    def zrem(self, key: str, member: str) -> bool:
        with self._transaction() as cur:
            cur.execute("DELETE FROM zsets WHERE key = ? AND member = ?;", (key, member))
            return cur.rowcount > 0

    def zscore(self, key: str, member: str) -> float | None:
        with self._transaction() as cur:
            cur.execute("SELECT score FROM zsets WHERE key = ? AND member = ?;", (key, member))
            row = cur.fetchone()
        return None if row is None else float(row["score"])

    def zrange(
        self,
        key: str,
        start: int = 0,
        stop: int = -1,
        desc: bool = False,
    ) -> list[tuple[str, float]]:
        """
        Members with scores by rank, inclusive of stop; stop=-1 means to the end.
        Ties are ordered by member, reversed for desc.
        """
        order = "DESC" if desc else "ASC"
        limit = -1 if stop < 0 else max(0, stop - start + 1)
        with self._transaction() as cur:
            cur.execute(
                f"""
                SELECT member, score FROM zsets
                WHERE key = ?
                ORDER BY score {order}, member {order}
                LIMIT ? OFFSET ?;
                """,
                (key, limit, max(0, start)),
            )
            rows = cur.fetchall()
        return [(r["member"], float(r["score"])) for r in rows]

    def zcard(self, key: str) -> int:
        with self._transaction() as cur:
            cur.execute("SELECT COUNT(*) FROM zsets WHERE key = ?;", (key,))
            return cur.fetchone()[0]

    def ztrim(self, key: str, keep: int) -> int:
        """Drop everything but the `keep` highest-scored members. Returns removed count."""
        with self._transaction() as cur:
            cur.execute(
                """
                DELETE FROM zsets
                WHERE key = ?
                  AND member NOT IN (
                      SELECT member FROM zsets
                      WHERE key = ?
                      ORDER BY score DESC, member DESC
                      LIMIT ?
                  );
                """,
                (key, key, max(0, keep)),
            )
            return cur.rowcount

    # ------------------------------------------------------------------ #
    # Sets
    # ------------------------------------------------------------------ #

    def sadd(self, key: str, member: str) -> bool:
        with self._transaction() as cur:
            cur.execute("INSERT OR IGNORE INTO sets (key, member) VALUES (?, ?);", (key, member))
            return cur.rowcount > 0

    def sadd_if_record(self, key: str, member: str) -> bool:
        """sadd that only lands while the member's record row exists."""
        with self._transaction() as cur:
            cur.execute(
                """
                INSERT OR IGNORE INTO sets (key, member)
                SELECT ?, ? WHERE EXISTS (SELECT 1 FROM memories WHERE id = ?);
                """,
                (key, member, member),
            )
            return cur.rowcount > 0

    def srem(self, key: str, member: str) -> bool:
        with self._transaction() as cur:
            cur.execute("DELETE FROM sets WHERE key = ? AND member = ?;", (key, member))
            return cur.rowcount > 0

    def smove(self, source: str, destination: str, member: str) -> bool:
        """
        Move a member between sets in one transaction.

        False, with nothing written, if the member was not in source or its
        record row is gone.
        """
        with self._transaction() as cur:
            cur.execute(
                """
                DELETE FROM sets
                WHERE key = ? AND member = ?
                  AND EXISTS (SELECT 1 FROM memories WHERE id = ?);
                """,
                (source, member, member),
            )
            if cur.rowcount == 0:
                return False
            cur.execute(
                "INSERT OR IGNORE INTO sets (key, member) VALUES (?, ?);",
                (destination, member),
            )
            return True

    def smembers(self, key: str) -> list[str]:
        with self._transaction() as cur:
            cur.execute("SELECT member FROM sets WHERE key = ? ORDER BY member;", (key,))
            return [r["member"] for r in cur.fetchall()]

    def scard(self, key: str) -> int:
        with self._transaction() as cur:
            cur.execute("SELECT COUNT(*) FROM sets WHERE key = ?;", (key,))
            return cur.fetchone()[0]

    # ------------------------------------------------------------------ #
    # Scalars & counters
    # ------------------------------------------------------------------ #

    def get_value(self, key: str) -> str | None:
        with self._transaction() as cur:
            cur.execute("SELECT value FROM kv WHERE key = ?;", (key,))
            row = cur.fetchone()
        return None if row is None else row["value"]

    def set_value(self, key: str, value: Any) -> None:
        with self._transaction() as cur:
            cur.execute(
                """
                INSERT INTO kv (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value;
                """,
                (key, str(value)),
            )

    def hincrby(self, key: str, field: str, amount: float = 1) -> float:
        with self._transaction() as cur:
            cur.execute(
                """
                INSERT INTO hashes (key, field, value) VALUES (?, ?, ?)
                ON CONFLICT(key, field) DO UPDATE SET value = value + excluded.value
                RETURNING value;
                """,
                (key, field, amount),
            )
            return cur.fetchall()[0]["value"]

    def hset(self, key: str, field: str, value: float) -> None:
        with self._transaction() as cur:
            cur.execute(
                """
                INSERT INTO hashes (key, field, value) VALUES (?, ?, ?)
                ON CONFLICT(key, field) DO UPDATE SET value = excluded.value;
                """,
                (key, field, value),
            )

    def hgetall(self, key: str) -> dict[str, float]:
        with self._transaction() as cur:
            cur.execute("SELECT field, value FROM hashes WHERE key = ?;", (key,))
            return {r["field"]: r["value"] for r in cur.fetchall()}

    def close(self) -> None:
        with self._lock:
            if self.conn is not None:
                self.conn.close()
                self.conn = None
