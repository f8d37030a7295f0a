# decay_mem/memory.py

from __future__ import annotations

import functools
from typing import TYPE_CHECKING, Any

from loguru import logger
from pydantic import ValidationError

from .errors import BackendError, MemoryNotFoundError, MemoryValidationError
from .models import DecayResult, MemoryRecord, MemoryStats, SearchHit
from .storage.sqlite_store import SqliteStore
from .taxonomy import CATEGORIES, normalize_category
from .temporal.engine import MAX_SCORE, TemporalEngine, _now_ms

if TYPE_CHECKING:
    from collections.abc import Callable

# Fields owned by creation or by the boost path; update() refuses them.
PROTECTED_FIELDS = frozenset({"id", "created_at", "last_accessed_at", "access_count"})


class StoreKeys:
    """Key layout of the indexes inside the backend."""

    def __init__(self, prefix: str = "decay_mem") -> None:
        self.prefix = prefix
        self.all = f"{prefix}_memories_all"                 # scored: importance -> id
        self.accessed = f"{prefix}_mem_accessed_recent"     # scored: timestamp -> id, bounded
        self.stats = f"{prefix}_mem_stats"                  # counters
        self.last_decay = f"{prefix}_mem_last_decay"        # scalar: epoch ms

    def category(self, name: str) -> str:
        return f"{self.prefix}_mem_cat:{name}"


def _surface_backend_errors(func: Callable) -> Callable:
    """Log backend failures and re-raise them untouched; no retry."""

    @functools.wraps(func)
    def wrapper(self: Memory, *args: Any, **kwargs: Any) -> Any:
        try:
            return func(self, *args, **kwargs)
        except BackendError as e:
            logger.error(f"[Memory.{func.__name__}] backend failure: {e}")
            raise

    return wrapper


class Memory:
    """
    Public facade over the importance-ranked memory store.

    One logical record lives in four structures: the primary row, the global
    importance index, one category set and the bounded recency index. Every
    structure write is atomic on its own; a logical operation is not. To keep
    interleaved readers from resolving dangling index entries:

    - create writes the primary row first, then the indexes;
    - delete removes the indexes first, then the primary row, then sweeps the
      indexes once more for entries re-added in between;
    - index writes only land while the row exists, and re-scoring copies the
      row's importance instead of a value computed earlier.
    """

    def __init__(
        self,
        config: dict[str, Any] | None = None,
        store: SqliteStore | None = None,
    ) -> None:
        config = config or {}

        sqlite_path = config.get("sqlite_path", "~/.decay_mem/memories.db")
        key_prefix = config.get("key_prefix", "decay_mem")
        boost_amount = float(config.get("boost_amount", 8))

        self.hot_set_size = int(config.get("hot_set_size", 100))
        self.search_window = int(config.get("search_window", 100))
        self.prune_threshold = float(config.get("prune_threshold", 10))

        self.metadata_store = store if store is not None else SqliteStore(path=sqlite_path)
        self.temporal_engine = TemporalEngine(boost_amount=boost_amount)
        self.keys = StoreKeys(key_prefix)

    # ------------------------------------------------------------------ #
    # Index maintenance
    # ------------------------------------------------------------------ #

    # Every index write below is conditional on the primary row existing, so
    # none of them can re-create an entry after delete_record has run.

    def _index_new(self, mem: MemoryRecord) -> None:
        self._rescore(mem.id)
        self.metadata_store.sadd_if_record(self.keys.category(mem.category), mem.id)
        self._touch_recent(mem.id, mem.created_at)

    def _unindex(self, memory_id: str, category: str) -> None:
        db = self.metadata_store
        db.zrem(self.keys.accessed, memory_id)
        db.srem(self.keys.category(category), memory_id)
        db.zrem(self.keys.all, memory_id)

    def _rescore(self, memory_id: str) -> None:
        self.metadata_store.zadd_importance(self.keys.all, memory_id)

    def _touch_recent(self, memory_id: str, at_ms: int) -> None:
        db = self.metadata_store
        db.zadd_if_record(self.keys.accessed, at_ms, memory_id)
        db.ztrim(self.keys.accessed, self.hot_set_size)

    def _move_category(self, memory_id: str, old: str, new: str) -> None:
        db = self.metadata_store
        if db.smove(self.keys.category(old), self.keys.category(new), memory_id):
            return
        # either the row was deleted mid-move or the id was never in `old`
        db.srem(self.keys.category(old), memory_id)
        if db.sadd_if_record(self.keys.category(new), memory_id):
            logger.warning(f"[Memory] {memory_id} missing from category '{old}', added to '{new}'")

    # ------------------------------------------------------------------ #
    # CRUD
    # ------------------------------------------------------------------ #

    @_surface_backend_errors
    def add(
        self,
        content: str,
        category: str | None,
        confidence: float = 80,
        pinned: bool = False,
    ) -> MemoryRecord:
        """
        Store a new memory.

        The category is normalized (never rejected); importance starts at the
        category's base importance. Raises MemoryValidationError for empty
        content.
        """
        if not content or not isinstance(content, str):
            raise MemoryValidationError(["Invalid or missing content"])

        try:
            mem = self.temporal_engine.create_record(
                content=content,
                category=category,
                confidence=confidence,
                pinned=pinned,
                now_ms=_now_ms(),
            )
        except (TypeError, ValueError) as e:
            raise MemoryValidationError(["Invalid confidence (must be 0-100)"]) from e
        result = self.temporal_engine.validate_record(mem)
        if not result.valid:
            raise MemoryValidationError(result.errors)

        self.metadata_store.insert(mem)
        self._index_new(mem)

        self.increment_stat("total_memories")
        self.increment_stat(f"category_{mem.category}")

        logger.debug(f"[Memory.add] {mem.id} in '{mem.category}' at {mem.importance:.0f}")
        return mem

    @_surface_backend_errors
    def get(self, memory_id: str, boost: bool = True) -> MemoryRecord | None:
        """
        Fetch a memory, or None if absent.

        With boost=True the read counts as an access: importance rises by the
        boost amount (capped at 100), access bookkeeping moves, and the
        returned record is the post-boost state. boost=False has no side
        effects.
        """
        db = self.metadata_store
        mem = db.get_by_id(memory_id)
        if mem is None or not boost:
            return mem

        now = _now_ms()
        boosted = db.boost(memory_id, self.temporal_engine.boost_amount, now, ceiling=MAX_SCORE)
        if boosted is None:
            # deleted between the read and the boost
            return None

        self._rescore(memory_id)
        self._touch_recent(memory_id, now)
        self.increment_stat("total_accesses")
        return boosted

    @_surface_backend_errors
    def list_by_category(self, category: str | None, limit: int = 20) -> list[MemoryRecord]:
        """Memories of one category, highest importance first. Never boosts."""
        db = self.metadata_store
        normalized = normalize_category(category)
        ids = db.smembers(self.keys.category(normalized))
        if not ids:
            return []

        scores = {mem_id: db.zscore(self.keys.all, mem_id) or 0.0 for mem_id in ids}
        ranked = sorted(ids, key=lambda mem_id: scores[mem_id], reverse=True)[: max(0, limit)]

        memories: list[MemoryRecord] = []
        for mem_id in ranked:
            mem = self.get(mem_id, boost=False)
            if mem is not None:
                memories.append(mem)
        return memories

    @_surface_backend_errors
    def search(self, query: str, limit: int = 10) -> list[SearchHit]:
        """
        Substring search over the top `search_window` memories by importance.

        Relevance is 1.0 for a content hit and 0.5 for a category-only hit;
        results are ordered by relevance, then importance. Scanning stops once
        `limit` hits are collected, so this is a heuristic over the hottest
        slice of the store, not full-corpus retrieval.

        The query is matched as given, surrounding whitespace included; an
        empty query returns no hits rather than matching everything.
        """
        needle = (query or "").lower()
        if not needle or limit <= 0:
            return []

        candidates = self.metadata_store.zrange(
            self.keys.all, 0, self.search_window - 1, desc=True
        )

        hits: list[SearchHit] = []
        for mem_id, _score in candidates:
            mem = self.get(mem_id, boost=False)
            if mem is None:
                continue

            if needle in mem.content.lower():
                hits.append(SearchHit(record=mem, relevance=1.0))
            elif needle in mem.category.lower():
                hits.append(SearchHit(record=mem, relevance=0.5))

            if len(hits) >= limit:
                break

        hits.sort(key=lambda h: (h.relevance, h.record.importance), reverse=True)
        return hits

    @_surface_backend_errors
    def update(self, memory_id: str, **fields: Any) -> MemoryRecord:
        """
        Replace fields of an existing memory.

        Raises MemoryNotFoundError if the id is unknown and
        MemoryValidationError (with nothing written) if the merged record is
        invalid. The category must be an exact taxonomy name here; only add()
        normalizes.
        """
        db = self.metadata_store
        existing = db.get_by_id(memory_id)
        if existing is None:
            raise MemoryNotFoundError(memory_id)

        errors = [f"Unknown field: {name}" for name in fields if name not in MemoryRecord.model_fields]
        errors += [f"Field cannot be updated: {name}" for name in fields if name in PROTECTED_FIELDS]
        if errors:
            raise MemoryValidationError(errors)

        merged = existing.model_dump()
        merged.update(fields)
        result = self.temporal_engine.validate_record(merged)
        if not result.valid:
            raise MemoryValidationError(result.errors)

        try:
            updated = MemoryRecord.model_validate(merged)
        except ValidationError as e:
            raise MemoryValidationError(
                [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
            ) from e

        changes = {name: getattr(updated, name) for name in fields}
        if not db.set_fields(memory_id, changes):
            raise MemoryNotFoundError(memory_id)

        if "importance" in fields:
            self._rescore(memory_id)

        if updated.category != existing.category:
            self._move_category(memory_id, existing.category, updated.category)

        logger.debug(f"[Memory.update] {memory_id}: {sorted(fields)}")
        return updated

    @_surface_backend_errors
    def delete(self, memory_id: str) -> bool:
        """Remove a memory everywhere. False if it did not exist."""
        db = self.metadata_store
        mem = db.get_by_id(memory_id)
        if mem is None:
            return False

        self._unindex(memory_id, mem.category)
        final_category = db.delete_record(memory_id)
        if final_category is None:
            # a concurrent delete got there first
            return False

        # a boost or category move that ran between _unindex and the row
        # delete may have re-added entries; sweep them with the row's last category
        self._unindex(memory_id, final_category)

        self.increment_stat("deleted_memories")
        logger.debug(f"[Memory.delete] {memory_id}")
        return True

    # ------------------------------------------------------------------ #
    # Maintenance sweeps
    # ------------------------------------------------------------------ #

    def _last_decay_ms(self) -> int | None:
        raw = self.metadata_store.get_value(self.keys.last_decay)
        return int(float(raw)) if raw is not None else None

    @_surface_backend_errors
    def apply_decay(self) -> DecayResult:
        """
        Age every unpinned memory: importance *= decay_rate ** days.

        Days are whole days since the previous run, minimum 1, so repeated
        calls never skip but also never re-charge time already accounted for.
        A backend failure aborts the sweep; records already decayed stay
        decayed and the last-run stamp is left alone.
        """
        db = self.metadata_store
        now = _now_ms()
        days = self.temporal_engine.days_elapsed(self._last_decay_ms(), now)

        logger.info(f"[Memory] Applying decay for {days} day(s)...")

        decayed = 0
        for mem_id, _score in db.zrange(self.keys.all):
            mem = db.get_by_id(mem_id)
            if mem is None or mem.pinned:
                continue

            factor = self.temporal_engine.decay_factor(mem.decay_rate, days)
            if db.scale_importance(mem_id, factor) is None:
                continue

            self._rescore(mem_id)
            decayed += 1

        db.set_value(self.keys.last_decay, now)
        db.hset(self.keys.stats, "last_decay", now)

        logger.info(f"[Memory] Decay applied to {decayed} memories")
        return DecayResult(decayed_count=decayed, days_elapsed=days)

    @_surface_backend_errors
    def prune_memories(self, threshold: float | None = None) -> int:
        """
        Delete memories with importance strictly below threshold.

        Walks the importance index lowest-first and stops at the first score
        that meets the threshold. Pinned memories are not spared: pinning
        exempts from aging, not from the floor.
        """
        threshold = self.prune_threshold if threshold is None else float(threshold)
        db = self.metadata_store

        pruned = 0
        for mem_id, _score in db.zrange(self.keys.all):
            current = db.zscore(self.keys.all, mem_id)
            if current is None:
                continue
            if current >= threshold:
                break
            if self.delete(mem_id):
                pruned += 1

        self.increment_stat("pruned_memories", pruned)
        logger.info(f"[Memory] Pruned {pruned} memories below importance {threshold:g}")
        return pruned

    def run_maintenance(self, threshold: float | None = None) -> tuple[DecayResult, int]:
        """Decay then prune: the pair a daily scheduler runs."""
        decay = self.apply_decay()
        pruned = self.prune_memories(threshold)
        return decay, pruned

    # ------------------------------------------------------------------ #
    # Stats
    # ------------------------------------------------------------------ #

    @_surface_backend_errors
    def get_stats(self) -> MemoryStats:
        db = self.metadata_store
        return MemoryStats(
            total_memories=db.zcard(self.keys.all),
            hot_memories=db.zcard(self.keys.accessed),
            counters=db.hgetall(self.keys.stats),
            categories={cat: db.scard(self.keys.category(cat)) for cat in CATEGORIES},
        )

    def increment_stat(self, name: str, amount: float = 1) -> float:
        return self.metadata_store.hincrby(self.keys.stats, name, amount)

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def close(self) -> None:
        self.metadata_store.close()

    def __enter__(self) -> Memory:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False
