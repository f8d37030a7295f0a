# decay_mem/models.py

from typing import Dict, List

from pydantic import BaseModel


class MemoryRecord(BaseModel):
    id: str
    content: str
    category: str                  # one of taxonomy.CATEGORIES
    importance: float              # 0–100, ranking + eviction key
    confidence: float = 80.0       # 0–100, informational only
    created_at: int                # epoch ms
    last_accessed_at: int          # epoch ms, moves only on boost
    access_count: int = 0
    decay_rate: float              # per-day retention, copied from category at creation
    related_ids: List[str] = []
    pinned: bool = False           # exempt from decay, not from delete/prune


class ValidationResult(BaseModel):
    valid: bool
    errors: List[str] = []


class SearchHit(BaseModel):
    record: MemoryRecord
    relevance: float               # 1.0 content hit | 0.5 category-only hit


class DecayResult(BaseModel):
    decayed_count: int
    days_elapsed: int


class MemoryStats(BaseModel):
    total_memories: int
    hot_memories: int
    counters: Dict[str, float] = {}
    categories: Dict[str, int] = {}


class MarkdownTable(BaseModel):
    title: str
    headers: List[str]
    rows: List[List[str]] = []


class MigrationResult(BaseModel):
    migrated: int = 0
    skipped: int = 0
    tables: int = 0
