# decay_mem/temporal/engine.py

from __future__ import annotations

import time
from collections.abc import Mapping
from typing import Any
from uuid import uuid4

from ..models import MemoryRecord, ValidationResult
from ..taxonomy import CATEGORIES, category_defaults, normalize_category

MIN_SCORE = 0.0
MAX_SCORE = 100.0
DAY_MS = 24 * 60 * 60 * 1000
DEFAULT_BOOST = 8.0


def _now_ms() -> int:
    return int(time.time() * 1000)


def clamp_score(value: float) -> float:
    return max(MIN_SCORE, min(MAX_SCORE, float(value)))


def generate_id(now_ms: int | None = None) -> str:
    stamp = now_ms if now_ms is not None else _now_ms()
    return f"mem_{stamp}_{uuid4().hex[:8]}"


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class TemporalEngine:
    """
    Responsible for:
    - Building MemoryRecord objects from raw (content, category) input
    - Field validation before any write
    - Boost / decay operands and elapsed-day accounting.

    Holds no storage; the Memory facade applies the results.
    """

    def __init__(self, boost_amount: float = DEFAULT_BOOST) -> None:
        self.boost_amount = float(boost_amount)

    # ------------------------------------------------------------------ #
    # Construction & validation
    # ------------------------------------------------------------------ #

    def create_record(
        self,
        content: str,
        category: str | None,
        confidence: float = 80,
        pinned: bool = False,
        now_ms: int | None = None,
    ) -> MemoryRecord:
        """
        Importance always starts at the category's base importance; callers
        cannot choose it. decay_rate is copied so later taxonomy edits do not
        change how existing records age.
        """
        now = now_ms if now_ms is not None else _now_ms()
        normalized = normalize_category(category)
        base_importance, decay_rate = category_defaults(normalized)

        return MemoryRecord(
            id=generate_id(now),
            content=content,
            category=normalized,
            importance=clamp_score(base_importance),
            confidence=clamp_score(confidence),
            created_at=now,
            last_accessed_at=now,
            access_count=0,
            decay_rate=decay_rate,
            related_ids=[],
            pinned=bool(pinned),
        )

    @staticmethod
    def validate_record(record: MemoryRecord | Mapping[str, Any]) -> ValidationResult:
        data = record.model_dump() if isinstance(record, MemoryRecord) else dict(record)
        errors: list[str] = []

        mem_id = data.get("id")
        if not mem_id or not isinstance(mem_id, str):
            errors.append("Invalid or missing id")

        content = data.get("content")
        if not content or not isinstance(content, str):
            errors.append("Invalid or missing content")

        if data.get("category") not in CATEGORIES:
            errors.append("Invalid category")

        importance = data.get("importance")
        if not _is_number(importance) or not MIN_SCORE <= importance <= MAX_SCORE:
            errors.append("Invalid importance (must be 0-100)")

        confidence = data.get("confidence")
        if not _is_number(confidence) or not MIN_SCORE <= confidence <= MAX_SCORE:
            errors.append("Invalid confidence (must be 0-100)")

        return ValidationResult(valid=not errors, errors=errors)

    # ------------------------------------------------------------------ #
    # Boost & decay operands
    # ------------------------------------------------------------------ #
    # The arithmetic itself runs inside the backend's UPDATE statements
    # (SqliteStore.boost / scale_importance); these supply its inputs.

    @staticmethod
    def decay_factor(decay_rate: float, days: int) -> float:
        return decay_rate ** days

    @staticmethod
    def days_elapsed(last_run_ms: int | None, now_ms: int) -> int:
        """
        Whole days since the last decay run, never less than 1.

        A first-ever run counts as one day, and so does a second run inside
        the same day: every call decays at least once.
        """
        if last_run_ms is None:
            return 1
        return max(1, (now_ms - last_run_ms) // DAY_MS)
