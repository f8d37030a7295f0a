# decay_mem/__init__.py

__version__ = "0.1.0"

from .errors import BackendError, DecayMemError, MemoryNotFoundError, MemoryValidationError
from .memory import Memory
from .models import DecayResult, MemoryRecord, MemoryStats, SearchHit, ValidationResult
from .taxonomy import CATEGORIES, FALLBACK_CATEGORY, normalize_category

__all__ = [
    "BackendError",
    "CATEGORIES",
    "DecayMemError",
    "DecayResult",
    "FALLBACK_CATEGORY",
    "Memory",
    "MemoryNotFoundError",
    "MemoryRecord",
    "MemoryStats",
    "MemoryValidationError",
    "SearchHit",
    "ValidationResult",
    "normalize_category",
]
