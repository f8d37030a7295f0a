# decay_mem/temporal/__init__.py

from .engine import TemporalEngine

__all__ = ["TemporalEngine"]
