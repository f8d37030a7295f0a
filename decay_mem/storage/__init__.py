# decay_mem/storage/__init__.py

from .sqlite_store import SqliteStore

__all__ = ["SqliteStore"]
