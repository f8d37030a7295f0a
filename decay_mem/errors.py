# decay_mem/errors.py

"""Error types for decay_mem.

Absence is a value (None / empty list) on reads; it is an error only where
the caller asserted the record exists.
"""


class DecayMemError(Exception):
    """Base error for decay_mem."""


class MemoryNotFoundError(DecayMemError):
    """Operation referenced an id with no stored record."""

    def __init__(self, memory_id: str) -> None:
        super().__init__(f"Memory not found: {memory_id}")
        self.memory_id = memory_id


class MemoryValidationError(DecayMemError):
    """Record failed field validation; nothing was written."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__(f"Invalid memory: {', '.join(errors)}")
        self.errors = list(errors)


class BackendError(DecayMemError):
    """Persistence backend failed (connection, lock timeout, corrupt data)."""
