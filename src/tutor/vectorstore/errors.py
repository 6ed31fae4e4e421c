"""Common exceptions for vector index integrations."""
from __future__ import annotations

from tutor.errors import IndexWriteError


class VectorStoreUnavailableError(RuntimeError):
    """Raised when the index backend cannot be initialised or queried."""

    def __init__(self, message: str, *, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.__cause__ = cause


class DimensionMismatchError(IndexWriteError):
    """A record's vector length differs from the index dimension."""

    def __init__(self, expected: int, actual: int, *, unit_id: str | None = None) -> None:
        super().__init__(
            f"Vector dimension {actual} does not match index dimension {expected}",
            unit_id=unit_id,
        )
        self.expected = expected
        self.actual = actual


__all__ = ["DimensionMismatchError", "IndexWriteError", "VectorStoreUnavailableError"]
