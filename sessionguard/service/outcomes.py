from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class WriteResult(Generic[T]):
    """Outcome of a best-effort write whose failure must not abort the caller."""

    value: Optional[T] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def succeeded(cls, value: T) -> "WriteResult[T]":
        return cls(value=value)

    @classmethod
    def failed(cls, error: str) -> "WriteResult[T]":
        return cls(error=error)
