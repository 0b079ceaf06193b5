"""Outcome type shared by the storage components.

Per-workflow and per-event operations never raise store errors at their
callers. They return a :class:`Result` that is truthy on success and carries
an :class:`ErrorKind` otherwise.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    CONTENTION = "contention"
    NOT_FOUND = "not_found"
    DUPLICATE = "duplicate"
    UNKNOWN_TYPE = "unknown_type"
    TRANSACTION = "transaction"
    INVALID = "invalid"


@dataclass(frozen=True)
class Result(Generic[T]):
    """Value of a successful operation, or the kind of failure."""

    value: Optional[T] = None
    error: Optional[ErrorKind] = None
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def __bool__(self) -> bool:
        return self.ok

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: ErrorKind, message: Optional[str] = None) -> "Result[T]":
        return cls(error=error, message=message)
