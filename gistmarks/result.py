"""
Explicit success/failure values.

Expected failures (duplicate names, missing nodes, stale versions, network
trouble) travel as data so callers handle domain and I/O failures the same
way.
"""
from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, TypeVar

from gistmarks.errors import GistmarksError

T = TypeVar("T")
U = TypeVar("U")


@dataclass(frozen=True)
class Result(Generic[T]):
    """Either a value or an error, never both."""
    value: Optional[T] = None
    error: Optional[GistmarksError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value, raising the carried error on failure."""
        if self.error is not None:
            raise self.error
        return self.value

    def unwrap_or(self, default: T) -> T:
        return default if self.error is not None else self.value

    def map(self, fn: Callable[[T], U]) -> "Result[U]":
        if self.error is not None:
            return Result(error=self.error)
        return Result(value=fn(self.value))

    def then(self, fn: Callable[[T], "Result[U]"]) -> "Result[U]":
        """Chain another fallible step onto a success."""
        if self.error is not None:
            return Result(error=self.error)
        return fn(self.value)


def success(value: Any = None) -> Result:
    return Result(value=value)


def failure(error: GistmarksError) -> Result:
    return Result(error=error)
