from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")

UPSTREAM_ERROR = "upstream_error"
PERSISTENCE_ERROR = "persistence_error"
INVALID_ARGUMENT = "invalid_argument"


@dataclass
class Result(Generic[T]):
    """Outcome of an operation whose failure is expected and relayed to the user."""

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = "unknown") -> "Result[T]":
        return Result(ok=False, error=error, error_code=code)

    @staticmethod
    def from_exception(exc: Exception, code: str = UPSTREAM_ERROR) -> "Result[T]":
        return Result(ok=False, error=str(exc) or exc.__class__.__name__, error_code=code)
