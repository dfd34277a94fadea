from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")

TIMEOUT = "timeout"
UPSTREAM_ERROR = "upstream_error"
DELIVERY_ERROR = "delivery_error"
INTERNAL_ERROR = "internal_error"


@dataclass
class Result(Generic[T]):
    """Outcome of processing one job."""

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = INTERNAL_ERROR) -> "Result[T]":
        return Result(ok=False, error=error, error_code=code)

