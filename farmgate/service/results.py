from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    CONFLICT = "conflict"
    UNAUTHORIZED = "unauthorized"
    INACTIVE = "inactive"
    UNCONFIRMED = "unconfirmed"
    INVALID_OTP = "invalid_otp"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    INTERNAL = "internal"


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Result of a service operation: a value, or an error kind with a caller-safe message."""

    value: Optional[T] = None
    error: Optional[ErrorKind] = None
    message: str = ""
    detail: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Optional[T] = None, message: str = "") -> "Outcome[T]":
        return cls(value=value, message=message)

    @classmethod
    def failure(
        cls, error: ErrorKind, message: str, **detail: Any
    ) -> "Outcome[T]":
        return cls(error=error, message=message, detail=detail)
