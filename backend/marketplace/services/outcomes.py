from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorCode(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    INVALID_STATUS = "INVALID_STATUS"
    NOT_ASSIGNED = "NOT_ASSIGNED"
    SELF_NOT_ALLOWED = "SELF_NOT_ALLOWED"
    CANNOT_CANCEL = "CANNOT_CANCEL"
    CANNOT_UPDATE = "CANNOT_UPDATE"
    NOT_COMPLETED = "NOT_COMPLETED"
    OFFER_NOT_FOUND = "OFFER_NOT_FOUND"
    HAS_OFFERS = "HAS_OFFERS"
    UPDATE_LIMIT_REACHED = "UPDATE_LIMIT_REACHED"
    CONFLICT = "CONFLICT"


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Result of an engine operation. Expected business failures travel as ``error``, never as exceptions."""

    ok: bool
    data: Optional[T] = None
    error: Optional[ErrorCode] = None

    @classmethod
    def success(cls, data: Any = None) -> "Outcome":
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, error: ErrorCode) -> "Outcome":
        return cls(ok=False, error=error)
