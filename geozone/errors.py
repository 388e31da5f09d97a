"""Error taxonomy and typed results shared by the resolution engine."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Failure categories surfaced to callers."""

    PERMISSION_DENIED = "permission_denied"
    UNSUPPORTED = "unsupported"
    POSITION_UNAVAILABLE = "position_unavailable"
    TIMEOUT = "timeout"
    INVALID_COORDINATE = "invalid_coordinate"
    GEOCODE_FAILURE = "geocode_failure"
    NO_ZONE_MATCH = "no_zone_match"


# Higher wins when several acquisition attempts fail for different reasons.
_SPECIFICITY = {
    ErrorKind.PERMISSION_DENIED: 4,
    ErrorKind.UNSUPPORTED: 3,
    ErrorKind.POSITION_UNAVAILABLE: 2,
    ErrorKind.TIMEOUT: 1,
}


@dataclass(frozen=True, slots=True)
class Failure:
    """A typed failure with a human readable message."""

    kind: ErrorKind
    message: str = ""

    def more_specific_than(self, other: Optional["Failure"]) -> bool:
        if other is None:
            return True
        return _SPECIFICITY.get(self.kind, 0) > _SPECIFICITY.get(other.kind, 0)


class ResolutionError(Exception):
    """Raised when a failed result is unwrapped."""

    def __init__(self, kind: ErrorKind, message: str = "") -> None:
        super().__init__(message or kind.value)
        self.kind = kind
        self.message = message


class CapabilityError(Exception):
    """Raised by location capability adapters for device-level failures."""

    def __init__(self, kind: ErrorKind, message: str = "") -> None:
        super().__init__(message or kind.value)
        self.kind = kind


class GeocodeError(Exception):
    """Raised by geocoding providers when a lookup cannot be answered."""


@dataclass(frozen=True, slots=True)
class Result(Generic[T]):
    """Either a value or a `Failure`, never both."""

    value: Optional[T] = None
    failure: Optional[Failure] = None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def fail(cls, kind: ErrorKind, message: str = "") -> "Result[T]":
        return cls(failure=Failure(kind, message))

    @classmethod
    def from_failure(cls, failure: Failure) -> "Result[T]":
        return cls(failure=failure)

    @property
    def ok(self) -> bool:
        return self.failure is None

    def unwrap(self) -> T:
        """Return the value or raise `ResolutionError` for a failure."""
        if self.failure is not None:
            raise ResolutionError(self.failure.kind, self.failure.message)
        return self.value  # type: ignore[return-value]
