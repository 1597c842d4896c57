"""Error kinds raised or returned by the grouping strategies."""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional


class ErrorCode(Enum):
    EMPTY_AMS_FILAMENTS = "empty_ams_filaments"
    CONFLICT_LIMITS = "conflict_limits"
    UNKNOWN = "unknown"


class FilamentGroupError(Exception):
    """A grouping strategy could not run on the given input."""

    def __init__(self, code: ErrorCode, message: str):
        super().__init__(message)
        self.code = code

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.args[0]}"


@dataclass
class GroupOutcome:
    """Result of a strategy that may be infeasible for the given input.

    Exactly one of ``labels`` and ``error`` is set. Callers branch on
    :attr:`ok` and pick a fallback strategy instead of catching exceptions.
    """

    labels: Optional[List[int]] = None
    error: Optional[FilamentGroupError] = None
    cost: Optional[float] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.labels is not None

    @classmethod
    def success(cls, labels: List[int], cost: Optional[float] = None) -> "GroupOutcome":
        return cls(labels=labels, cost=cost)

    @classmethod
    def failure(cls, code: ErrorCode, message: str) -> "GroupOutcome":
        return cls(error=FilamentGroupError(code, message))

    def unwrap(self) -> List[int]:
        """Return the labels or raise the stored error."""
        if self.error is not None:
            raise self.error
        return self.labels
