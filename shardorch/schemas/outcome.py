"""
Outcome schema - the abstracted result of polling a job handle.

Scheduler adapters report a raw (status, exit_code) pair; the status table
in shardorch.scheduler.status maps that pair to one Outcome.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class OutcomeKind(str, Enum):
    """Kind of poll outcome."""
    RUNNING = "running"
    MEMORY_LIMIT_EXCEEDED = "memory_limit_exceeded"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class Outcome:
    """
    Result of one poll.

    Attributes:
        kind: Abstract outcome
        raw_status: Raw scheduler status, kept for diagnosis
        exit_code: Raw exit code, None when the scheduler reports none
    """
    kind: OutcomeKind
    raw_status: Optional[str] = None
    exit_code: Optional[int] = None

    @classmethod
    def running(cls, raw_status: Optional[str] = None) -> "Outcome":
        return cls(OutcomeKind.RUNNING, raw_status)

    @classmethod
    def memory_limit_exceeded(cls, raw_status: Optional[str] = None, exit_code: Optional[int] = None) -> "Outcome":
        return cls(OutcomeKind.MEMORY_LIMIT_EXCEEDED, raw_status, exit_code)

    @classmethod
    def succeeded(cls, raw_status: Optional[str] = None, exit_code: Optional[int] = 0) -> "Outcome":
        return cls(OutcomeKind.SUCCEEDED, raw_status, exit_code)

    @classmethod
    def failed(cls, raw_status: Optional[str], exit_code: Optional[int]) -> "Outcome":
        return cls(OutcomeKind.FAILED, raw_status, exit_code)

    @property
    def reason(self) -> str:
        """Human-readable status, matching the error log format."""
        exit_code = "-" if self.exit_code is None else self.exit_code
        return f"Status: {self.raw_status}. Exit code: {exit_code}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "raw_status": self.raw_status,
            "exit_code": self.exit_code,
        }
