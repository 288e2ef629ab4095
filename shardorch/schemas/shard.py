"""
Shard schemas - partitions, shards and their lifecycle states.

Partition describes one unit of the work domain (e.g. a chromosome).
Shard is the unit of scheduling, keyed by (partition_id, index).
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

# Job handle returned by the scheduler at submission time
JobHandle = str

# Reserved handle meaning "no active submission"
NO_HANDLE: JobHandle = ""

ShardKey = tuple[str, int]


class ShardState(str, Enum):
    """Lifecycle state of a shard."""
    PENDING = "pending"
    SUBMITTED = "submitted"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ShardState.DONE, ShardState.FAILED)


@dataclass(frozen=True)
class Partition:
    """
    A unit of the work domain.

    Attributes:
        partition_id: Identifier, e.g. "1" or "X"
        reference: Locator of the reference data used to size the partition
        params: Extra values available to the compute command template
    """
    partition_id: str
    reference: str
    params: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "partition_id": self.partition_id,
            "reference": self.reference,
            "params": dict(self.params),
        }


@dataclass
class Shard:
    """
    Mutable record of one shard.

    Attributes:
        partition_id: Owning partition
        index: 1-based shard index within the partition
        memory_mb: Memory budget for the current attempt
        job_handle: Outstanding job handle, NO_HANDLE if none
        state: Lifecycle state
        attempts: Current attempt number, bumped on each memory escalation
        raw_status: Last raw scheduler status seen
        exit_code: Last exit code seen
        submission_failures: Consecutive failed submissions
        query_failures: Consecutive failed status queries
        next_poll_at: Earliest time the next poll may be issued (backoff)
        completed_at: When the shard reached Done
        failure_reason: Why the shard reached Failed
    """
    partition_id: str
    index: int
    memory_mb: int
    job_handle: JobHandle = NO_HANDLE
    state: ShardState = ShardState.PENDING
    attempts: int = 1
    raw_status: Optional[str] = None
    exit_code: Optional[int] = None
    submission_failures: int = 0
    query_failures: int = 0
    next_poll_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    @property
    def key(self) -> ShardKey:
        return (self.partition_id, self.index)

    @property
    def has_handle(self) -> bool:
        return self.job_handle != NO_HANDLE

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def label(self) -> str:
        return f"{self.partition_id}:{self.index}"

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "partition_id": self.partition_id,
            "index": self.index,
            "memory_mb": self.memory_mb,
            "job_handle": self.job_handle or None,
            "state": self.state.value,
            "attempts": self.attempts,
            "raw_status": self.raw_status,
            "exit_code": self.exit_code,
        }
        if self.completed_at is not None:
            result["completed_at"] = self.completed_at.isoformat()
        if self.failure_reason is not None:
            result["failure_reason"] = self.failure_reason
        return result
