"""
Error classes for shardorch.

These error types classify failures at the orchestration boundaries:
- DiscoveryError: Fatal to the whole run (no shard counts, nothing to schedule)
- SchedulerError: Raised by scheduler adapters; recoverable per shard
- JobFailedError: Terminal job failure, surfaced and never retried

Per-shard errors are caught by the orchestrator and recorded on the shard.
Only discovery and configuration errors abort a run.
"""

from typing import Optional


class ShardorchError(Exception):
    """Base exception for shardorch."""
    pass


class DiscoveryError(ShardorchError):
    """Partition discovery failed; the run cannot be sized."""

    def __init__(self, partition_id: str, message: str):
        self.partition_id = partition_id
        super().__init__(f"Partition {partition_id}: {message}")


class DataAccessError(DiscoveryError):
    """
    Reference data is unreadable.

    Examples:
    - Locator does not exist
    - Permission denied
    - File is not valid gzip data
    """
    pass


class EmptyPartitionError(DiscoveryError):
    """Reference data contains no records with a coordinate."""
    pass


class SchedulerError(ShardorchError):
    """Base class for errors talking to the batch scheduler."""
    pass


class SubmissionParseError(SchedulerError):
    """
    Submission acknowledgment did not contain a job identifier.

    The shard stays Pending and is resubmitted on the next sweep, up to the
    configured maximum number of submission retries.
    """

    def __init__(self, message: str, acknowledgment: str = ""):
        self.acknowledgment = acknowledgment
        super().__init__(message)


class SchedulerQueryError(SchedulerError):
    """
    Status query failed (transient).

    The orchestrator keeps the job handle and backs off before polling again.
    """

    def __init__(self, handle: str, message: str):
        self.handle = handle
        super().__init__(f"Job {handle}: {message}")


class JobFailedError(ShardorchError):
    """A job terminated with a status that is not auto-retried."""

    def __init__(
        self,
        partition_id: str,
        index: int,
        handle: str,
        raw_status: Optional[str],
        exit_code: Optional[int],
    ):
        self.partition_id = partition_id
        self.index = index
        self.handle = handle
        self.raw_status = raw_status
        self.exit_code = exit_code
        super().__init__(
            f"Partition {partition_id} shard {index} job {handle} failed: "
            f"status {raw_status}, exit code {exit_code}"
        )


class InvariantViolation(ShardorchError):
    """A shard transition was rejected by the registry."""
    pass


class UnknownShardError(ShardorchError, KeyError):
    """Raised when a (partition, index) key is not in the registry."""

    def __str__(self) -> str:
        return Exception.__str__(self)


class AggregationWithheld(ShardorchError):
    """A partition was not aggregated because it is incomplete or failed."""

    def __init__(self, partition_id: str, reason: str):
        self.partition_id = partition_id
        self.reason = reason
        super().__init__(f"Partition {partition_id} withheld: {reason}")
