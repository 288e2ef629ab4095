"""Base class for batch scheduler adapters."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from shardorch.schemas import JobHandle


@dataclass(frozen=True)
class ResourceSpec:
    """Resources requested for one job."""

    memory_mb: int


@dataclass(frozen=True)
class JobSpec:
    """
    Everything an adapter needs to submit one shard.

    Attributes:
        name: Scheduler job name
        command: Compute command line
        resources: Requested resources
        stdout_path: Where the scheduler writes the job's stdout
        stderr_path: Where the scheduler writes the job's stderr
        metadata: Partition, index and interval, for logging
    """
    name: str
    command: str
    resources: ResourceSpec
    stdout_path: Optional[Path] = None
    stderr_path: Optional[Path] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class SchedulerClient(ABC):
    """
    Base class for scheduler adapters.

    Adapters provide a narrow interface over an external batch scheduler.
    All parsing of the scheduler's textual output happens inside the
    adapter so orchestration logic never touches raw scheduler text.
    """

    @abstractmethod
    def submit(self, job: JobSpec) -> JobHandle:
        """
        Submit a job.

        Returns:
            The job handle parsed from the scheduler's acknowledgment

        Raises:
            SubmissionParseError: If no handle could be parsed
            SchedulerError: If the submission command could not run
        """
        pass

    @abstractmethod
    def query(self, handle: JobHandle) -> Tuple[str, Optional[int]]:
        """
        Query a job's raw status and exit code.

        Returns:
            (raw_status, exit_code); exit_code is None when not reported

        Raises:
            SchedulerQueryError: If the status could not be obtained
        """
        pass

    def validate(self) -> Dict[str, Any]:
        """
        Validate that the scheduler is usable from this host.

        Returns:
            Dictionary with keys:
                - 'valid': bool indicating if validation passed
                - 'errors': list of error messages (empty if valid)
                - 'warnings': list of warning messages
        """
        return {"valid": True, "errors": [], "warnings": []}
