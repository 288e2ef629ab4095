"""
Scheduler client - Submitter and Status Poller.

The submitter turns a shard into a JobSpec and hands it to the adapter; the
poller turns an adapter's raw status into an Outcome. Neither keeps state:
shard records are owned by the ShardRegistry and mutated by the Orchestrator.
"""

import logging
from pathlib import Path
from typing import Dict

from shardorch.scheduler.base import JobSpec, ResourceSpec, SchedulerClient
from shardorch.scheduler.status import StatusTable
from shardorch.schemas import JobHandle, Outcome, Partition, Shard
from shardorch.tool import ComputeTool, interval_bounds

logger = logging.getLogger(__name__)


class ShardSubmitter:
    """Builds job specifications for shards and submits them."""

    def __init__(
        self,
        client: SchedulerClient,
        tool: ComputeTool,
        partitions: Dict[str, Partition],
        chunk_length: int,
        job_name: str = "shardorch",
        log_dir: Path = Path("logs/jobs"),
    ):
        """
        Initialize ShardSubmitter.

        Args:
            client: Scheduler adapter
            tool: Compute tool rendering the per-shard command
            partitions: Partitions by id
            chunk_length: Length of one shard's interval
            job_name: Scheduler job name
            log_dir: Directory for the scheduler's per-job stdout/stderr files
        """
        self.client = client
        self.tool = tool
        self.partitions = partitions
        self.chunk_length = chunk_length
        self.job_name = job_name
        self.log_dir = Path(log_dir)

    def build_job(self, shard: Shard) -> JobSpec:
        """Build the job specification for a shard at its current memory budget."""
        partition = self.partitions[shard.partition_id]
        start, end = interval_bounds(shard.index, self.chunk_length)
        command = self.tool.render(partition, shard.index, start, end)
        # %J is expanded to the job id by the scheduler
        stem = f"{self.job_name}.%J.{shard.partition_id}.{shard.index}"
        return JobSpec(
            name=self.job_name,
            command=command,
            resources=ResourceSpec(memory_mb=shard.memory_mb),
            stdout_path=self.log_dir / f"{stem}.o",
            stderr_path=self.log_dir / f"{stem}.e",
            metadata={
                "partition": shard.partition_id,
                "index": shard.index,
                "start": start,
                "end": end,
                "memory_mb": shard.memory_mb,
                "attempt": shard.attempts,
            },
        )

    def submit(self, shard: Shard) -> JobHandle:
        """
        Submit a shard.

        Raises:
            SubmissionParseError: If the acknowledgment had no job id
            SchedulerError: If the scheduler could not be reached
            ConfigError: If the command template cannot be rendered for the shard
        """
        job = self.build_job(shard)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        handle = self.client.submit(job)
        logger.debug(
            f"Submitted {shard.label()} as job {handle}",
            extra={"event": "job_submitted", "metadata": dict(job.metadata, handle=handle)},
        )
        return handle


class StatusPoller:
    """Queries a job handle and classifies the result."""

    def __init__(self, client: SchedulerClient, table: StatusTable):
        self.client = client
        self.table = table

    def poll(self, handle: JobHandle) -> Outcome:
        """
        Poll one job once.

        Raises:
            SchedulerQueryError: If the scheduler could not report a status
        """
        raw_status, exit_code = self.client.query(handle)
        return self.table.classify(raw_status, exit_code)
