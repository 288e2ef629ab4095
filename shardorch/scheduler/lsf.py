"""LSF scheduler adapter for shardorch."""

import logging
import re
import shlex
import shutil
import subprocess
from typing import Any, Dict, List, Optional, Tuple

from shardorch.errors import SchedulerError, SchedulerQueryError, SubmissionParseError
from shardorch.scheduler.base import JobSpec, SchedulerClient
from shardorch.schemas import JobHandle

logger = logging.getLogger(__name__)

# e.g. "Job <5521290> is submitted to queue <small>."
SUBMISSION_PATTERN = re.compile(r"^Job <(\d+)>", re.MULTILINE)

QUERY_FORMAT = "stat exit_code delimiter=','"


def parse_submission(acknowledgment: str) -> JobHandle:
    """
    Extract the job id from bsub's acknowledgment.

    Raises:
        SubmissionParseError: If the acknowledgment has no job id
    """
    match = SUBMISSION_PATTERN.search(acknowledgment.strip())
    if not match:
        raise SubmissionParseError(
            f"Could not parse job id from submission output: {acknowledgment.strip()!r}",
            acknowledgment=acknowledgment,
        )
    return match.group(1)


def parse_query(handle: JobHandle, output: str) -> Tuple[str, Optional[int]]:
    """
    Parse one line of `bjobs -o "stat exit_code delimiter=','"` output.

    LSF prints "-" as the exit code of jobs that have not exited with an
    error; that is reported as None.

    Raises:
        SchedulerQueryError: If the output is empty or malformed
    """
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    if not lines:
        raise SchedulerQueryError(handle, "empty status output")

    fields = [f.strip() for f in lines[0].split(",")]
    if len(fields) < 2 or not fields[0]:
        raise SchedulerQueryError(handle, f"malformed status output: {lines[0]!r}")

    raw_status, raw_exit = fields[0], fields[1]
    if raw_exit in ("", "-"):
        return raw_status, None
    try:
        return raw_status, int(raw_exit)
    except ValueError:
        raise SchedulerQueryError(handle, f"non-numeric exit code: {raw_exit!r}")


class LsfScheduler(SchedulerClient):
    """
    Adapter for IBM Spectrum LSF.

    Submits through bsub and queries through bjobs. Memory is requested
    both as a host selection/reservation string and as a hard limit, so a
    job exceeding its budget is killed by LSF and reported as EXIT.
    """

    def __init__(
        self,
        queue: Optional[str] = None,
        submit_command: str = "bsub",
        query_command: str = "bjobs",
        timeout_seconds: Optional[float] = 60,
    ):
        """
        Initialize LsfScheduler.

        Args:
            queue: Queue to submit to (scheduler default if None)
            submit_command: bsub executable
            query_command: bjobs executable
            timeout_seconds: Timeout for each scheduler command
        """
        self.queue = queue
        self.submit_command = submit_command
        self.query_command = query_command
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_config(cls, scheduler_config) -> "LsfScheduler":
        return cls(
            queue=scheduler_config.queue,
            submit_command=scheduler_config.submit_command,
            query_command=scheduler_config.query_command,
            timeout_seconds=scheduler_config.command_timeout_seconds,
        )

    def build_submit_command(self, job: JobSpec) -> List[str]:
        """Build the bsub argument list for a job."""
        memory = job.resources.memory_mb
        cmd = [self.submit_command, "-J", job.name]
        if self.queue:
            cmd += ["-q", self.queue]
        if job.stdout_path is not None:
            cmd += ["-o", str(job.stdout_path)]
        if job.stderr_path is not None:
            cmd += ["-e", str(job.stderr_path)]
        cmd += [
            "-R", f"select[mem>{memory}] rusage[mem={memory}]",
            f"-M{memory}",
        ]
        cmd += shlex.split(job.command)
        return cmd

    def build_query_command(self, handle: JobHandle) -> List[str]:
        return [self.query_command, "-a", "-noheader", "-o", QUERY_FORMAT, handle]

    def _run(self, cmd: List[str]) -> subprocess.CompletedProcess:
        return subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=self.timeout_seconds,
        )

    def submit(self, job: JobSpec) -> JobHandle:
        try:
            cmd = self.build_submit_command(job)
        except ValueError as e:
            raise SchedulerError(f"Cannot split job command {job.command!r}: {e}") from e

        try:
            result = self._run(cmd)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise SchedulerError(f"Submission command failed to run: {e}") from e

        if result.returncode != 0:
            logger.debug(
                f"bsub exited with code {result.returncode}: {result.stderr.strip()}",
                extra={"event": "submit_nonzero", "metadata": job.metadata},
            )
        return parse_submission(result.stdout or "")

    def query(self, handle: JobHandle) -> Tuple[str, Optional[int]]:
        cmd = self.build_query_command(handle)
        try:
            result = self._run(cmd)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise SchedulerQueryError(handle, f"status command failed to run: {e}") from e

        if result.returncode != 0:
            raise SchedulerQueryError(
                handle,
                f"status command exited with code {result.returncode}: {result.stderr.strip()}",
            )
        return parse_query(handle, result.stdout or "")

    def validate(self) -> Dict[str, Any]:
        errors = []
        warnings = []

        for executable in (self.submit_command, self.query_command):
            if shutil.which(executable) is None:
                errors.append(f"LSF executable not found on PATH: {executable}")

        if not self.queue:
            warnings.append("No queue configured; jobs go to the default LSF queue")

        return {
            "valid": len(errors) == 0,
            "errors": errors,
            "warnings": warnings,
        }
