"""
Orchestrator - the control loop driving shards through their lifecycle.

Shard states:

    PENDING -> SUBMITTED -> RUNNING (self-loop) -> DONE
                   |            |
                   |            +-> FAILED
                   +-> PENDING  (memory limit exceeded: budget raised, resubmitted next sweep)

Each sweep visits every shard once in registry order: Pending shards are
submitted, shards holding a job handle are polled. Only memory-limit
terminations are retried automatically; any other termination is terminal
and reported in the error log.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional

from shardorch.errors import JobFailedError, SchedulerQueryError, ShardorchError
from shardorch.registry import ShardRegistry
from shardorch.scheduler.client import ShardSubmitter, StatusPoller
from shardorch.schemas import NO_HANDLE, Outcome, OutcomeKind, Shard, ShardState
from shardorch.utils import RunLogs, backoff_delay

logger = logging.getLogger(__name__)


class StopReason(str, Enum):
    """Why the control loop stopped."""
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DEADLINE = "deadline"


@dataclass
class OrchestrationResult:
    """Result of one control loop run."""

    stop_reason: StopReason
    sweeps: int
    started_at: datetime
    ended_at: datetime
    counts: Dict[str, int] = field(default_factory=dict)
    unfinished: List[str] = field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        return (self.ended_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict:
        return {
            "stop_reason": self.stop_reason.value,
            "sweeps": self.sweeps,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat(),
            "counts": dict(self.counts),
            "unfinished": list(self.unfinished),
        }


class Orchestrator:
    """
    Sweeps the registry until every shard is terminal.

    The registry is only read and written from inside a sweep. With more
    than one worker, visits are dispatched to a thread pool; every shard
    key is handed to exactly one worker per sweep.
    """

    def __init__(
        self,
        registry: ShardRegistry,
        submitter: ShardSubmitter,
        poller: StatusPoller,
        logs: Optional[RunLogs] = None,
        memory_increment_mb: int = 1500,
        poll_interval_seconds: float = 30,
        max_submission_retries: int = 5,
        query_backoff_seconds: float = 30,
        query_backoff_max_seconds: Optional[float] = 600,
        max_query_failures: Optional[int] = None,
        deadline_seconds: Optional[float] = None,
        workers: int = 1,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Optional[Callable[[float], object]] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            registry: Registry holding every shard of the run
            submitter: Submits Pending shards
            poller: Polls outstanding job handles
            logs: Progress and error logs
            memory_increment_mb: Budget added after each memory-limit termination
            poll_interval_seconds: Sleep between sweeps
            max_submission_retries: Failed submissions tolerated before a shard fails
            query_backoff_seconds: Delay before re-polling after a failed query
            query_backoff_max_seconds: Cap on the query backoff delay
            max_query_failures: Consecutive failed queries before a shard fails
                (None: keep retrying)
            deadline_seconds: Optional watchdog; stop sweeping after this long
            workers: Size of the per-sweep worker pool
            clock: Source of the current time
            sleep: Called with the interval between sweeps (defaults to a
                wait that returns early on cancel())
        """
        self.registry = registry
        self.submitter = submitter
        self.poller = poller
        self.logs = logs or RunLogs.null()
        self.memory_increment_mb = memory_increment_mb
        self.poll_interval_seconds = poll_interval_seconds
        self.max_submission_retries = max_submission_retries
        self.query_backoff_seconds = query_backoff_seconds
        self.query_backoff_max_seconds = query_backoff_max_seconds
        self.max_query_failures = max_query_failures
        self.deadline_seconds = deadline_seconds
        self.workers = max(1, workers)
        self._clock = clock
        self._cancel_event = threading.Event()
        self._sleep = sleep or self._cancel_event.wait

    @classmethod
    def from_config(cls, config, registry: ShardRegistry, submitter: ShardSubmitter,
                    poller: StatusPoller, logs: Optional[RunLogs] = None, **kwargs) -> "Orchestrator":
        return cls(
            registry=registry,
            submitter=submitter,
            poller=poller,
            logs=logs,
            memory_increment_mb=config.memory_increment_mb,
            poll_interval_seconds=config.poll_interval_seconds,
            max_submission_retries=config.max_submission_retries,
            query_backoff_seconds=config.query_backoff_seconds,
            query_backoff_max_seconds=config.query_backoff_max_seconds,
            max_query_failures=config.max_query_failures,
            deadline_seconds=config.deadline_seconds,
            workers=config.workers,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """
        Request a graceful stop.

        No new submissions are issued; outstanding jobs keep being polled
        until none is left.
        """
        if not self._cancel_event.is_set():
            logger.warning(
                "Cancellation requested; no new submissions will be issued",
                extra={"event": "cancel_requested"},
            )
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    # ------------------------------------------------------------------
    # Control loop
    # ------------------------------------------------------------------

    def run(self) -> OrchestrationResult:
        """
        Sweep until every shard is terminal, the run is cancelled and no
        job is outstanding, or the watchdog deadline passes.
        """
        started_at = self._clock()
        deadline = None
        if self.deadline_seconds is not None:
            deadline = started_at + timedelta(seconds=self.deadline_seconds)

        logger.info(
            f"Orchestrating {len(self.registry)} shards",
            extra={"event": "orchestration_started", "metadata": {
                "shards": len(self.registry),
                "workers": self.workers,
                "poll_interval_seconds": self.poll_interval_seconds,
            }},
        )

        sweeps = 0
        while True:
            self.sweep()
            sweeps += 1

            if self.registry.all_terminal():
                reason = StopReason.COMPLETED
                break
            if self.cancelled and not self.registry.outstanding():
                reason = StopReason.CANCELLED
                break
            if deadline is not None and self._clock() >= deadline:
                reason = StopReason.DEADLINE
                break

            self._sleep(self.poll_interval_seconds)

        unfinished = self._report_unfinished(reason)
        result = OrchestrationResult(
            stop_reason=reason,
            sweeps=sweeps,
            started_at=started_at,
            ended_at=self._clock(),
            counts=self.registry.counts_by_state(),
            unfinished=unfinished,
        )
        logger.info(
            f"Orchestration stopped ({reason.value}) after {sweeps} sweeps",
            extra={"event": "orchestration_stopped", "metadata": result.to_dict()},
        )
        return result

    def sweep(self) -> None:
        """Visit every shard once in registry order."""
        if self.workers == 1:
            self.registry.for_each_in_order(self.visit)
            return

        keys = self.registry.keys()
        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            # Consume the iterator so worker exceptions surface here
            list(pool.map(lambda key: self.visit(self.registry.get(*key)), keys))

    def visit(self, shard: Shard) -> None:
        """Advance one shard by at most one transition."""
        if shard.is_terminal:
            return

        if not shard.has_handle:
            if not self.cancelled:
                self._submit(shard)
            return

        if shard.next_poll_at is not None and self._clock() < shard.next_poll_at:
            return
        self._poll(shard)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _submit(self, shard: Shard) -> None:
        try:
            handle = self.submitter.submit(shard)
        except (ShardorchError, ValueError, OSError) as e:
            self._submission_failed(shard, e)
            return

        def mark_submitted(s: Shard) -> None:
            s.job_handle = handle
            s.state = ShardState.SUBMITTED
            s.submission_failures = 0
            s.query_failures = 0
            s.next_poll_at = None
            s.raw_status = None
            s.exit_code = None

        self.registry.update(shard.partition_id, shard.index, mark_submitted)
        self.logs.progress.info(
            f"Partition:{shard.partition_id} shard:{shard.index} submitted as job {handle} "
            f"with {shard.memory_mb}MB (attempt {shard.attempts})"
        )

    def _submission_failed(self, shard: Shard, error: Exception) -> None:
        failures = shard.submission_failures + 1

        if failures > self.max_submission_retries:
            reason = f"submission failed {failures} times: {error}"

            def mark_failed(s: Shard) -> None:
                s.submission_failures = failures
                s.state = ShardState.FAILED
                s.failure_reason = reason

            self.registry.update(shard.partition_id, shard.index, mark_failed)
            self.logs.progress.info(
                f"Partition:{shard.partition_id} shard:{shard.index} failed: {reason}"
            )
            self.logs.errors.info(
                f"Partition:{shard.partition_id} shard:{shard.index} jobid - "
                f"failed with submission error: {error}"
            )
            return

        def count_failure(s: Shard) -> None:
            s.submission_failures = failures

        self.registry.update(shard.partition_id, shard.index, count_failure)
        logger.warning(
            f"Submission of {shard.label()} failed ({failures}/{self.max_submission_retries + 1}): {error}",
            extra={"shard": shard.label(), "event": "submission_failed"},
        )

    def _poll(self, shard: Shard) -> None:
        try:
            outcome = self.poller.poll(shard.job_handle)
        except SchedulerQueryError as e:
            self._query_failed(shard, e)
            return

        if outcome.kind == OutcomeKind.RUNNING:
            self._on_running(shard, outcome)
        elif outcome.kind == OutcomeKind.MEMORY_LIMIT_EXCEEDED:
            self._on_memory_limit(shard, outcome)
        elif outcome.kind == OutcomeKind.SUCCEEDED:
            self._on_succeeded(shard, outcome)
        else:
            self._on_failed(shard, outcome)

    def _query_failed(self, shard: Shard, error: SchedulerQueryError) -> None:
        failures = shard.query_failures + 1

        if self.max_query_failures is not None and failures > self.max_query_failures:
            reason = f"status query failed {failures} times: {error}"

            def mark_failed(s: Shard) -> None:
                s.query_failures = failures
                s.state = ShardState.FAILED
                s.failure_reason = reason

            self.registry.update(shard.partition_id, shard.index, mark_failed)
            self.logs.progress.info(
                f"Partition:{shard.partition_id} shard:{shard.index} failed: {reason}"
            )
            self.logs.errors.info(
                f"Partition:{shard.partition_id} shard:{shard.index} jobid {shard.job_handle} "
                f"failed with query error: {error}"
            )
            return

        delay = backoff_delay(self.query_backoff_seconds, failures, self.query_backoff_max_seconds)
        next_poll_at = self._clock() + timedelta(seconds=delay)

        def defer(s: Shard) -> None:
            s.query_failures = failures
            s.next_poll_at = next_poll_at

        self.registry.update(shard.partition_id, shard.index, defer)
        logger.warning(
            f"Status query for {shard.label()} failed ({failures} in a row), retrying in {delay:.0f}s: {error}",
            extra={"shard": shard.label(), "event": "query_failed"},
        )

    def _on_running(self, shard: Shard, outcome: Outcome) -> None:
        def mark_running(s: Shard) -> None:
            s.state = ShardState.RUNNING
            s.raw_status = outcome.raw_status
            s.query_failures = 0
            s.next_poll_at = None

        self.registry.update(shard.partition_id, shard.index, mark_running)
        if shard.state != ShardState.RUNNING:
            self.logs.progress.info(
                f"Partition:{shard.partition_id} shard:{shard.index} job {shard.job_handle} "
                f"running ({outcome.raw_status})"
            )

    def _on_memory_limit(self, shard: Shard, outcome: Outcome) -> None:
        new_memory = shard.memory_mb + self.memory_increment_mb

        def escalate(s: Shard) -> None:
            s.memory_mb = new_memory
            s.job_handle = NO_HANDLE
            s.state = ShardState.PENDING
            s.attempts += 1
            s.raw_status = outcome.raw_status
            s.exit_code = outcome.exit_code
            s.query_failures = 0
            s.next_poll_at = None

        self.registry.update(shard.partition_id, shard.index, escalate)
        self.logs.progress.info(
            f"Partition:{shard.partition_id} shard:{shard.index} ran over memory limit, "
            f"resubmitting with {new_memory}MB"
        )

    def _on_succeeded(self, shard: Shard, outcome: Outcome) -> None:
        completed_at = self._clock()

        def mark_done(s: Shard) -> None:
            s.state = ShardState.DONE
            s.raw_status = outcome.raw_status
            s.exit_code = outcome.exit_code
            s.completed_at = completed_at
            s.query_failures = 0
            s.next_poll_at = None

        self.registry.update(shard.partition_id, shard.index, mark_done)
        self.logs.progress.info(
            f"Partition:{shard.partition_id} shard:{shard.index} complete at "
            f"{completed_at.isoformat(timespec='seconds')}"
        )

    def _on_failed(self, shard: Shard, outcome: Outcome) -> None:
        def mark_failed(s: Shard) -> None:
            s.state = ShardState.FAILED
            s.raw_status = outcome.raw_status
            s.exit_code = outcome.exit_code
            s.failure_reason = outcome.reason
            s.next_poll_at = None

        self.registry.update(shard.partition_id, shard.index, mark_failed)
        self.logs.progress.info(
            f"Partition:{shard.partition_id} shard:{shard.index} job {shard.job_handle} failed"
        )
        error = JobFailedError(
            shard.partition_id, shard.index, shard.job_handle, outcome.raw_status, outcome.exit_code
        )
        logger.error(
            str(error),
            extra={"shard": shard.label(), "event": "job_failed", "metadata": outcome.to_dict()},
        )
        self.logs.errors.info(
            f"Partition:{shard.partition_id} shard:{shard.index} jobid {shard.job_handle} "
            f"failed with unknown error: {outcome.reason}"
        )

    def _report_unfinished(self, reason: StopReason) -> List[str]:
        unfinished = []
        for shard in self.registry.non_terminal():
            unfinished.append(shard.label())
            handle = shard.job_handle or "-"
            self.logs.errors.info(
                f"Partition:{shard.partition_id} shard:{shard.index} jobid {handle} "
                f"not finished ({reason.value}): state {shard.state.value}, "
                f"last status {shard.raw_status}"
            )
        return unfinished
