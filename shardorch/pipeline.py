"""
Run pipeline for shardorch.

Coordinates partition discovery -> registry -> orchestration -> aggregation
for one invocation, and records the outcome in a state file.
"""

import json
import logging
import shlex
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from shardorch.aggregator import AggregationResult, Aggregator
from shardorch.config import ConfigError, OrchestratorConfig, load_config
from shardorch.errors import DiscoveryError
from shardorch.orchestrator import OrchestrationResult, Orchestrator
from shardorch.partitioner import Partitioner
from shardorch.registry import ShardRegistry
from shardorch.scheduler import (
    SchedulerClient,
    ShardSubmitter,
    StatusPoller,
    StatusTable,
    create_scheduler,
)
from shardorch.tool import ComputeTool, OutputLayout, interval_bounds
from shardorch.utils import (
    RunLogs,
    format_duration,
    print_banner,
    print_error,
    print_info,
    print_success,
    print_warning,
    setup_logging,
)


@dataclass
class RunResult:
    """Result of a complete orchestration run."""

    success: bool
    started_at: datetime
    ended_at: datetime
    duration_seconds: float
    shard_counts: Dict[str, int] = field(default_factory=dict)
    orchestration: Optional[Dict[str, Any]] = None
    aggregations: List[AggregationResult] = field(default_factory=list)
    shards: Dict[str, list] = field(default_factory=dict)
    error_message: Optional[str] = None

    @property
    def withheld(self) -> List[str]:
        return [a.partition_id for a in self.aggregations if not a.aggregated]

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization."""
        return {
            "success": self.success,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat(),
            "duration_seconds": self.duration_seconds,
            "shard_counts": dict(self.shard_counts),
            "orchestration": self.orchestration,
            "aggregations": [a.to_dict() for a in self.aggregations],
            "shards": self.shards,
            "error_message": self.error_message,
        }


class Pipeline:
    """
    Main orchestration pipeline.

    Sizes partitions, drives every shard to a terminal state and aggregates
    the partitions whose shards all completed.
    """

    def __init__(
        self,
        config: Optional[OrchestratorConfig] = None,
        scheduler: Optional[SchedulerClient] = None,
        sleep: Optional[Callable[[float], object]] = None,
    ):
        """
        Initialize pipeline.

        Args:
            config: Orchestrator configuration (defaults to config/shardorch.yaml)
            scheduler: Scheduler adapter (defaults to the configured type)
            sleep: Override for the orchestrator's inter-sweep sleep
        """
        self.config = config or load_config()
        self.scheduler = scheduler
        self.sleep = sleep
        self.logger: Optional[logging.Logger] = None
        self.orchestrator: Optional[Orchestrator] = None
        self._cancel_requested = False

    def _get_scheduler(self) -> SchedulerClient:
        if self.scheduler is None:
            self.scheduler = create_scheduler(self.config.scheduler)
        return self.scheduler

    def _layout(self) -> OutputLayout:
        return OutputLayout(self.config.tool.output_dir, self.config.tool.output_ext)

    def validate(self, check_scheduler: bool = True) -> None:
        """
        Validate configuration and prerequisites.

        Args:
            check_scheduler: Also check that the scheduler is usable

        Raises:
            ConfigError: If validation fails
        """
        print_info("Validating configuration...")
        self.config.validate()

        # Render the first shard of every partition to catch template errors early
        tool = ComputeTool(self.config.tool.command_template, self._layout())
        for partition in self.config.partitions:
            start, end = interval_bounds(1, self.config.chunk_length)
            command = tool.render(partition, 1, start, end)
            try:
                shlex.split(command)
            except ValueError as e:
                raise ConfigError(
                    f"tool.command for partition {partition.partition_id} is not a valid command line: {e}"
                )
        print_success("Configuration valid")

        if check_scheduler:
            validation = self._get_scheduler().validate()
            for warning in validation.get("warnings", []):
                print_warning(warning)
            if not validation["valid"]:
                raise ConfigError(
                    f"Scheduler validation failed: {', '.join(validation['errors'])}"
                )
            print_success(f"Scheduler {self.config.scheduler.type}: valid")

    def plan(self) -> Dict[str, int]:
        """
        Size every partition without submitting anything.

        Raises:
            DataAccessError: If a reference is unreadable
            EmptyPartitionError: If a reference has no records
        """
        partitioner = Partitioner(self.config.chunk_length, self.config.coordinate_column)
        return partitioner.discover_all(self.config.partitions)

    def cancel(self) -> None:
        """Request a graceful stop of the running orchestrator."""
        self._cancel_requested = True
        if self.orchestrator is not None:
            self.orchestrator.cancel()

    def run(self, dry_run: bool = False, verbose: bool = False) -> RunResult:
        """
        Run the orchestration.

        Args:
            dry_run: Validate and size partitions, don't submit
            verbose: Enable debug logging

        Returns:
            RunResult with execution details
        """
        started_at = datetime.utcnow()
        start_time = time.time()

        log_level = "DEBUG" if verbose else self.config.get_log_level()
        self.logger = setup_logging(
            self.config.get_log_file_path(),
            log_level,
            self.config.get_log_format(),
            self.config.should_log_to_console(),
        )
        self.logger.info(
            f"Starting run: {self.config.name}",
            extra={"event": "run_started", "metadata": {"name": self.config.name, "dry_run": dry_run}},
        )
        print_banner(self.config.name)

        logs: Optional[RunLogs] = None
        shard_counts: Dict[str, int] = {}
        registry: Optional[ShardRegistry] = None
        orchestration: Optional[OrchestrationResult] = None
        try:
            self.validate(check_scheduler=not dry_run)

            print_info(f"Sizing {len(self.config.partitions)} partitions...")
            try:
                shard_counts = self.plan()
            except DiscoveryError as e:
                print_error(f"Partition discovery failed: {e}")
                return self._finish(RunResult(
                    success=False,
                    started_at=started_at,
                    ended_at=datetime.utcnow(),
                    duration_seconds=time.time() - start_time,
                    error_message=str(e),
                ), save=not dry_run)

            total = sum(shard_counts.values())
            print_success(f"{total} shards across {len(shard_counts)} partitions")

            if dry_run:
                for partition_id, count in shard_counts.items():
                    print_info(f"  {partition_id}: {count} shards")
                print_info("Dry run mode - planning complete, skipping submission")
                return RunResult(
                    success=True,
                    started_at=started_at,
                    ended_at=datetime.utcnow(),
                    duration_seconds=time.time() - start_time,
                    shard_counts=shard_counts,
                )

            registry = ShardRegistry(self.config.default_memory_mb)
            registry.initialize(self.config.partitions, shard_counts)

            logs = RunLogs.open(self.config.get_progress_log_path(), self.config.get_error_log_path())
            layout = self._layout()
            scheduler = self._get_scheduler()
            submitter = ShardSubmitter(
                client=scheduler,
                tool=ComputeTool(self.config.tool.command_template, layout),
                partitions={p.partition_id: p for p in self.config.partitions},
                chunk_length=self.config.chunk_length,
                job_name=self.config.scheduler.job_name,
                log_dir=self.config.scheduler.log_dir,
            )
            poller = StatusPoller(scheduler, StatusTable.from_config(self.config.scheduler))

            extra = {"sleep": self.sleep} if self.sleep is not None else {}
            self.orchestrator = Orchestrator.from_config(
                self.config, registry, submitter, poller, logs, **extra
            )
            if self._cancel_requested:
                self.orchestrator.cancel()

            print_info(f"Orchestrating {total} shards...")
            orchestration = self.orchestrator.run()

            logs.progress.info("All jobs finished - creating final output")
            aggregations = Aggregator(registry, layout, logs).aggregate_all()

            for aggregation in aggregations:
                if aggregation.aggregated:
                    print_success(f"{aggregation.partition_id}: {aggregation.output_path}")
                else:
                    print_error(f"{aggregation.partition_id}: withheld ({aggregation.reason})")

            success = all(a.aggregated for a in aggregations)
            duration = time.time() - start_time
            result = RunResult(
                success=success,
                started_at=started_at,
                ended_at=datetime.utcnow(),
                duration_seconds=duration,
                shard_counts=shard_counts,
                orchestration=orchestration.to_dict(),
                aggregations=aggregations,
                shards=registry.to_dict(),
            )

            if success:
                print_success(f"Run completed successfully in {format_duration(duration)}")
                self.logger.info(
                    "Run completed successfully",
                    extra={"event": "run_completed", "metadata": {"duration_seconds": duration}},
                )
            else:
                print_warning(f"Run completed with withheld partitions: {', '.join(result.withheld)}")
                self.logger.warning(
                    f"Run completed with withheld partitions: {', '.join(result.withheld)}",
                    extra={"event": "run_completed_with_failures", "metadata": {"withheld": result.withheld}},
                )

            return self._finish(result)

        except Exception as e:
            print_error(f"Run failed: {e}")
            self.logger.error(
                f"Run failed with exception: {e}",
                extra={"event": "run_exception", "metadata": {"exception": str(e)}},
                exc_info=True,
            )
            return self._finish(RunResult(
                success=False,
                started_at=started_at,
                ended_at=datetime.utcnow(),
                duration_seconds=time.time() - start_time,
                shard_counts=shard_counts,
                orchestration=orchestration.to_dict() if orchestration is not None else None,
                shards=registry.to_dict() if registry is not None else {},
                error_message=str(e),
            ), save=not dry_run)

        finally:
            if logs is not None:
                logs.close()

    def _finish(self, result: RunResult, save: bool = True) -> RunResult:
        if save:
            self._save_state(result)
        return result

    def status(self) -> Optional[Dict[str, Any]]:
        """
        Get the state recorded by the last run.

        Returns:
            Parsed state file, or None if no previous run
        """
        state_file = self.config.get_state_file_path()
        if not state_file.exists():
            return None

        try:
            with open(state_file, "r") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            if self.logger:
                self.logger.warning(f"Could not load run state: {e}")
            return None

    def _save_state(self, result: RunResult) -> None:
        state_file = self.config.get_state_file_path()
        try:
            state_file.parent.mkdir(parents=True, exist_ok=True)
            with open(state_file, "w") as f:
                json.dump(result.to_dict(), f, indent=2)

            if self.logger:
                self.logger.debug(
                    f"Saved run state to {state_file}",
                    extra={"event": "state_saved", "metadata": {"file": str(state_file)}},
                )

        except OSError as e:
            if self.logger:
                self.logger.warning(
                    f"Could not save run state: {e}",
                    extra={"event": "state_save_failed", "metadata": {"error": str(e)}},
                )
