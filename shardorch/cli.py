"""
CLI interface for shardorch.

Provides commands: run, plan, validate, status.
"""

import signal
import sys
from pathlib import Path

import click

from shardorch import __version__
from shardorch.config import load_config
from shardorch.errors import ShardorchError
from shardorch.pipeline import Pipeline
from shardorch.utils import (
    format_duration,
    print_banner,
    print_error,
    print_info,
    print_success,
    print_warning,
)

config_option = click.option(
    "--config",
    type=click.Path(exists=True, path_type=Path),
    help="Configuration file (default: config/shardorch.yaml)",
)


def _load(config):
    return load_config(config) if config else load_config()


@click.group()
@click.version_option(version=__version__, prog_name="shardorch")
def main():
    """
    shardorch - Chunked cluster job orchestrator.

    Splits each partition into fixed-length shards, runs them on the batch
    scheduler and concatenates the results.
    """
    pass


@main.command()
@config_option
@click.option("--chunk-length", type=click.IntRange(min=1), help="Length of one shard's interval")
@click.option("--poll-interval-seconds", type=click.FloatRange(min=0), help="Sleep between sweeps")
@click.option("--default-memory-mb", type=click.IntRange(min=1), help="Initial memory budget per shard")
@click.option("--memory-increment-mb", type=click.IntRange(min=1), help="Memory added after a memory-limit kill")
@click.option("--max-submission-retries", type=click.IntRange(min=0), help="Failed submissions tolerated per shard")
@click.option("--workers", type=click.IntRange(min=1), help="Worker threads per sweep")
@click.option("--deadline-seconds", type=click.FloatRange(min=0, min_open=True), help="Stop sweeping after this long")
@click.option("--dry-run", is_flag=True, help="Validate and size partitions without submitting")
@click.option("--verbose", is_flag=True, help="Enable debug logging")
def run(config, chunk_length, poll_interval_seconds, default_memory_mb, memory_increment_mb,
        max_submission_retries, workers, deadline_seconds, dry_run, verbose):
    """
    Run every shard to completion and aggregate partitions.

    Exits 0 when every partition was aggregated, 1 otherwise.

    Examples:

      # Run with config/shardorch.yaml
      shardorch run

      # Smaller chunks, faster polling
      shardorch run --chunk-length 1000000 --poll-interval-seconds 10

      # Size partitions only
      shardorch run --dry-run
    """
    try:
        orchestrator_config = _load(config).with_overrides(
            chunk_length=chunk_length,
            poll_interval_seconds=poll_interval_seconds,
            default_memory_mb=default_memory_mb,
            memory_increment_mb=memory_increment_mb,
            max_submission_retries=max_submission_retries,
            workers=workers,
            deadline_seconds=deadline_seconds,
        )
        pipeline = Pipeline(orchestrator_config)
    except ShardorchError as e:
        print_error(f"Configuration error: {e}")
        sys.exit(1)

    def request_cancel(signum, frame):
        print_warning("Stopping: no new submissions, waiting for outstanding jobs")
        pipeline.cancel()

    previous = {
        sig: signal.signal(sig, request_cancel)
        for sig in (signal.SIGINT, signal.SIGTERM)
    }
    try:
        result = pipeline.run(dry_run=dry_run, verbose=verbose)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    sys.exit(0 if result.success else 1)


@main.command()
@config_option
@click.option("--chunk-length", type=click.IntRange(min=1), help="Length of one shard's interval")
def plan(config, chunk_length):
    """
    Show the shard count of every partition.

    Examples:

      shardorch plan --chunk-length 5000000
    """
    try:
        pipeline = Pipeline(_load(config).with_overrides(chunk_length=chunk_length))
        pipeline.validate(check_scheduler=False)
        counts = pipeline.plan()
    except ShardorchError as e:
        print_error(str(e))
        sys.exit(1)

    print_banner(f"Plan: {pipeline.config.name}")
    for partition_id, count in counts.items():
        print_info(f"{partition_id}: {count} shards")
    print_success(f"{sum(counts.values())} shards across {len(counts)} partitions")


@main.command()
@config_option
@click.option("--skip-scheduler", is_flag=True, help="Don't check scheduler executables")
def validate(config, skip_scheduler):
    """
    Validate configuration and scheduler access.

    Examples:

      shardorch validate --skip-scheduler
    """
    try:
        pipeline = Pipeline(_load(config))
        pipeline.validate(check_scheduler=not skip_scheduler)
    except ShardorchError as e:
        print_error(str(e))
        sys.exit(1)
    print_success("Validation complete")


@main.command()
@config_option
def status(config):
    """
    Show the outcome of the last run.

    Examples:

      shardorch status
    """
    try:
        pipeline = Pipeline(_load(config))
    except ShardorchError as e:
        print_error(str(e))
        sys.exit(1)

    state = pipeline.status()
    if not state:
        print_info("No previous runs found")
        sys.exit(0)

    status_text = "SUCCESS" if state["success"] else "FAILED"
    print_info(f"Run status: {pipeline.config.name}")
    print_info(f"Result: {status_text}")
    print_info(f"Started: {state['started_at']}")
    print_info(f"Duration: {format_duration(state['duration_seconds'])}")

    orchestration = state.get("orchestration")
    if orchestration:
        counts = ", ".join(f"{k}={v}" for k, v in orchestration["counts"].items())
        print_info(f"Stopped: {orchestration['stop_reason']} after {orchestration['sweeps']} sweeps ({counts})")

    for aggregation in state.get("aggregations", []):
        if aggregation["aggregated"]:
            print_success(f"{aggregation['partition_id']}: {aggregation['output_path']}")
        else:
            print_error(f"{aggregation['partition_id']}: withheld ({aggregation['reason']})")

    if state.get("error_message"):
        print_error(state["error_message"])


if __name__ == "__main__":
    main()
