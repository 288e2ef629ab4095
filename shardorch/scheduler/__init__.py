"""Batch scheduler adapters and the shard-level scheduler client."""

from shardorch.config import ConfigError, SchedulerConfig
from shardorch.scheduler.base import JobSpec, ResourceSpec, SchedulerClient
from shardorch.scheduler.client import ShardSubmitter, StatusPoller
from shardorch.scheduler.lsf import LsfScheduler
from shardorch.scheduler.status import StatusTable


def create_scheduler(scheduler_config: SchedulerConfig) -> SchedulerClient:
    """
    Create the adapter named by the scheduler configuration.

    Raises:
        ConfigError: If the scheduler type is unknown
    """
    if scheduler_config.type == "lsf":
        return LsfScheduler.from_config(scheduler_config)
    raise ConfigError(f"Unknown scheduler type: {scheduler_config.type}")


__all__ = [
    "JobSpec",
    "ResourceSpec",
    "SchedulerClient",
    "ShardSubmitter",
    "StatusPoller",
    "LsfScheduler",
    "StatusTable",
    "create_scheduler",
]
