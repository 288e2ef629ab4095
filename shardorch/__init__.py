"""
shardorch - Chunked cluster job orchestrator

Partitions a genome-wide computation into per-region shards, submits each
shard to a batch scheduler, escalates memory on out-of-memory termination
and concatenates shard outputs per partition.
"""

__version__ = "0.1.0"
__author__ = "Local Pipeline Team"


__all__ = ["OrchestratorConfig", "load_config", "ConfigError"]

from .config import OrchestratorConfig, load_config, ConfigError
