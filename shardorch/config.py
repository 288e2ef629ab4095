"""
Configuration management for shardorch.

Loads and validates the orchestrator YAML configuration file. CLI flags are
applied on top of the file through OrchestratorConfig.with_overrides().
"""

import copy
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from shardorch.errors import ShardorchError
from shardorch.schemas import Partition

DEFAULT_CHUNK_LENGTH = 5_000_000
DEFAULT_MEMORY_MB = 9000
DEFAULT_MEMORY_INCREMENT_MB = 1500
DEFAULT_POLL_INTERVAL_SECONDS = 30
DEFAULT_MAX_SUBMISSION_RETRIES = 5

SCHEDULER_TYPES = ["lsf"]

OVERRIDABLE_SETTINGS = (
    "chunk_length",
    "default_memory_mb",
    "memory_increment_mb",
    "poll_interval_seconds",
    "max_submission_retries",
    "max_query_failures",
    "deadline_seconds",
    "workers",
)


class ConfigError(ShardorchError):
    """Configuration validation error."""
    pass


def _positive_int(section: str, key: str, value: Any, allow_zero: bool = False) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{section}.{key} must be an integer, got: {value!r}")
    if number < 0 or (number == 0 and not allow_zero):
        qualifier = "non-negative" if allow_zero else "positive"
        raise ConfigError(f"{section}.{key} must be {qualifier}, got: {number}")
    return number


def _exit_codes(status: Dict[str, Any], key: str, default: List[int]) -> List[int]:
    codes = status.get(key, default)
    if not isinstance(codes, list):
        codes = [codes]
    try:
        return [int(code) for code in codes]
    except (TypeError, ValueError):
        raise ConfigError(f"scheduler.status.{key} must be a list of integers, got: {codes!r}")


class SchedulerConfig:
    """Configuration for the batch scheduler adapter and its status table."""

    def __init__(self, data: Dict[str, Any]):
        self.type = str(data.get("type", "lsf")).lower()
        self.job_name = data.get("job_name", "shardorch")
        self.queue = data.get("queue")
        self.log_dir = Path(data.get("log_dir", "logs/jobs"))
        self.submit_command = data.get("submit_command", "bsub")
        self.query_command = data.get("query_command", "bjobs")
        self.command_timeout_seconds = data.get("command_timeout_seconds", 60)

        status = data.get("status") or {}
        if not isinstance(status, dict):
            raise ConfigError(f"scheduler.status must be a mapping, got: {status!r}")
        self.running_statuses = list(status.get("running", ["RUN", "PEND"]))
        self.memory_limit_statuses = list(status.get("memory_limit", ["EXIT"]))
        self.memory_limit_exit_codes = _exit_codes(status, "memory_limit_exit_codes", [130])
        self.success_statuses = list(status.get("success", ["DONE"]))
        self.success_exit_codes = _exit_codes(status, "success_exit_codes", [0])

    def validate(self) -> None:
        """Validate scheduler configuration."""
        if self.type not in SCHEDULER_TYPES:
            raise ConfigError(
                f"scheduler.type must be one of {SCHEDULER_TYPES}, got: {self.type}"
            )
        if not self.memory_limit_exit_codes:
            raise ConfigError("scheduler.status.memory_limit_exit_codes must not be empty")
        overlap = set(self.running_statuses) & (
            set(self.success_statuses) | set(self.memory_limit_statuses)
        )
        if overlap:
            raise ConfigError(
                f"scheduler.status: statuses listed as both running and terminal: {sorted(overlap)}"
            )

    def __repr__(self) -> str:
        return f"SchedulerConfig(type={self.type}, job_name={self.job_name}, queue={self.queue})"


class ToolConfig:
    """Configuration for the per-shard compute tool."""

    def __init__(self, data: Dict[str, Any]):
        self.command_template = data.get("command")
        self.output_dir = Path(data.get("output_dir", "output"))
        self.output_ext = str(data.get("output_ext", "gen")).lstrip(".")

    def validate(self) -> None:
        if not self.command_template:
            raise ConfigError("tool.command is required")

    def __repr__(self) -> str:
        return f"ToolConfig(output_dir={self.output_dir}, output_ext={self.output_ext})"


class OrchestratorConfig:
    """Complete orchestrator configuration."""

    def __init__(self, raw_config: Dict[str, Any], config_path: Optional[Path] = None):
        self.config_path = config_path
        self.raw_config = raw_config

        # Run metadata
        run = raw_config.get("run") or {}
        self.name = run.get("name", "unnamed-run")

        # Partitions as listed; the registry schedules them by sorted id
        self.partitions: List[Partition] = []
        for entry in raw_config.get("partitions") or []:
            if not isinstance(entry, dict) or "id" not in entry:
                raise ConfigError(f"Partition entry must be a mapping with an 'id': {entry!r}")
            if "reference" not in entry:
                raise ConfigError(f"Partition {entry['id']}: missing 'reference'")
            self.partitions.append(Partition(
                partition_id=str(entry["id"]),
                reference=str(entry["reference"]),
                params=dict(entry.get("params") or {}),
            ))

        chunking = raw_config.get("chunking") or {}
        self.chunk_length = chunking.get("chunk_length", DEFAULT_CHUNK_LENGTH)
        self.coordinate_column = chunking.get("coordinate_column", 1)

        memory = raw_config.get("memory") or {}
        self.default_memory_mb = memory.get("default_mb", DEFAULT_MEMORY_MB)
        self.memory_increment_mb = memory.get("increment_mb", DEFAULT_MEMORY_INCREMENT_MB)

        polling = raw_config.get("polling") or {}
        self.poll_interval_seconds = polling.get("interval_seconds", DEFAULT_POLL_INTERVAL_SECONDS)
        self.max_submission_retries = polling.get("max_submission_retries", DEFAULT_MAX_SUBMISSION_RETRIES)
        self.query_backoff_seconds = polling.get("query_backoff_seconds", 30)
        self.query_backoff_max_seconds = polling.get("query_backoff_max_seconds", 600)
        self.max_query_failures = polling.get("max_query_failures")
        self.deadline_seconds = polling.get("deadline_seconds")
        self.workers = polling.get("workers", 1)

        self.scheduler = SchedulerConfig(raw_config.get("scheduler") or {})
        self.tool = ToolConfig(raw_config.get("tool") or {})

        # Logging
        self.logging = raw_config.get("logging") or {}

    def get_partition(self, partition_id: str) -> Optional[Partition]:
        """Get partition by identifier."""
        for partition in self.partitions:
            if partition.partition_id == partition_id:
                return partition
        return None

    def get_log_file_path(self) -> Path:
        """Get run log file path with date interpolation."""
        log_output = self.logging.get("output", "logs/shardorch-{date}.log")
        log_output = log_output.replace("{date}", datetime.now().strftime("%Y-%m-%d"))
        return Path(log_output)

    def get_progress_log_path(self) -> Path:
        return Path(self.logging.get("progress_log", "shardorch-progress.log"))

    def get_error_log_path(self) -> Path:
        return Path(self.logging.get("error_log", "shardorch-errors.log"))

    def get_state_file_path(self) -> Path:
        """State file lives next to the run log."""
        return self.get_log_file_path().parent / "state.json"

    def get_log_level(self) -> str:
        """Get logging level."""
        return self.logging.get("level", "INFO").upper()

    def get_log_format(self) -> str:
        """Get log format (structured or pretty)."""
        return self.logging.get("format", "structured")

    def should_log_to_console(self) -> bool:
        """Check if console logging is enabled."""
        return self.logging.get("console", True)

    def with_overrides(self, **overrides: Any) -> "OrchestratorConfig":
        """
        Return a copy with the given attributes replaced.

        Keys whose value is None are ignored so that unset CLI flags fall
        through to the file (or default) value.

        Raises:
            ConfigError: If an override names an unknown setting
        """
        updated = copy.copy(self)
        for key, value in overrides.items():
            if value is None:
                continue
            if key not in OVERRIDABLE_SETTINGS:
                raise ConfigError(f"Unknown configuration override: {key}")
            setattr(updated, key, value)
        return updated

    def validate(self) -> None:
        """Validate entire configuration."""
        if not self.name:
            raise ConfigError("run.name is required")

        if not self.partitions:
            raise ConfigError("At least one partition is required")

        seen = set()
        for partition in self.partitions:
            if partition.partition_id in seen:
                raise ConfigError(f"Duplicate partition id: {partition.partition_id}")
            seen.add(partition.partition_id)

        self.chunk_length = _positive_int("chunking", "chunk_length", self.chunk_length)
        self.coordinate_column = _positive_int(
            "chunking", "coordinate_column", self.coordinate_column, allow_zero=True
        )
        self.default_memory_mb = _positive_int("memory", "default_mb", self.default_memory_mb)
        self.memory_increment_mb = _positive_int("memory", "increment_mb", self.memory_increment_mb)
        self.max_submission_retries = _positive_int(
            "polling", "max_submission_retries", self.max_submission_retries, allow_zero=True
        )
        self.workers = _positive_int("polling", "workers", self.workers)

        for key in ("poll_interval_seconds", "query_backoff_seconds", "query_backoff_max_seconds"):
            value = getattr(self, key)
            try:
                value = float(value)
            except (TypeError, ValueError):
                raise ConfigError(f"polling.{key} must be a number, got: {value!r}")
            if value < 0:
                raise ConfigError(f"polling.{key} must be non-negative, got: {value}")
            setattr(self, key, value)

        if self.deadline_seconds is not None:
            try:
                self.deadline_seconds = float(self.deadline_seconds)
            except (TypeError, ValueError):
                raise ConfigError(f"polling.deadline_seconds must be a number, got: {self.deadline_seconds!r}")
            if self.deadline_seconds <= 0:
                raise ConfigError("polling.deadline_seconds must be positive")

        if self.max_query_failures is not None:
            self.max_query_failures = _positive_int(
                "polling", "max_query_failures", self.max_query_failures
            )

        self.scheduler.validate()
        self.tool.validate()

    def __repr__(self) -> str:
        return f"OrchestratorConfig(name={self.name}, partitions={len(self.partitions)})"


def _load_yaml(config_path: Path) -> Dict[str, Any]:
    """Load and parse YAML configuration file."""
    if not config_path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(config_path, "r") as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax: {e}")

    if not config:
        raise ConfigError("Configuration file is empty")
    if not isinstance(config, dict):
        raise ConfigError("Configuration file must contain a mapping")
    return config


def load_config(config_path: Optional[Path] = None) -> OrchestratorConfig:
    """
    Load orchestrator configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to config/shardorch.yaml

    Returns:
        OrchestratorConfig instance

    Raises:
        ConfigError: If config is invalid or missing
    """
    if config_path is None:
        config_path = Path("config") / "shardorch.yaml"

    config_path = Path(config_path)
    return OrchestratorConfig(_load_yaml(config_path), config_path=config_path)
