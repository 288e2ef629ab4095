"""
Utility functions for shardorch.

Includes logging setup, the append-only progress and error logs, backoff
arithmetic and console output helpers.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler


# Global console for pretty output
console = Console()

PROGRESS_LOGGER = "shardorch.progress"
ERROR_LOGGER = "shardorch.errors"


def setup_logging(log_file: Path, log_level: str = "INFO", log_format: str = "structured", console_output: bool = True) -> logging.Logger:
    """
    Set up logging for an orchestration run.

    Args:
        log_file: Path to log file
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: "structured" (JSON) or "pretty" (human-readable)
        console_output: Also log to console

    Returns:
        Configured logger
    """
    log_file.parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("shardorch")
    logger.setLevel(getattr(logging, log_level.upper()))
    logger.handlers = []  # Clear existing handlers

    # File handler
    file_handler = logging.FileHandler(log_file)
    if log_format == "structured":
        file_handler.setFormatter(StructuredFormatter())
    else:
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )

    logger.addHandler(file_handler)

    # Console handler
    if console_output:
        if log_format == "pretty":
            console_handler = RichHandler(console=console, rich_tracebacks=True, show_time=False)
        else:
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(
                logging.Formatter("%(levelname)s: %(message)s")
            )

        logger.addHandler(console_handler)

    return logger


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Add extra fields if present
        if hasattr(record, "shard"):
            log_data["shard"] = record.shard
        if hasattr(record, "event"):
            log_data["event"] = record.event
        if hasattr(record, "metadata"):
            log_data["metadata"] = record.metadata

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def _append_only_logger(name: str, path: Path) -> logging.Logger:
    path.parent.mkdir(parents=True, exist_ok=True)
    logger = logging.getLogger(name)
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers = []
    logger.setLevel(logging.INFO)
    logger.propagate = False

    handler = logging.FileHandler(path, mode="a")
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
    )
    logger.addHandler(handler)
    return logger


class RunLogs:
    """
    The two human-readable logs written by the orchestrator.

    progress: one timestamped line per shard state transition
    errors: one timestamped line per terminal shard failure or withheld partition
    """

    def __init__(self, progress: logging.Logger, errors: logging.Logger):
        self.progress = progress
        self.errors = errors

    @classmethod
    def open(cls, progress_path: Path, error_path: Path) -> "RunLogs":
        return cls(
            _append_only_logger(PROGRESS_LOGGER, Path(progress_path)),
            _append_only_logger(ERROR_LOGGER, Path(error_path)),
        )

    @classmethod
    def null(cls) -> "RunLogs":
        """Logs that discard everything, for planning and tests."""
        progress = logging.getLogger(f"{PROGRESS_LOGGER}.null")
        errors = logging.getLogger(f"{ERROR_LOGGER}.null")
        for logger in (progress, errors):
            logger.propagate = False
            if not logger.handlers:
                logger.addHandler(logging.NullHandler())
        return cls(progress, errors)

    def close(self) -> None:
        for logger in (self.progress, self.errors):
            for handler in list(logger.handlers):
                handler.close()
                logger.removeHandler(handler)


def backoff_delay(base_seconds: float, failures: int, max_seconds: Optional[float] = None) -> float:
    """
    Exponential backoff delay after a number of consecutive failures.

    Args:
        base_seconds: Delay after the first failure
        failures: Consecutive failures so far (>= 1)
        max_seconds: Upper bound on the delay

    Returns:
        base_seconds * 2 ** (failures - 1), capped at max_seconds
    """
    if failures < 1:
        return 0.0
    delay = base_seconds * (2 ** (failures - 1))
    if max_seconds is not None:
        delay = min(delay, max_seconds)
    return delay


def format_duration(seconds: float) -> str:
    """
    Format duration in seconds to human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string (e.g., "1m 23s", "45s")
    """
    if seconds < 60:
        return f"{int(seconds)}s"

    minutes = int(seconds // 60)
    remaining_seconds = int(seconds % 60)

    if minutes < 60:
        return f"{minutes}m {remaining_seconds}s"

    hours = minutes // 60
    remaining_minutes = minutes % 60
    return f"{hours}h {remaining_minutes}m {remaining_seconds}s"


def print_banner(title: str) -> None:
    """
    Print a banner to console.

    Args:
        title: Banner title
    """
    console.rule(f"[bold blue]{title}[/bold blue]")


def print_success(message: str) -> None:
    """Print success message to console."""
    console.print(f"[bold green]✓[/bold green] {message}")


def print_error(message: str) -> None:
    """Print error message to console."""
    console.print(f"[bold red]✗[/bold red] {message}")


def print_warning(message: str) -> None:
    """Print warning message to console."""
    console.print(f"[bold yellow]⚠[/bold yellow] {message}")


def print_info(message: str) -> None:
    """Print info message to console."""
    console.print(f"[bold cyan]ℹ[/bold cyan] {message}")
