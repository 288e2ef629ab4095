"""
Status table - maps raw scheduler (status, exit code) pairs to Outcomes.

The mapping from raw exit codes to "memory limit exceeded" depends on the
scheduler and site configuration, so every set in the table comes from
configuration. The defaults follow LSF, where a job killed for exceeding
its memory limit ends in EXIT with code 130.
"""

from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Optional

from shardorch.schemas import Outcome


def _frozen(values: Iterable) -> frozenset:
    return frozenset(values)


@dataclass(frozen=True)
class StatusTable:
    """
    Fixed classification table, evaluated top to bottom:

    | raw status        | exit code                 | Outcome               |
    |-------------------|---------------------------|-----------------------|
    | running_statuses  | any                       | Running               |
    | memory_statuses   | memory_limit_exit_codes   | MemoryLimitExceeded   |
    | success_statuses  | success_exit_codes        | Succeeded             |
    | anything else     | anything else             | Failed(status, code)  |

    A missing exit code counts as 0, since LSF reports "-" for jobs that
    finished normally.
    """
    running_statuses: FrozenSet[str] = field(default_factory=lambda: frozenset({"RUN", "PEND"}))
    memory_limit_statuses: FrozenSet[str] = field(default_factory=lambda: frozenset({"EXIT"}))
    memory_limit_exit_codes: FrozenSet[int] = field(default_factory=lambda: frozenset({130}))
    success_statuses: FrozenSet[str] = field(default_factory=lambda: frozenset({"DONE"}))
    success_exit_codes: FrozenSet[int] = field(default_factory=lambda: frozenset({0}))

    @classmethod
    def from_config(cls, scheduler_config) -> "StatusTable":
        """Build the table from a SchedulerConfig."""
        return cls(
            running_statuses=_frozen(scheduler_config.running_statuses),
            memory_limit_statuses=_frozen(scheduler_config.memory_limit_statuses),
            memory_limit_exit_codes=_frozen(scheduler_config.memory_limit_exit_codes),
            success_statuses=_frozen(scheduler_config.success_statuses),
            success_exit_codes=_frozen(scheduler_config.success_exit_codes),
        )

    def classify(self, raw_status: str, exit_code: Optional[int]) -> Outcome:
        """Map one raw (status, exit code) pair to an Outcome."""
        status = raw_status.strip()
        effective_code = 0 if exit_code is None else exit_code

        if status in self.running_statuses:
            return Outcome.running(status)
        if status in self.memory_limit_statuses and exit_code in self.memory_limit_exit_codes:
            return Outcome.memory_limit_exceeded(status, exit_code)
        if status in self.success_statuses and effective_code in self.success_exit_codes:
            return Outcome.succeeded(status, effective_code)
        return Outcome.failed(status, exit_code)
