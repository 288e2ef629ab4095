"""
shardorch.schemas - Data structures for the orchestration core.

Partition -> Shard (keyed by partition and index) -> Outcome

Lifecycle:
1. Partition: Static description of a work domain and its reference data
2. Shard: Mutable scheduling record, owned by the ShardRegistry
3. Outcome: Abstracted result of polling a shard's job handle
"""

from .shard import (
    JobHandle,
    NO_HANDLE,
    Partition,
    Shard,
    ShardKey,
    ShardState,
)
from .outcome import (
    Outcome,
    OutcomeKind,
)

__all__ = [
    "JobHandle",
    "NO_HANDLE",
    "Partition",
    "Shard",
    "ShardKey",
    "ShardState",
    "Outcome",
    "OutcomeKind",
]
