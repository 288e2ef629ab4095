"""
ShardRegistry - authoritative store of shard records.

The registry provides:
- Bulk creation of Pending shards once partitions are sized
- Snapshot reads keyed by (partition_id, index)
- Atomic single-shard transitions with invariant checks
- Deterministic iteration (ascending partition id, then ascending index)

All shard records live in one map keyed by the composite key. Records are
never removed during a run so terminal shards stay available for audit and
for the aggregator's completeness check.
"""

import dataclasses
import re
import threading
from collections import Counter
from typing import Callable, Dict, Iterable, List, Optional

from shardorch.errors import InvariantViolation, UnknownShardError
from shardorch.schemas import Partition, Shard, ShardKey, ShardState

ShardMutator = Callable[[Shard], None]


def partition_sort_key(partition_id: str) -> tuple:
    """Order partition ids with embedded numbers compared numerically: chr2 before chr10."""
    parts = re.split(r"(\d+)", partition_id)
    return tuple(int(part) if i % 2 else part for i, part in enumerate(parts))


class ShardRegistry:
    """
    Registry owning every shard record of a run.

    Each shard has its own lock, so updates to one shard are serialised
    while different shards may be updated concurrently by sweep workers.
    """

    def __init__(self, default_memory_mb: int):
        """
        Initialize the registry.

        Args:
            default_memory_mb: Memory budget given to every new shard
        """
        self._default_memory_mb = default_memory_mb
        self._shards: Dict[ShardKey, Shard] = {}
        self._locks: Dict[ShardKey, threading.Lock] = {}
        self._partitions: List[Partition] = []
        self._shard_counts: Dict[str, int] = {}
        self._order: List[ShardKey] = []

    @property
    def default_memory_mb(self) -> int:
        return self._default_memory_mb

    def initialize(self, partitions: Iterable[Partition], shard_counts: Dict[str, int]) -> int:
        """
        Populate every shard as Pending with the default memory budget.

        Args:
            partitions: Partitions, in any order
            shard_counts: Shard count per partition id

        Returns:
            Number of shards created

        Raises:
            InvariantViolation: If called twice or a shard count is missing or
                not positive
        """
        if self._shards:
            raise InvariantViolation("Registry is already initialized")

        partitions = sorted(partitions, key=lambda p: partition_sort_key(p.partition_id))
        for partition in partitions:
            count = shard_counts.get(partition.partition_id)
            if count is None or count < 1:
                raise InvariantViolation(
                    f"Partition {partition.partition_id} has no positive shard count: {count}"
                )

        for partition in partitions:
            count = shard_counts[partition.partition_id]
            self._partitions.append(partition)
            self._shard_counts[partition.partition_id] = count
            for index in range(1, count + 1):
                key = (partition.partition_id, index)
                self._shards[key] = Shard(
                    partition_id=partition.partition_id,
                    index=index,
                    memory_mb=self._default_memory_mb,
                )
                self._locks[key] = threading.Lock()
                self._order.append(key)

        return len(self._shards)

    def _key(self, partition_id: str, index: int) -> ShardKey:
        key = (partition_id, index)
        if key not in self._shards:
            raise UnknownShardError(f"Unknown shard: {partition_id}:{index}")
        return key

    def get(self, partition_id: str, index: int) -> Shard:
        """
        Get a snapshot of one shard.

        Raises:
            UnknownShardError: If the key is not in the registry
        """
        key = self._key(partition_id, index)
        with self._locks[key]:
            return dataclasses.replace(self._shards[key])

    def update(self, partition_id: str, index: int, mutator: ShardMutator) -> Shard:
        """
        Apply one transition to a shard atomically.

        The mutator receives a working copy; the copy replaces the stored
        record only if it passes the invariant checks.

        Returns:
            Snapshot of the updated shard

        Raises:
            UnknownShardError: If the key is not in the registry
            InvariantViolation: If the transition breaks a shard invariant
        """
        key = self._key(partition_id, index)
        with self._locks[key]:
            current = self._shards[key]
            working = dataclasses.replace(current)
            mutator(working)
            self._check_transition(current, working)
            self._shards[key] = working
            return dataclasses.replace(working)

    @staticmethod
    def _check_transition(before: Shard, after: Shard) -> None:
        label = before.label()
        if after.key != before.key:
            raise InvariantViolation(f"Shard {label}: partition membership and index are immutable")
        if after.memory_mb < before.memory_mb:
            raise InvariantViolation(
                f"Shard {label}: memory budget cannot decrease ({before.memory_mb} -> {after.memory_mb})"
            )
        if before.is_terminal and after.state != before.state:
            raise InvariantViolation(
                f"Shard {label}: terminal state {before.state.value} cannot change to {after.state.value}"
            )
        if before.has_handle and after.has_handle and after.job_handle != before.job_handle:
            raise InvariantViolation(
                f"Shard {label}: new submission while job {before.job_handle} is unresolved"
            )

    def for_each_in_order(self, fn: Callable[[Shard], None]) -> None:
        """Call fn with a snapshot of every shard in deterministic order."""
        for partition_id, index in self._order:
            fn(self.get(partition_id, index))

    def keys(self) -> List[ShardKey]:
        """All shard keys in deterministic order."""
        return list(self._order)

    def partitions(self) -> List[Partition]:
        return list(self._partitions)

    def shard_count(self, partition_id: str) -> int:
        if partition_id not in self._shard_counts:
            raise UnknownShardError(f"Unknown partition: {partition_id}")
        return self._shard_counts[partition_id]

    def shards_for_partition(self, partition_id: str) -> List[Shard]:
        """Snapshots of one partition's shards in ascending index order."""
        count = self.shard_count(partition_id)
        return [self.get(partition_id, index) for index in range(1, count + 1)]

    def snapshot(self) -> List[Shard]:
        return [self.get(partition_id, index) for partition_id, index in self._order]

    def is_partition_done(self, partition_id: str) -> bool:
        return all(s.state == ShardState.DONE for s in self.shards_for_partition(partition_id))

    def failed_shards(self, partition_id: Optional[str] = None) -> List[Shard]:
        shards = self.shards_for_partition(partition_id) if partition_id else self.snapshot()
        return [s for s in shards if s.state == ShardState.FAILED]

    def non_terminal(self) -> List[Shard]:
        return [s for s in self.snapshot() if not s.is_terminal]

    def outstanding(self) -> List[Shard]:
        """Shards holding an unresolved job handle."""
        return [s for s in self.snapshot() if s.has_handle and not s.is_terminal]

    def all_terminal(self) -> bool:
        return not self.non_terminal()

    def counts_by_state(self) -> Dict[str, int]:
        counts = Counter(s.state.value for s in self.snapshot())
        return {state.value: counts.get(state.value, 0) for state in ShardState}

    def to_dict(self) -> Dict[str, list]:
        """Serialize shards grouped by partition."""
        return {
            partition.partition_id: [
                s.to_dict() for s in self.shards_for_partition(partition.partition_id)
            ]
            for partition in self._partitions
        }

    def __len__(self) -> int:
        return len(self._shards)

    def __repr__(self) -> str:
        return f"ShardRegistry(partitions={len(self._partitions)}, shards={len(self._shards)})"
