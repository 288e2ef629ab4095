"""
Partitioner - sizes each partition from its reference data.

The shard count of a partition is ceil(max_coordinate / chunk_length), where
max_coordinate is the largest coordinate found in the partition's reference
legend. Legend files are whitespace-delimited with one variant per line:

    id position a0 a1 ...
    rs58108140 10583 G A ...

The first line is a header; any line whose coordinate column is not an
integer is skipped.
"""

import gzip
import logging
import math
import zlib
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional

from shardorch.errors import DataAccessError, EmptyPartitionError
from shardorch.schemas import Partition

logger = logging.getLogger(__name__)


def _open_reference(path: Path):
    """Open a reference locator for text reading, decompressing .gz files."""
    if path.suffix == ".gz":
        return gzip.open(path, "rt")
    return open(path, "r")


def _iter_coordinates(lines: Iterable[str], column: int) -> Iterator[int]:
    for line in lines:
        fields = line.split()
        if len(fields) <= column:
            continue
        try:
            yield int(fields[column])
        except ValueError:
            continue


def max_coordinate(partition: Partition, column: int = 1) -> int:
    """
    Find the maximal coordinate present in a partition's reference data.

    Args:
        partition: Partition whose reference is scanned
        column: 0-based column holding the coordinate

    Returns:
        Largest coordinate found

    Raises:
        DataAccessError: If the reference is unreadable or not decompressible
        EmptyPartitionError: If no line carries a coordinate
    """
    path = Path(partition.reference)
    largest: Optional[int] = None

    try:
        with _open_reference(path) as handle:
            for coordinate in _iter_coordinates(handle, column):
                if largest is None or coordinate > largest:
                    largest = coordinate
    except (OSError, EOFError, zlib.error, UnicodeDecodeError) as e:
        raise DataAccessError(
            partition.partition_id,
            f"cannot read reference {path}: {e}",
        ) from e

    if largest is None:
        raise EmptyPartitionError(
            partition.partition_id,
            f"reference {path} contains no records",
        )

    return largest


def shard_count_for(coordinate: int, chunk_length: int) -> int:
    """
    Number of chunks needed to cover [0, coordinate].

    Always at least 1 so a partition is never unschedulable.
    """
    if chunk_length <= 0:
        raise ValueError(f"chunk_length must be positive, got: {chunk_length}")
    return max(1, math.ceil(coordinate / chunk_length))


class Partitioner:
    """
    Derives shard counts per partition.

    Runs once at startup; its result sizes the ShardRegistry.
    """

    def __init__(self, chunk_length: int, coordinate_column: int = 1):
        """
        Initialize Partitioner.

        Args:
            chunk_length: Length of one shard's interval
            coordinate_column: 0-based column of the coordinate in the reference
        """
        if chunk_length <= 0:
            raise ValueError(f"chunk_length must be positive, got: {chunk_length}")
        self.chunk_length = chunk_length
        self.coordinate_column = coordinate_column

    def discover_shard_count(self, partition: Partition) -> int:
        """
        Compute the shard count of one partition.

        Raises:
            DataAccessError: If the reference is unreadable
            EmptyPartitionError: If the reference has no records
        """
        largest = max_coordinate(partition, self.coordinate_column)
        count = shard_count_for(largest, self.chunk_length)
        logger.debug(
            f"Partition {partition.partition_id}: max coordinate {largest}, {count} shards",
            extra={"event": "partition_sized", "metadata": {
                "partition": partition.partition_id,
                "max_coordinate": largest,
                "shard_count": count,
            }},
        )
        return count

    def discover_all(self, partitions: List[Partition]) -> Dict[str, int]:
        """
        Size every partition, aborting on the first discovery error.

        Returns:
            Mapping of partition id to shard count, in partition order
        """
        counts: Dict[str, int] = {}
        for partition in partitions:
            try:
                counts[partition.partition_id] = self.discover_shard_count(partition)
            except (DataAccessError, EmptyPartitionError) as e:
                logger.error(
                    f"Partition discovery failed: {e}",
                    extra={"event": "discovery_failed", "metadata": {
                        "partition": partition.partition_id,
                        "error": str(e),
                    }},
                )
                raise
        return counts
