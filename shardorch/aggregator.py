"""
Aggregator - concatenates completed shard outputs per partition.

A partition is aggregated only when every one of its shards is Done and
every shard output exists. Otherwise nothing is written for the partition.
"""

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from shardorch.errors import AggregationWithheld
from shardorch.registry import ShardRegistry
from shardorch.schemas import ShardState
from shardorch.tool import OutputLayout
from shardorch.utils import RunLogs

logger = logging.getLogger(__name__)


@dataclass
class AggregationResult:
    """Outcome of aggregating one partition."""

    partition_id: str
    aggregated: bool
    output_path: Optional[Path] = None
    shard_count: int = 0
    bytes_written: int = 0
    reason: Optional[str] = None
    failed_shards: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "partition_id": self.partition_id,
            "aggregated": self.aggregated,
            "output_path": str(self.output_path) if self.output_path else None,
            "shard_count": self.shard_count,
            "bytes_written": self.bytes_written,
            "reason": self.reason,
            "failed_shards": list(self.failed_shards),
        }


class Aggregator:
    """Builds partition-level artifacts from shard outputs."""

    def __init__(self, registry: ShardRegistry, layout: OutputLayout, logs: Optional[RunLogs] = None):
        """
        Initialize Aggregator.

        Args:
            registry: Registry, read only
            layout: Output naming convention
            logs: Progress and error logs
        """
        self.registry = registry
        self.layout = layout
        self.logs = logs or RunLogs.null()

    def check_complete(self, partition_id: str) -> List[Path]:
        """
        Check that a partition can be aggregated.

        Returns:
            Shard output paths in ascending index order

        Raises:
            AggregationWithheld: If any shard is not Done or an output is missing
        """
        shards = self.registry.shards_for_partition(partition_id)

        failed = [s.index for s in shards if s.state == ShardState.FAILED]
        if failed:
            raise AggregationWithheld(partition_id, f"shards failed: {failed}")

        unfinished = [s.index for s in shards if s.state != ShardState.DONE]
        if unfinished:
            raise AggregationWithheld(partition_id, f"shards not finished: {unfinished}")

        paths = self.layout.shard_outputs(partition_id, len(shards))
        missing = [str(p) for p in paths if not p.is_file()]
        if missing:
            raise AggregationWithheld(partition_id, f"shard outputs missing: {missing}")

        return paths

    def aggregate(self, partition_id: str) -> AggregationResult:
        """
        Concatenate one partition's shard outputs in index order.

        The aggregate is written to a temporary file in the output directory
        and renamed into place, so a partial aggregate is never visible. A
        withheld partition never keeps an aggregate from an earlier run.
        """
        count = self.registry.shard_count(partition_id)
        try:
            paths = self.check_complete(partition_id)
        except AggregationWithheld as e:
            failed = [s.index for s in self.registry.failed_shards(partition_id)]
            return self._withhold(partition_id, count, e.reason, failed)

        output_path = self.layout.partition_output(partition_id)
        try:
            output_path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{output_path.name}.", suffix=".tmp", dir=output_path.parent
            )
        except OSError as e:
            return self._withhold(partition_id, count, f"cannot write aggregate: {e}")

        try:
            with os.fdopen(fd, "wb") as out:
                for path in paths:
                    with open(path, "rb") as shard_file:
                        shutil.copyfileobj(shard_file, out)
            os.replace(tmp_name, output_path)
        except OSError as e:
            _discard(Path(tmp_name))
            return self._withhold(partition_id, count, f"cannot write aggregate: {e}")
        except BaseException:
            _discard(Path(tmp_name))
            raise

        size = output_path.stat().st_size
        self.logs.progress.info(
            f"Partition {partition_id} output: {output_path} ({count} shards, {size} bytes)"
        )
        logger.info(
            f"Aggregated partition {partition_id} into {output_path}",
            extra={"event": "partition_aggregated", "metadata": {
                "partition": partition_id, "shards": count, "bytes": size,
            }},
        )
        return AggregationResult(
            partition_id=partition_id,
            aggregated=True,
            output_path=output_path,
            shard_count=count,
            bytes_written=size,
        )

    def _withhold(
        self, partition_id: str, count: int, reason: str, failed: Optional[List[int]] = None
    ) -> AggregationResult:
        self.logs.errors.info(f"Partition:{partition_id} aggregation withheld: {reason}")
        logger.error(
            f"Aggregation withheld for partition {partition_id}: {reason}",
            extra={"event": "aggregation_withheld", "metadata": {
                "partition": partition_id, "reason": reason,
            }},
        )

        stale = self.layout.partition_output(partition_id)
        if stale.exists():
            try:
                stale.unlink()
                self.logs.errors.info(
                    f"Partition:{partition_id} removed aggregate from an earlier run: {stale}"
                )
            except OSError as e:
                self.logs.errors.info(
                    f"Partition:{partition_id} aggregate from an earlier run could not be removed: {stale} ({e})"
                )

        return AggregationResult(
            partition_id=partition_id,
            aggregated=False,
            shard_count=count,
            reason=reason,
            failed_shards=list(failed or []),
        )

    def aggregate_all(self) -> List[AggregationResult]:
        """Aggregate every partition in registry order."""
        return [self.aggregate(p.partition_id) for p in self.registry.partitions()]


def _discard(path: Path) -> None:
    if path.exists():
        path.unlink()
