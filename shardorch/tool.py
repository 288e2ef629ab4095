"""
Compute tool description and output layout.

The per-shard computation is an external executable described by a command
template. Placeholders available to the template:

    {partition}  partition id
    {index}      1-based shard index
    {start}      interval start (inclusive)
    {end}        interval end (exclusive)
    {output}     shard output path
    {reference}  partition reference locator

plus every key of the partition's ``params`` mapping. For example:

    impute2 -m {map} -h {haplotypes} -l {reference} -g {genotypes}
        -int {start} {end} -Ne 20000 -o {output}
"""

from dataclasses import dataclass
from pathlib import Path
from typing import List, Tuple

from shardorch.config import ConfigError
from shardorch.schemas import Partition


def interval_bounds(index: int, chunk_length: int) -> Tuple[int, int]:
    """Interval [start, end) covered by a 1-based shard index."""
    if index < 1:
        raise ValueError(f"Shard index must be >= 1, got: {index}")
    start = (index - 1) * chunk_length
    return start, start + chunk_length


@dataclass(frozen=True)
class OutputLayout:
    """
    Filesystem naming convention.

    Shard outputs: {output_dir}/{partition}.{index}.{ext}
    Aggregate:     {output_dir}/{partition}.{ext}
    """
    output_dir: Path
    ext: str = "gen"

    def shard_output(self, partition_id: str, index: int) -> Path:
        return self.output_dir / f"{partition_id}.{index}.{self.ext}"

    def shard_outputs(self, partition_id: str, count: int) -> List[Path]:
        return [self.shard_output(partition_id, index) for index in range(1, count + 1)]

    def partition_output(self, partition_id: str) -> Path:
        return self.output_dir / f"{partition_id}.{self.ext}"


class ComputeTool:
    """Renders the compute command for one shard."""

    def __init__(self, command_template: str, layout: OutputLayout):
        self.command_template = command_template
        self.layout = layout

    def render(self, partition: Partition, index: int, start: int, end: int) -> str:
        """
        Render the command line for one shard.

        Raises:
            ConfigError: If the template references an unknown placeholder
        """
        values = dict(partition.params)
        values.update({
            "partition": partition.partition_id,
            "index": index,
            "start": start,
            "end": end,
            "output": self.layout.shard_output(partition.partition_id, index),
            "reference": partition.reference,
        })
        try:
            return self.command_template.format(**values)
        except KeyError as e:
            raise ConfigError(
                f"tool.command references unknown placeholder {e} for partition {partition.partition_id}"
            )
        except (IndexError, ValueError) as e:
            raise ConfigError(f"tool.command is not a valid template: {e}")
