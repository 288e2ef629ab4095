import gzip
import threading
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest

from shardorch.config import OrchestratorConfig
from shardorch.errors import SchedulerQueryError, SubmissionParseError
from shardorch.registry import ShardRegistry
from shardorch.scheduler import SchedulerClient, ShardSubmitter, StatusPoller, StatusTable
from shardorch.schemas import Partition
from shardorch.tool import ComputeTool, OutputLayout
from shardorch.utils import RunLogs


def write_legend(path: Path, positions: List[int], header: bool = True, compress: bool = True) -> Path:
    """Write a reference legend with one variant per position."""
    lines = []
    if header:
        lines.append("id position a0 a1 type source")
    for i, position in enumerate(positions):
        lines.append(f"rs{i} {position} A G SNP LOWCOV")
    text = "\n".join(lines) + "\n"
    path.parent.mkdir(parents=True, exist_ok=True)
    if compress:
        with gzip.open(path, "wt") as f:
            f.write(text)
    else:
        path.write_text(text)
    return path


class FakeScheduler(SchedulerClient):
    """
    In-memory scheduler.

    statuses: per shard key, a queue of (status, exit_code) answers consumed
        by successive queries; once empty every query answers ("DONE", None)
    submit_failures: per shard key, number of submissions to reject
    query_failures: per shard key, number of queries to reject
    layout: if set, shard outputs are written when a job answers DONE
    """

    def __init__(
        self,
        statuses: Optional[Dict[Tuple[str, int], List[Tuple[str, Optional[int]]]]] = None,
        submit_failures: Optional[Dict[Tuple[str, int], int]] = None,
        query_failures: Optional[Dict[Tuple[str, int], int]] = None,
        layout: Optional[OutputLayout] = None,
    ):
        self.statuses = {k: list(v) for k, v in (statuses or {}).items()}
        self.submit_failures = dict(submit_failures or {})
        self.query_failures = dict(query_failures or {})
        self.layout = layout
        self.submissions = []
        self.queries = []
        self._next_id = 1000
        self._jobs: Dict[str, Tuple[str, int]] = {}
        self._unresolved: Dict[Tuple[str, int], str] = {}
        self._lock = threading.Lock()

    def submit(self, job):
        with self._lock:
            return self._submit(job)

    def query(self, handle):
        with self._lock:
            return self._query(handle)

    def _submit(self, job):
        key = (job.metadata["partition"], job.metadata["index"])
        if self.submit_failures.get(key, 0) > 0:
            self.submit_failures[key] -= 1
            raise SubmissionParseError("Request aborted by esub", acknowledgment="Request aborted by esub")
        assert key not in self._unresolved, f"duplicate submission for {key}"
        self._next_id += 1
        handle = str(self._next_id)
        self._jobs[handle] = key
        self._unresolved[key] = handle
        self.submissions.append(job)
        return handle

    def _query(self, handle):
        key = self._jobs[handle]
        self.queries.append(handle)
        if self.query_failures.get(key, 0) > 0:
            self.query_failures[key] -= 1
            raise SchedulerQueryError(handle, "LSF is down")
        queue = self.statuses.get(key, [])
        status, exit_code = queue.pop(0) if queue else ("DONE", None)
        if status not in ("RUN", "PEND"):
            self._unresolved.pop(key, None)
        if status == "DONE" and self.layout is not None:
            path = self.layout.shard_output(*key)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(f"{key[0]} shard {key[1]}\n")
        return status, exit_code

    def submissions_for(self, partition_id, index):
        return [
            job for job in self.submissions
            if job.metadata["partition"] == partition_id and job.metadata["index"] == index
        ]


@pytest.fixture
def layout(tmp_path):
    return OutputLayout(tmp_path / "out", "gen")


@pytest.fixture
def run_logs(tmp_path):
    logs = RunLogs.open(tmp_path / "progress.log", tmp_path / "errors.log")
    yield logs
    logs.close()


def make_registry(counts: Dict[str, int], default_memory_mb: int = 9000) -> ShardRegistry:
    registry = ShardRegistry(default_memory_mb)
    partitions = [Partition(pid, f"ref/{pid}.legend.gz") for pid in counts]
    registry.initialize(partitions, counts)
    return registry


def make_client(registry, scheduler, layout, chunk_length=5_000_000, log_dir=None):
    partitions = {p.partition_id: p for p in registry.partitions()}
    submitter = ShardSubmitter(
        client=scheduler,
        tool=ComputeTool("compute --region {partition}:{start}-{end} -o {output}", layout),
        partitions=partitions,
        chunk_length=chunk_length,
        job_name="test",
        log_dir=log_dir or layout.output_dir / "jobs",
    )
    poller = StatusPoller(scheduler, StatusTable())
    return submitter, poller


@pytest.fixture
def config_data(tmp_path):
    """A complete configuration mapping rooted in tmp_path."""
    ref_dir = tmp_path / "ref"
    write_legend(ref_dir / "chr1.legend.gz", [10583, 4_000_000, 12_300_000])
    write_legend(ref_dir / "chr2.legend.gz", [500, 4_999_999])
    return {
        "run": {"name": "test-run"},
        "partitions": [
            {"id": "chr1", "reference": str(ref_dir / "chr1.legend.gz")},
            {"id": "chr2", "reference": str(ref_dir / "chr2.legend.gz"), "params": {"flags": "-x"}},
        ],
        "chunking": {"chunk_length": 5_000_000},
        "memory": {"default_mb": 9000, "increment_mb": 1500},
        "scheduler": {"type": "lsf", "job_name": "test", "log_dir": str(tmp_path / "jobs")},
        "polling": {"interval_seconds": 0, "max_submission_retries": 2},
        "tool": {
            "command": "compute --region {partition}:{start}-{end} -o {output}",
            "output_dir": str(tmp_path / "out"),
            "output_ext": "gen",
        },
        "logging": {
            "output": str(tmp_path / "logs" / "run.log"),
            "progress_log": str(tmp_path / "logs" / "progress.log"),
            "error_log": str(tmp_path / "logs" / "errors.log"),
            "console": False,
        },
    }


@pytest.fixture
def test_config(config_data):
    return OrchestratorConfig(config_data)


@pytest.fixture
def legend():
    """Factory writing reference legend files."""
    return write_legend


@pytest.fixture
def scheduler_factory():
    return FakeScheduler


@pytest.fixture
def registry_factory():
    return make_registry


@pytest.fixture
def client_factory():
    """Factory returning a (submitter, poller) pair over a scheduler."""
    return make_client
