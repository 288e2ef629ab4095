"""Tests for shardorch.scheduler: status table, LSF adapter, submitter and poller."""

import dataclasses
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from shardorch.config import ConfigError, SchedulerConfig
from shardorch.errors import SchedulerError, SchedulerQueryError, SubmissionParseError
from shardorch.scheduler import (
    JobSpec,
    LsfScheduler,
    ResourceSpec,
    ShardSubmitter,
    StatusPoller,
    StatusTable,
    create_scheduler,
)
from shardorch.scheduler.lsf import parse_query, parse_submission
from shardorch.schemas import OutcomeKind, Partition, Shard
from shardorch.tool import ComputeTool, OutputLayout, interval_bounds


def _completed(stdout="", stderr="", returncode=0):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class TestStatusTable:

    @pytest.mark.parametrize("status,exit_code,kind", [
        ("RUN", None, OutcomeKind.RUNNING),
        ("PEND", None, OutcomeKind.RUNNING),
        ("EXIT", 130, OutcomeKind.MEMORY_LIMIT_EXCEEDED),
        ("DONE", 0, OutcomeKind.SUCCEEDED),
        ("DONE", None, OutcomeKind.SUCCEEDED),
        ("EXIT", 1, OutcomeKind.FAILED),
        ("EXIT", None, OutcomeKind.FAILED),
        ("DONE", 2, OutcomeKind.FAILED),
        ("ZOMBI", None, OutcomeKind.FAILED),
        ("SSUSP", None, OutcomeKind.FAILED),
    ])
    def test_default_classification(self, status, exit_code, kind):
        assert StatusTable().classify(status, exit_code).kind == kind

    def test_whitespace_stripped(self):
        assert StatusTable().classify(" RUN \n", None).kind == OutcomeKind.RUNNING

    def test_failed_keeps_raw_values(self):
        outcome = StatusTable().classify("EXIT", 1)
        assert outcome.raw_status == "EXIT"
        assert outcome.exit_code == 1
        assert outcome.reason == "Status: EXIT. Exit code: 1"

    def test_missing_exit_code_reported_as_dash(self):
        assert StatusTable().classify("ZOMBI", None).reason == "Status: ZOMBI. Exit code: -"

    def test_from_config(self):
        scheduler_config = SchedulerConfig({"status": {
            "running": ["RUN", "PEND", "SSUSP"],
            "memory_limit_exit_codes": [130, 137],
        }})
        table = StatusTable.from_config(scheduler_config)
        assert table.classify("SSUSP", None).kind == OutcomeKind.RUNNING
        assert table.classify("EXIT", 137).kind == OutcomeKind.MEMORY_LIMIT_EXCEEDED


class TestLsfParsing:

    def test_parse_submission(self):
        ack = "Job <5521290> is submitted to queue <normal>.\n"
        assert parse_submission(ack) == "5521290"

    def test_parse_submission_after_warning(self):
        ack = "MEMLIMIT set to 9000 MB\nJob <42> is submitted to default queue <normal>.\n"
        assert parse_submission(ack) == "42"

    @pytest.mark.parametrize("ack", ["", "Request aborted by esub. Job not submitted.", "Job 42 submitted"])
    def test_parse_submission_failure(self, ack):
        with pytest.raises(SubmissionParseError) as exc_info:
            parse_submission(ack)
        assert exc_info.value.acknowledgment == ack

    @pytest.mark.parametrize("output,expected", [
        ("RUN,-\n", ("RUN", None)),
        ("DONE,-\n", ("DONE", None)),
        ("EXIT,130\n", ("EXIT", 130)),
        ("\nEXIT, 1 \n", ("EXIT", 1)),
    ])
    def test_parse_query(self, output, expected):
        assert parse_query("42", output) == expected

    @pytest.mark.parametrize("output", ["", "\n\n", "RUN", ",5", "EXIT,abc"])
    def test_parse_query_failure(self, output):
        with pytest.raises(SchedulerQueryError) as exc_info:
            parse_query("42", output)
        assert exc_info.value.handle == "42"


class TestLsfScheduler:

    @pytest.fixture
    def job(self):
        return JobSpec(
            name="impute2",
            command="impute2 -int 0 5000000 -o out/chr1.1.gen",
            resources=ResourceSpec(memory_mb=9000),
            stdout_path=Path("logs/impute2.%J.chr1.1.o"),
            stderr_path=Path("logs/impute2.%J.chr1.1.e"),
        )

    def test_build_submit_command(self, job):
        cmd = LsfScheduler(queue="normal").build_submit_command(job)
        assert cmd == [
            "bsub", "-J", "impute2", "-q", "normal",
            "-o", "logs/impute2.%J.chr1.1.o",
            "-e", "logs/impute2.%J.chr1.1.e",
            "-R", "select[mem>9000] rusage[mem=9000]", "-M9000",
            "impute2", "-int", "0", "5000000", "-o", "out/chr1.1.gen",
        ]

    def test_build_submit_command_without_queue(self, job):
        cmd = LsfScheduler().build_submit_command(job)
        assert "-q" not in cmd

    def test_build_query_command(self):
        assert LsfScheduler().build_query_command("42") == [
            "bjobs", "-a", "-noheader", "-o", "stat exit_code delimiter=','", "42",
        ]

    def test_submit(self, job):
        with patch("shardorch.scheduler.lsf.subprocess.run") as mock_run:
            mock_run.return_value = _completed(stdout="Job <777> is submitted to queue <normal>.\n")
            handle = LsfScheduler().submit(job)

        assert handle == "777"
        args, kwargs = mock_run.call_args
        assert args[0][0] == "bsub"
        assert kwargs["capture_output"] is True
        assert kwargs["timeout"] == 60

    def test_submit_unparseable(self, job):
        with patch("shardorch.scheduler.lsf.subprocess.run") as mock_run:
            mock_run.return_value = _completed(stderr="Bad resource requirement", returncode=255)
            with pytest.raises(SubmissionParseError):
                LsfScheduler().submit(job)

    def test_submit_command_missing(self, job):
        with patch("shardorch.scheduler.lsf.subprocess.run", side_effect=FileNotFoundError("bsub")):
            with pytest.raises(SchedulerError):
                LsfScheduler().submit(job)

    def test_submit_unbalanced_quotes(self, job):
        job = dataclasses.replace(job, command="impute2 -fill 'unterminated -o out/chr1.1.gen")
        with patch("shardorch.scheduler.lsf.subprocess.run") as mock_run:
            with pytest.raises(SchedulerError, match="Cannot split job command"):
                LsfScheduler().submit(job)
        mock_run.assert_not_called()

    def test_query(self):
        with patch("shardorch.scheduler.lsf.subprocess.run") as mock_run:
            mock_run.return_value = _completed(stdout="EXIT,130\n")
            assert LsfScheduler().query("777") == ("EXIT", 130)

    def test_query_nonzero_exit(self):
        with patch("shardorch.scheduler.lsf.subprocess.run") as mock_run:
            mock_run.return_value = _completed(stderr="LSF is down", returncode=255)
            with pytest.raises(SchedulerQueryError, match="LSF is down"):
                LsfScheduler().query("777")

    def test_query_timeout(self):
        timeout = subprocess.TimeoutExpired(cmd="bjobs", timeout=60)
        with patch("shardorch.scheduler.lsf.subprocess.run", side_effect=timeout):
            with pytest.raises(SchedulerQueryError):
                LsfScheduler().query("777")

    def test_validate(self):
        with patch("shardorch.scheduler.lsf.shutil.which", return_value="/usr/bin/bsub"):
            result = LsfScheduler(queue="normal").validate()
        assert result == {"valid": True, "errors": [], "warnings": []}

    def test_validate_missing_executables(self):
        with patch("shardorch.scheduler.lsf.shutil.which", return_value=None):
            result = LsfScheduler().validate()
        assert not result["valid"]
        assert len(result["errors"]) == 2
        assert result["warnings"]

    def test_create_scheduler(self):
        scheduler = create_scheduler(SchedulerConfig({"queue": "long", "submit_command": "/opt/lsf/bsub"}))
        assert isinstance(scheduler, LsfScheduler)
        assert scheduler.queue == "long"
        assert scheduler.submit_command == "/opt/lsf/bsub"

    def test_create_unknown_scheduler(self):
        with pytest.raises(ConfigError):
            create_scheduler(SchedulerConfig({"type": "slurm"}))


class TestComputeTool:

    def test_interval_bounds(self):
        assert interval_bounds(1, 5_000_000) == (0, 5_000_000)
        assert interval_bounds(3, 5_000_000) == (10_000_000, 15_000_000)

    def test_interval_bounds_rejects_zero(self):
        with pytest.raises(ValueError):
            interval_bounds(0, 5_000_000)

    def test_layout(self, tmp_path):
        layout = OutputLayout(tmp_path, "gen")
        assert layout.shard_output("chrX", 2) == tmp_path / "chrX.2.gen"
        assert layout.partition_output("chrX") == tmp_path / "chrX.gen"

    def test_render_with_params(self, tmp_path):
        tool = ComputeTool("impute2 {flags} -l {reference} -int {start} {end} -o {output}",
                           OutputLayout(tmp_path, "gen"))
        partition = Partition("X", "ref/X.legend.gz", params={"flags": "-chrX"})
        command = tool.render(partition, 2, 5_000_000, 10_000_000)
        assert command == (
            f"impute2 -chrX -l ref/X.legend.gz -int 5000000 10000000 -o {tmp_path / 'X.2.gen'}"
        )

    def test_render_unknown_placeholder(self, tmp_path):
        tool = ComputeTool("impute2 -m {map}", OutputLayout(tmp_path))
        with pytest.raises(ConfigError, match="map"):
            tool.render(Partition("1", "ref"), 1, 0, 10)


class TestShardSubmitter:

    @pytest.fixture
    def submitter(self, tmp_path):
        client = MagicMock()
        client.submit.return_value = "1001"
        return ShardSubmitter(
            client=client,
            tool=ComputeTool("compute {partition} {start} {end} {output}", OutputLayout(tmp_path / "out")),
            partitions={"chr1": Partition("chr1", "ref/chr1.legend.gz")},
            chunk_length=5_000_000,
            job_name="impute2",
            log_dir=tmp_path / "jobs",
        )

    def test_build_job(self, submitter, tmp_path):
        job = submitter.build_job(Shard("chr1", 2, memory_mb=10500, attempts=2))
        assert job.name == "impute2"
        assert job.resources.memory_mb == 10500
        assert job.command == f"compute chr1 5000000 10000000 {tmp_path / 'out' / 'chr1.2.gen'}"
        assert job.stdout_path == tmp_path / "jobs" / "impute2.%J.chr1.2.o"
        assert job.stderr_path == tmp_path / "jobs" / "impute2.%J.chr1.2.e"
        assert job.metadata == {
            "partition": "chr1", "index": 2, "start": 5_000_000, "end": 10_000_000,
            "memory_mb": 10500, "attempt": 2,
        }

    def test_submit(self, submitter, tmp_path):
        assert submitter.submit(Shard("chr1", 1, memory_mb=9000)) == "1001"
        assert (tmp_path / "jobs").is_dir()
        job = submitter.client.submit.call_args[0][0]
        assert job.metadata["index"] == 1

    def test_submit_propagates_parse_errors(self, submitter):
        submitter.client.submit.side_effect = SubmissionParseError("no id")
        with pytest.raises(SubmissionParseError):
            submitter.submit(Shard("chr1", 1, memory_mb=9000))


class TestStatusPoller:

    def test_poll_classifies(self):
        client = MagicMock()
        client.query.return_value = ("EXIT", 130)
        outcome = StatusPoller(client, StatusTable()).poll("1001")
        client.query.assert_called_once_with("1001")
        assert outcome.kind == OutcomeKind.MEMORY_LIMIT_EXCEEDED

    def test_poll_propagates_query_errors(self):
        client = MagicMock()
        client.query.side_effect = SchedulerQueryError("1001", "down")
        with pytest.raises(SchedulerQueryError):
            StatusPoller(client, StatusTable()).poll("1001")
