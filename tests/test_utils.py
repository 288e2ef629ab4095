"""Tests for shardorch.utils module."""

import json
import logging

import pytest

from shardorch.utils import RunLogs, StructuredFormatter, backoff_delay, format_duration, setup_logging


class TestBackoffDelay:

    @pytest.mark.parametrize("failures,expected", [(0, 0.0), (1, 30), (2, 60), (3, 120), (4, 240)])
    def test_doubles_per_failure(self, failures, expected):
        assert backoff_delay(30, failures) == expected

    def test_capped(self):
        assert backoff_delay(30, 10, max_seconds=600) == 600


class TestFormatDuration:

    @pytest.mark.parametrize("seconds,expected", [
        (45, "45s"),
        (83, "1m 23s"),
        (3725, "1h 2m 5s"),
    ])
    def test_format(self, seconds, expected):
        assert format_duration(seconds) == expected


class TestStructuredFormatter:

    def test_extra_fields_included(self):
        record = logging.LogRecord("shardorch.orchestrator", logging.WARNING, __file__, 1,
                                   "query failed", None, None)
        record.shard = "chr1:2"
        record.event = "query_failed"
        record.metadata = {"failures": 2}

        data = json.loads(StructuredFormatter().format(record))

        assert data["level"] == "WARNING"
        assert data["message"] == "query failed"
        assert data["shard"] == "chr1:2"
        assert data["event"] == "query_failed"
        assert data["metadata"] == {"failures": 2}


class TestSetupLogging:

    def test_structured_file_log(self, tmp_path):
        log_file = tmp_path / "logs" / "run.log"
        logger = setup_logging(log_file, "DEBUG", "structured", console_output=False)
        logging.getLogger("shardorch.partitioner").debug("sized", extra={"event": "partition_sized"})
        for handler in logger.handlers:
            handler.flush()

        line = log_file.read_text().strip().splitlines()[-1]
        assert json.loads(line)["event"] == "partition_sized"

    def test_console_handler(self, tmp_path):
        logger = setup_logging(tmp_path / "run.log", "INFO", "pretty", console_output=True)
        assert len(logger.handlers) == 2
        assert logger.level == logging.INFO


class TestRunLogs:

    def test_lines_appended(self, tmp_path):
        progress_path = tmp_path / "progress.log"
        progress_path.write_text("earlier run\n")

        logs = RunLogs.open(progress_path, tmp_path / "errors.log")
        logs.progress.info("Partition:chr1 shard:1 submitted as job 1001")
        logs.errors.info("Partition:chr2 shard:1 jobid 1002 failed with unknown error")
        logs.close()

        lines = progress_path.read_text().splitlines()
        assert lines[0] == "earlier run"
        assert lines[1].endswith("Partition:chr1 shard:1 submitted as job 1001")
        assert "jobid 1002" in (tmp_path / "errors.log").read_text()

    def test_null_logs_discard(self):
        logs = RunLogs.null()
        logs.progress.info("nothing")
        logs.errors.info("nothing")
        assert not logs.progress.propagate
