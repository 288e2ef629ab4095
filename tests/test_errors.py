"""Tests for shardorch.errors module."""

import pytest

from shardorch.config import ConfigError
from shardorch.errors import (
    AggregationWithheld,
    DataAccessError,
    DiscoveryError,
    EmptyPartitionError,
    InvariantViolation,
    JobFailedError,
    SchedulerError,
    SchedulerQueryError,
    ShardorchError,
    SubmissionParseError,
    UnknownShardError,
)


class TestErrorHierarchy:
    """Every error derives from ShardorchError so callers can catch broadly."""

    @pytest.mark.parametrize("error_cls", [
        DiscoveryError,
        DataAccessError,
        EmptyPartitionError,
        SchedulerError,
        SubmissionParseError,
        SchedulerQueryError,
        JobFailedError,
        InvariantViolation,
        UnknownShardError,
        AggregationWithheld,
        ConfigError,
    ])
    def test_subclass_of_base(self, error_cls):
        assert issubclass(error_cls, ShardorchError)

    def test_discovery_errors(self):
        assert issubclass(DataAccessError, DiscoveryError)
        assert issubclass(EmptyPartitionError, DiscoveryError)

    def test_scheduler_errors(self):
        assert issubclass(SubmissionParseError, SchedulerError)
        assert issubclass(SchedulerQueryError, SchedulerError)

    def test_unknown_shard_is_key_error(self):
        assert issubclass(UnknownShardError, KeyError)


class TestErrorMessages:

    def test_discovery_error_names_partition(self):
        e = DataAccessError("chr1", "cannot read reference")
        assert e.partition_id == "chr1"
        assert str(e) == "Partition chr1: cannot read reference"

    def test_submission_parse_error_keeps_acknowledgment(self):
        e = SubmissionParseError("no job id", acknowledgment="Request aborted")
        assert e.acknowledgment == "Request aborted"
        assert str(e) == "no job id"

    def test_query_error_names_handle(self):
        e = SchedulerQueryError("5521290", "timeout")
        assert e.handle == "5521290"
        assert "Job 5521290" in str(e)

    def test_job_failed_error(self):
        e = JobFailedError("chr2", 1, "77", "EXIT", 1)
        assert e.index == 1
        assert "status EXIT, exit code 1" in str(e)

    def test_unknown_shard_message_not_quoted(self):
        # KeyError.__str__ would wrap the message in quotes
        e = UnknownShardError("Unknown shard: chr9:1")
        assert str(e) == "Unknown shard: chr9:1"

    def test_aggregation_withheld(self):
        e = AggregationWithheld("chr2", "shards failed: [1]")
        assert e.reason == "shards failed: [1]"
        assert str(e) == "Partition chr2 withheld: shards failed: [1]"
