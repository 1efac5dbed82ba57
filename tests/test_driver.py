from collections.abc import Iterator
import logging
from pathlib import Path

import pytest

from pipekit.adapters import ListSink
from pipekit.context import CancelToken
from pipekit.driver import ExecutionDriver
from pipekit.errors import ConfigError, ParseError, PipelineIOError, RecordError, SinkError, SourceError
from pipekit.pipeline import Pipeline
from pipekit.records import Record
from pipekit.sorting import SortStage
from pipekit.stages import FilterStage, Stage


class FailingSink:
    def __init__(self, fail_after: int, failures: int = 1_000) -> None:
        self.fail_after = fail_after
        self.failures_left = failures
        self.records: list[Record] = []

    def write(self, record: Record) -> None:
        if len(self.records) >= self.fail_after and self.failures_left:
            self.failures_left -= 1
            raise OSError("disk full")
        self.records.append(record)


def numbered(count: int) -> list[Record]:
    return [Record({"n": n}) for n in range(count)]


def test_fatal_sink_error_reports_partial_output() -> None:
    sink = FailingSink(fail_after=3)

    report = ExecutionDriver(Pipeline()).execute(numbered(5), sink)

    assert report.records_out == 3
    assert len(sink.records) == 3
    assert isinstance(report.fatal_error, SinkError)
    assert report.status == "failed"


def test_sink_write_is_retried(monkeypatch) -> None:
    monkeypatch.setattr("pipekit.retry.time.sleep", lambda _: None)
    sink = FailingSink(fail_after=2, failures=2)

    report = ExecutionDriver(Pipeline(), sink_retries=2, retry_backoff_seconds=0.5).execute(numbered(4), sink)

    assert report.status == "succeeded"
    assert [record["n"] for record in sink.records] == [0, 1, 2, 3]


def test_source_read_failure_is_fatal() -> None:
    def source() -> Iterator[Record]:
        yield Record({"n": 1})
        raise OSError("connection reset")

    sink = ListSink()
    report = ExecutionDriver(Pipeline()).execute(source(), sink)

    assert isinstance(report.fatal_error, SourceError)
    assert report.records_in == 1
    assert report.records_out == 1


def test_parse_errors_are_recorded_and_skipped() -> None:
    source = [
        Record({"n": 1}),
        ParseError("invalid JSON", raw="{oops", position=2),
        {"n": 3},
        {"n": {1, 2}},
    ]
    sink = ListSink()

    report = ExecutionDriver(Pipeline()).execute(source, sink)

    assert sink.records == [Record({"n": 1}), Record({"n": 3})]
    assert report.status == "succeeded"
    assert report.records_in == 4
    assert [(failure.stage, failure.position) for failure in report.failures] == [("source", 2), ("source", 4)]
    assert report.failures[0].record == "{oops"


def test_record_errors_do_not_stop_the_run() -> None:
    sink = ListSink()
    records = [Record({"age": 20}), Record({"age": "old"}), Record({"age": 40})]

    report = ExecutionDriver(Pipeline([FilterStage("age > 30")])).execute(records, sink)

    assert sink.records == [Record({"age": 40})]
    assert report.errors == 1
    assert report.records_dropped == 1
    assert report.status == "succeeded"


def test_fatal_stage_error_stops_the_run() -> None:
    sink = ListSink()
    records = [Record({"age": 40}), Record({"age": "old"}), Record({"age": 50})]

    report = ExecutionDriver(Pipeline([FilterStage("age > 30", fatal=True)])).execute(records, sink)

    assert isinstance(report.fatal_error, RecordError)
    assert sink.records == [Record({"age": 40})]


def test_configuration_errors_are_raised_before_reading() -> None:
    class NeedsSetup(Stage):
        def validate(self) -> None:
            raise ConfigError("not configured")

    pulled: list[int] = []

    def source() -> Iterator[Record]:
        pulled.append(1)
        yield Record({"n": 1})

    with pytest.raises(ConfigError):
        ExecutionDriver(Pipeline([NeedsSetup()])).execute(source(), ListSink())
    assert pulled == []


def test_cancel_between_records_stops_writing() -> None:
    token = CancelToken()

    class CancellingSink(ListSink):
        def write(self, record: Record) -> None:
            super().write(record)
            token.cancel()

    sink = CancellingSink()
    report = ExecutionDriver(Pipeline()).execute(numbered(5), sink, cancel=token)

    assert report.cancelled
    assert report.status == "cancelled"
    assert report.records_out == 1


def test_cancel_during_spilled_sort_releases_temp_storage(tmp_path: Path) -> None:
    token = CancelToken()
    stage = SortStage(["n"], memory_limit=2)

    def source() -> Iterator[Record]:
        for record in numbered(5):
            if record["n"] == 4:
                token.cancel()
            yield record
        yield Record({"n": 99})

    sink = ListSink()
    report = ExecutionDriver(Pipeline([stage]), temp_root=str(tmp_path)).execute(source(), sink, cancel=token)

    assert report.cancelled
    assert report.records_in == 5
    assert sink.records == []
    assert list(tmp_path.iterdir()) == []


def test_spilled_sort_through_driver(tmp_path: Path) -> None:
    records = [Record({"n": n}) for n in (5, 3, 9, 1, 7, 2, 8)]
    sink = ListSink()

    report = ExecutionDriver(Pipeline([SortStage(["-n"], memory_limit=3)]), temp_root=str(tmp_path)).execute(records, sink)

    assert [record["n"] for record in sink.records] == [9, 8, 7, 5, 3, 2, 1]
    assert report.status == "succeeded"
    assert list(tmp_path.iterdir()) == []


def test_report_to_dict() -> None:
    records = [Record({"age": 20}), Record({"name": "x"}), Record({"age": 40})]

    report = ExecutionDriver(Pipeline([FilterStage("age > 30", name="seniors")])).execute(
        records, ListSink(), run_id="abc"
    )
    payload = report.to_dict()

    assert payload["run_id"] == "abc"
    assert payload["status"] == "succeeded"
    assert (payload["records_in"], payload["records_out"], payload["records_dropped"], payload["errors"]) == (3, 1, 1, 1)
    assert payload["failures"] == [
        {
            "stage": "seniors",
            "position": 2,
            "reason": "expression 'age > 30' failed: cannot order null against integer",
            "record": {"name": "x"},
        }
    ]
    assert payload["stages"] == [
        {"name": "seniors", "kind": "filter", "records_in": 3, "records_out": 1, "dropped": 1, "failed": 1}
    ]


def test_unusable_temp_storage_fails_the_run(tmp_path: Path) -> None:
    stage = SortStage(["n"], memory_limit=1)

    report = ExecutionDriver(Pipeline([stage]), temp_root=str(tmp_path / "missing")).execute(numbered(3), ListSink())

    assert report.status == "failed"
    assert isinstance(report.fatal_error, PipelineIOError)
    assert "temporary storage" in str(report.fatal_error)


def test_unreadable_spill_chunk_fails_the_run(monkeypatch, tmp_path: Path) -> None:
    def broken_read(path: Path) -> Iterator[Record]:
        raise OSError("chunk vanished")
        yield

    monkeypatch.setattr("pipekit.sorting.read_chunk", broken_read)
    sink = ListSink()

    report = ExecutionDriver(Pipeline([SortStage(["n"], memory_limit=2)]), temp_root=str(tmp_path)).execute(
        numbered(5), sink
    )

    assert isinstance(report.fatal_error, PipelineIOError)
    assert sink.records == []
    assert list(tmp_path.iterdir()) == []


def test_sink_retry_attempts_are_logged(monkeypatch, caplog) -> None:
    monkeypatch.setattr("pipekit.retry.time.sleep", lambda _: None)
    sink = FailingSink(fail_after=1, failures=2)

    with caplog.at_level(logging.WARNING, logger="pipekit.driver"):
        report = ExecutionDriver(Pipeline(), sink_retries=3).execute(numbered(2), sink)

    assert report.status == "succeeded"
    attempts = [record.attempt for record in caplog.records if record.getMessage() == "sink write failed"]
    assert attempts == [1, 2]
