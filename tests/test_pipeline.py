from collections.abc import Iterator

import pytest

from pipekit.context import RunContext
from pipekit.errors import ConfigError, RecordError
from pipekit.pipeline import Pipeline
from pipekit.records import Record
from pipekit.sorting import SortStage
from pipekit.stages import DedupeStage, FilterStage, FlattenStage, MapStage, StageMode


def people() -> list[Record]:
    return [Record({"name": "z", "age": 10}), Record({"name": "a", "age": 30})]


def test_empty_pipeline_returns_input_unchanged() -> None:
    records = [Record({"n": 3}), Record({"n": 1}), Record({"n": 2})]

    assert Pipeline().run(records) == records


def test_filter_then_sort() -> None:
    pipeline = Pipeline([FilterStage("age >= 18"), SortStage(["name"])])

    assert [record.to_dict() for record in pipeline.run(people())] == [{"name": "a", "age": 30}]


def test_segments_split_at_barriers() -> None:
    filter_stage = FilterStage("age >= 18")
    map_stage = MapStage(ops=[("upper", ["name"])])
    sort_stage = SortStage(["name"])
    dedupe_stage = DedupeStage()
    flatten_stage = FlattenStage("tags")

    pipeline = Pipeline([filter_stage, map_stage, sort_stage, dedupe_stage, flatten_stage])

    assert pipeline.segments() == [
        (StageMode.STREAMING, [filter_stage, map_stage]),
        (StageMode.BARRIER, [sort_stage]),
        (StageMode.BARRIER, [dedupe_stage]),
        (StageMode.STREAMING, [flatten_stage]),
    ]


def test_stage_belongs_to_one_pipeline() -> None:
    stage = FilterStage("age >= 18")
    Pipeline([stage])

    with pytest.raises(ConfigError):
        Pipeline([stage])


def test_pipeline_rejects_bad_worker_settings() -> None:
    with pytest.raises(ConfigError):
        Pipeline(workers=0)
    with pytest.raises(ConfigError):
        Pipeline(batch_size=0)


def test_streaming_stages_interleave_with_the_source() -> None:
    events: list[str] = []

    def source() -> Iterator[Record]:
        for n in range(3):
            events.append(f"pull {n}")
            yield Record({"n": n})

    def record_map(record: Record) -> Record:
        events.append(f"map {record['n']}")
        return record

    output = Pipeline([MapStage(record_map)]).stream(source(), RunContext())
    for record in output:
        events.append(f"sink {record['n']}")

    assert events == ["pull 0", "map 0", "sink 0", "pull 1", "map 1", "sink 1", "pull 2", "map 2", "sink 2"]


def test_barrier_consumes_all_input_before_emitting() -> None:
    events: list[str] = []

    def source() -> Iterator[Record]:
        for n in (2, 1, 2):
            events.append(f"pull {n}")
            yield Record({"n": n})

    output = Pipeline([DedupeStage()]).stream(source(), RunContext())
    first = next(output)

    assert events == ["pull 2", "pull 1", "pull 2"]
    assert first == Record({"n": 2})
    assert list(output) == [Record({"n": 1})]


def test_record_failures_are_reported_and_skipped() -> None:
    context = RunContext()
    pipeline = Pipeline([FilterStage("age >= 18", name="adults")])
    records = [Record({"name": "a", "age": 30}), Record({"name": "b"}), Record({"name": "c", "age": 5})]

    result = pipeline.run(records, context=context)

    assert result == [records[0]]
    assert [(failure.stage, failure.position) for failure in context.failures] == [("adults", 2)]
    assert context.failures[0].record == {"name": "b"}
    stats = context.stage_stats[0]
    assert (stats.records_in, stats.records_out, stats.skipped, stats.failed) == (3, 1, 1, 1)
    assert stats.dropped == 1


def test_fatal_stage_failure_stops_the_run() -> None:
    pipeline = Pipeline([FilterStage("age >= 18", fatal=True)])

    with pytest.raises(RecordError) as excinfo:
        pipeline.run([Record({"age": 20}), Record({"name": "no age"})])

    assert excinfo.value.stage == "filter"


def test_parallel_workers_keep_input_order() -> None:
    records = [Record({"n": n}) for n in range(50)]
    pipeline = Pipeline(
        [MapStage(lambda record: {"n": record["n"] * 2}), FilterStage("n % 3 != 0")],
        workers=4,
        batch_size=7,
    )

    result = pipeline.run(records)

    assert [record["n"] for record in result] == [n * 2 for n in range(50) if (n * 2) % 3 != 0]


def test_parallel_run_counts_like_sequential_run() -> None:
    records = [Record({"n": n}) if n % 5 else Record({}) for n in range(40)]

    def build(workers: int) -> Pipeline:
        return Pipeline([FilterStage("n > 10")], workers=workers, batch_size=6)

    sequential, parallel = RunContext(), RunContext()
    assert build(1).run(records, context=sequential) == build(3).run(records, context=parallel)
    assert [failure.position for failure in parallel.failures] == [failure.position for failure in sequential.failures]
    assert parallel.stage_stats[0] == sequential.stage_stats[0]
