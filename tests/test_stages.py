import pytest

from pipekit.context import RunContext
from pipekit.errors import ConfigError, RecordError
from pipekit.expressions import Expression
from pipekit.records import Record
from pipekit.stages import (
    SKIP,
    AggregateStage,
    DedupeStage,
    Emit,
    Fail,
    FilterStage,
    FlattenStage,
    MapStage,
    StageMode,
    strip_numbering,
)


def test_filter_keeps_matching_records() -> None:
    stage = FilterStage("age >= 18")

    assert stage.process(Record({"age": 30})) == Emit((Record({"age": 30}),))
    assert stage.process(Record({"age": 10})) is SKIP


def test_filter_exclude_drops_matching_records() -> None:
    stage = FilterStage("name == 'spam'", exclude=True)

    assert stage.process(Record({"name": "spam"})) is SKIP
    assert isinstance(stage.process(Record({"name": "eggs"})), Emit)


def test_filter_ordering_against_null_is_a_record_error() -> None:
    outcome = FilterStage("age >= 18", name="adults").process(Record({"name": "ada"}))

    assert isinstance(outcome, Fail)
    assert outcome.error.stage == "adults"
    assert "cannot order null against integer" in str(outcome.error)


def test_expression_helpers_and_membership() -> None:
    record = Record({"name": "Ada", "tags": ["x", "y"], "first-name": "ada", "age": None})

    assert Expression("lower(name) == 'ada' and 'x' in tags").evaluate(record) is True
    assert Expression("len(tags) == 2 and exists('tags') and not exists('email')").evaluate(record) is True
    assert Expression("field('first-name') == 'ada'").evaluate(record) is True
    assert Expression("age is None").evaluate(record) is True
    assert Expression("1 == 1.0").evaluate(record) is True


@pytest.mark.parametrize(
    "source",
    [
        "__import__('os').system('true')",
        "name.upper()",
        "tags[0]",
        "lambda: 1",
        "[x for x in tags]",
        "age is 3",
        "exists(name)",
        "age >=",
    ],
)
def test_expression_rejects_forbidden_constructs(source: str) -> None:
    with pytest.raises(ConfigError):
        Expression(source)


def test_expression_division_by_zero_is_a_record_error() -> None:
    with pytest.raises(RecordError):
        Expression("total / count").evaluate(Record({"total": 3, "count": 0}))


def test_map_operations_apply_in_order() -> None:
    stage = MapStage(
        ops=[
            ("rename", {"full_name": "name"}),
            ("strip", ["name"]),
            ("lower", ["email"]),
            ("set", {"source": "web"}),
            ("compute", {"adult": "age >= 18"}),
            ("drop", ["internal"]),
        ]
    )

    outcome = stage.process(Record({"full_name": "  Ada ", "email": "ADA@X.ORG", "age": 36, "internal": 1}))

    assert outcome == Emit(
        (Record({"name": "Ada", "email": "ada@x.org", "age": 36, "source": "web", "adult": True}),)
    )


def test_map_string_op_on_missing_or_non_string_field_fails() -> None:
    stage = MapStage(ops=[("upper", ["name"])])

    missing = stage.process(Record({}))
    wrong_type = stage.process(Record({"name": 5}))

    assert isinstance(missing, Fail) and "missing field 'name'" in str(missing.error)
    assert isinstance(wrong_type, Fail) and "integer, not string" in str(wrong_type.error)


def test_map_callable_errors_become_record_errors() -> None:
    stage = MapStage(lambda record: {"half": record["n"] / 2})

    assert stage.process(Record({"n": 4})) == Emit((Record({"half": 2.0}),))
    failed = stage.process(Record({}))
    assert isinstance(failed, Fail)
    assert "KeyError" in str(failed.error)


def test_map_rejects_unknown_operations() -> None:
    with pytest.raises(ConfigError):
        MapStage(ops=[("explode", ["name"])])
    with pytest.raises(ConfigError):
        MapStage()


def test_strip_numbering() -> None:
    assert strip_numbering("12. Buy milk ") == "Buy milk"
    assert strip_numbering("  Buy milk") == "Buy milk"
    assert strip_numbering("v1.2 release") == "v1.2 release"


def test_flatten_emits_one_record_per_element() -> None:
    stage = FlattenStage("tags", into="tag")

    outcome = stage.process(Record({"id": 1, "tags": ["a", "b"]}))

    assert outcome == Emit((Record({"id": 1, "tag": "a"}), Record({"id": 1, "tag": "b"})))
    assert stage.process(Record({"id": 2})) is SKIP
    assert isinstance(stage.process(Record({"id": 3, "tags": "a"})), Fail)


def test_dedupe_is_a_barrier_keeping_first_or_last() -> None:
    records = [
        Record({"k": 1, "v": "a"}),
        Record({"k": 2, "v": "b"}),
        Record({"k": 1, "v": "c"}),
        Record({"k": 3, "v": "d"}),
    ]

    first = list(DedupeStage(["k"]).drain(records, RunContext()))
    last = list(DedupeStage(["k"], keep="last").drain(records, RunContext()))

    assert DedupeStage.mode is StageMode.BARRIER
    assert [record["v"] for record in first] == ["a", "b", "d"]
    assert [record["v"] for record in last] == ["b", "c", "d"]


def test_dedupe_without_fields_compares_whole_records() -> None:
    records = [Record({"a": 1}), Record({"a": True}), Record({"a": 1})]

    assert list(DedupeStage().drain(records, RunContext())) == [Record({"a": 1}), Record({"a": True})]


def test_aggregate_counts_and_sums_groups() -> None:
    context = RunContext()
    stage = AggregateStage(["team"], sum_fields=["points"])
    records = [
        Record({"team": "red", "points": 3}),
        Record({"team": "blue", "points": 1}),
        Record({"team": "red", "points": 2.5}),
        Record({"team": "blue", "points": "n/a"}),
        Record({"team": "blue"}),
    ]

    result = list(stage.drain(records, context))

    assert [record.to_dict() for record in result] == [
        {"team": "red", "count": 2, "sum_points": 5.5},
        {"team": "blue", "count": 2, "sum_points": 1},
    ]
    assert len(context.failures) == 1
    assert context.failures[0].position == 4
    assert context.failures[0].stage == "aggregate"


def test_aggregate_rejects_colliding_output_fields() -> None:
    with pytest.raises(ConfigError):
        AggregateStage(["count"])


def test_expression_repetition_is_bounded() -> None:
    record = Record({"name": "ab", "tags": ["x"]})

    assert Expression("name * 2").evaluate(record) == "abab"
    assert Expression("2 * tags").evaluate(record) == ("x", "x")
    with pytest.raises(RecordError) as excinfo:
        Expression("'x' * 10000000000").evaluate(record)
    assert "repetition longer than" in str(excinfo.value)


def test_compute_with_oversized_repetition_fails_only_the_record() -> None:
    stage = MapStage(ops=[("compute", {"padding": "name * count"})])

    outcome = stage.process(Record({"name": "ab", "count": 10**12}))

    assert isinstance(outcome, Fail)
