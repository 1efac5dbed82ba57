from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
import logging

from pipekit.context import RunContext
from pipekit.errors import ConfigError, ParseError, RecordError
from pipekit.expressions import Expression
from pipekit.records import MISSING, Record, Tag, identity_key, value_tag


logger = logging.getLogger(__name__)


class StageMode(Enum):
    STREAMING = "streaming"
    BARRIER = "barrier"


@dataclass(frozen=True)
class Emit:
    records: tuple[Record, ...]


@dataclass(frozen=True)
class Skip:
    pass


@dataclass(frozen=True)
class Fail:
    error: RecordError


Outcome = Emit | Skip | Fail
SKIP = Skip()


class Stage:
    """One pipeline step.

    Streaming stages implement ``process(record) -> Outcome`` and see records
    one at a time. Barrier stages implement ``drain(records, context)`` and
    must consume their whole input before yielding anything.
    """

    kind = "stage"
    mode = StageMode.STREAMING

    def __init__(self, *, name: str | None = None, fatal: bool = False) -> None:
        self.name = name or self.kind
        self.fatal = fatal
        self.owner: object | None = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"

    @property
    def is_barrier(self) -> bool:
        return self.mode is StageMode.BARRIER

    def validate(self) -> None:
        pass

    def process(self, record: Record) -> Outcome:
        raise NotImplementedError(f"{type(self).__name__} does not process single records")

    def drain(self, records: Iterable[Record], context: RunContext) -> Iterator[Record]:
        raise NotImplementedError(f"{type(self).__name__} is not a barrier stage")

    def fail(self, message: str, record: Record) -> Fail:
        return Fail(RecordError(message, record=record, stage=self.name))


def _field_list(value: object, option: str) -> tuple[str, ...]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)) or not value or not all(isinstance(item, str) and item for item in value):
        raise ConfigError(f"{option} must be a field name or a non-empty list of field names")
    if len(set(value)) != len(value):
        raise ConfigError(f"{option} lists a field more than once")
    return tuple(value)


def _string_mapping(value: object, option: str) -> dict[str, str]:
    if not isinstance(value, Mapping) or not value:
        raise ConfigError(f"{option} must be a non-empty mapping")
    if not all(isinstance(key, str) and isinstance(item, str) and key and item for key, item in value.items()):
        raise ConfigError(f"{option} must map field names to field names")
    return dict(value)


def strip_numbering(text: str) -> str:
    # "12. item" -> "item", the way numbered list exports are cleaned up.
    text = text.strip()
    prefix, separator, rest = text.partition(".")
    if separator and all(char.isnumeric() for char in prefix):
        return rest.strip()
    return text


_STRING_OPS: dict[str, Callable[[str], str]] = {
    "lower": str.lower,
    "upper": str.upper,
    "strip": str.strip,
    "strip_numbering": strip_numbering,
}

MAP_OPERATIONS = ("select", "drop", "rename", "set", "compute", *_STRING_OPS)


class MapStage(Stage):
    kind = "map"

    def __init__(
        self,
        fn: Callable[[Record], Record | Mapping[str, object]] | None = None,
        *,
        ops: Sequence[tuple[str, object]] = (),
        name: str | None = None,
        fatal: bool = False,
    ) -> None:
        super().__init__(name=name, fatal=fatal)
        if fn is None and not ops:
            raise ConfigError("map stage needs a function or at least one operation")
        if fn is not None and ops:
            raise ConfigError("map stage takes either a function or operations, not both")
        self._fn = fn
        self._ops = [self._compile(op, argument) for op, argument in ops]

    def _compile(self, op: str, argument: object) -> tuple[str, object]:
        if op in ("select", "drop") or op in _STRING_OPS:
            return op, _field_list(argument, op)
        if op == "rename":
            return op, _string_mapping(argument, op)
        if op == "set":
            if not isinstance(argument, Mapping) or not argument:
                raise ConfigError("set must be a non-empty mapping of field values")
            try:
                return op, Record(argument)
            except ParseError as exc:
                raise ConfigError(f"set has an unsupported value: {exc}") from exc
        if op == "compute":
            if not isinstance(argument, Mapping) or not argument:
                raise ConfigError("compute must map field names to expressions")
            return op, {field: Expression(source) for field, source in argument.items()}
        raise ConfigError(f"unknown map operation: {op!r}")

    def process(self, record: Record) -> Outcome:
        if self._fn is not None:
            return self._call(record)
        try:
            for op, argument in self._ops:
                record = self._apply(op, argument, record)
        except RecordError as exc:
            exc.stage = self.name
            return Fail(exc)
        except ParseError as exc:
            return self.fail(str(exc), record)
        return Emit((record,))

    def _call(self, record: Record) -> Outcome:
        try:
            result = self._fn(record)
        except RecordError as exc:
            exc.stage = self.name
            return Fail(exc)
        except Exception as exc:
            # User callables are arbitrary code; their failures belong to the record.
            logger.debug("map function raised", exc_info=True)
            return self.fail(f"{type(exc).__name__}: {exc}", record)

        if isinstance(result, Record):
            return Emit((result,))
        if not isinstance(result, Mapping):
            return self.fail(f"map function returned {type(result).__name__}, expected a record", record)
        try:
            return Emit((Record(result),))
        except ParseError as exc:
            return self.fail(str(exc), record)

    def _apply(self, op: str, argument, record: Record) -> Record:
        if op == "select":
            return record.select(argument)
        if op == "drop":
            return record.without(*argument)
        if op == "set":
            return record.replace(argument)
        if op == "compute":
            return record.replace({field: expression.evaluate(record) for field, expression in argument.items()})
        if op == "rename":
            missing = [field for field in argument if field not in record]
            if missing:
                raise RecordError(f"cannot rename missing field {missing[0]!r}", record=record)
            return record.rename(argument)

        transform = _STRING_OPS[op]
        changes: dict[str, object] = {}
        for field in argument:
            value = record.field(field)
            if value is MISSING:
                raise RecordError(f"{op}: missing field {field!r}", record=record)
            if not isinstance(value, str):
                raise RecordError(f"{op}: field {field!r} is {value_tag(value).name.lower()}, not string", record=record)
            changes[field] = transform(value)
        return record.replace(changes)


class FilterStage(Stage):
    kind = "filter"

    def __init__(
        self,
        predicate: str | Expression | Callable[[Record], object],
        *,
        exclude: bool = False,
        name: str | None = None,
        fatal: bool = False,
    ) -> None:
        super().__init__(name=name, fatal=fatal)
        if isinstance(predicate, str):
            predicate = Expression(predicate)
        if not isinstance(predicate, Expression) and not callable(predicate):
            raise ConfigError("filter predicate must be an expression or a callable")
        self.predicate = predicate
        self.exclude = exclude

    def process(self, record: Record) -> Outcome:
        try:
            if isinstance(self.predicate, Expression):
                matched = bool(self.predicate.evaluate(record))
            else:
                matched = bool(self.predicate(record))
        except RecordError as exc:
            exc.stage = self.name
            return Fail(exc)
        except Exception as exc:
            logger.debug("filter predicate raised", exc_info=True)
            return self.fail(f"{type(exc).__name__}: {exc}", record)

        if matched != self.exclude:
            return Emit((record,))
        return SKIP


class FlattenStage(Stage):
    kind = "flatten"

    def __init__(
        self,
        field: str,
        *,
        into: str | None = None,
        keep_empty: bool = False,
        name: str | None = None,
        fatal: bool = False,
    ) -> None:
        super().__init__(name=name, fatal=fatal)
        if not isinstance(field, str) or not field:
            raise ConfigError("flatten needs a field name")
        if into is not None and (not isinstance(into, str) or not into):
            raise ConfigError("flatten 'into' must be a field name")
        self.field = field
        self.into = into or field
        self.keep_empty = keep_empty

    def process(self, record: Record) -> Outcome:
        value = record.field(self.field)
        if value is MISSING or value is None or value == ():
            if self.keep_empty:
                return Emit((record.replace({self.into: None}),))
            return SKIP
        if value_tag(value) is not Tag.LIST:
            return self.fail(f"flatten: field {self.field!r} is {value_tag(value).name.lower()}, not list", record)

        base = record if self.into == self.field else record.without(self.field)
        return Emit(tuple(base.replace({self.into: item}) for item in value))


class DedupeStage(Stage):
    kind = "dedupe"
    mode = StageMode.BARRIER

    def __init__(
        self,
        fields: Sequence[str] | None = None,
        *,
        keep: str = "first",
        name: str | None = None,
        fatal: bool = False,
    ) -> None:
        super().__init__(name=name, fatal=fatal)
        if keep not in ("first", "last"):
            raise ConfigError("dedupe 'keep' must be 'first' or 'last'")
        self.fields = _field_list(fields, "dedupe fields") if fields is not None else None
        self.keep = keep

    def _key(self, record: Record) -> tuple:
        if self.fields is None:
            return identity_key(record)
        return tuple(identity_key(None if record.field(field) is MISSING else record.field(field)) for field in self.fields)

    def drain(self, records: Iterable[Record], context: RunContext) -> Iterator[Record]:
        kept: list[Record] = []
        positions: dict[tuple, int] = {}
        for record in records:
            key = self._key(record)
            if key in positions:
                if self.keep == "last":
                    kept[positions[key]] = None
                    positions[key] = len(kept)
                    kept.append(record)
                continue
            positions[key] = len(kept)
            kept.append(record)

        for record in kept:
            if record is not None:
                yield record


class AggregateStage(Stage):
    kind = "aggregate"
    mode = StageMode.BARRIER

    def __init__(
        self,
        group_by: Sequence[str],
        *,
        count_field: str = "count",
        sum_fields: Sequence[str] = (),
        name: str | None = None,
        fatal: bool = False,
    ) -> None:
        super().__init__(name=name, fatal=fatal)
        self.group_by = _field_list(group_by, "group_by")
        self.sum_fields = _field_list(sum_fields, "sum") if sum_fields else ()
        self.count_field = count_field
        output_fields = [*self.group_by, count_field, *(f"sum_{field}" for field in self.sum_fields)]
        if len(set(output_fields)) != len(output_fields):
            raise ConfigError("aggregate output fields collide with group_by fields")

    def drain(self, records: Iterable[Record], context: RunContext) -> Iterator[Record]:
        groups: dict[tuple, dict[str, object]] = {}
        for position, record in enumerate(records, start=1):
            values = {}
            for field in self.sum_fields:
                value = record.field(field)
                if value is MISSING or value is None:
                    continue
                if value_tag(value) not in (Tag.INTEGER, Tag.FLOAT):
                    error = RecordError(f"aggregate: field {field!r} is not numeric", record=record)
                    context.handle_failure(self, error, position=position)
                    break
                values[field] = value
            else:
                group = tuple(None if record.field(field) is MISSING else record.field(field) for field in self.group_by)
                key = tuple(identity_key(value) for value in group)
                state = groups.setdefault(key, {"group": group, "count": 0, "sums": dict.fromkeys(self.sum_fields, 0)})
                state["count"] += 1
                for field, value in values.items():
                    state["sums"][field] += value

        for state in groups.values():
            fields: dict[str, object] = dict(zip(self.group_by, state["group"]))
            fields[self.count_field] = state["count"]
            for field, total in state["sums"].items():
                fields[f"sum_{field}"] = total
            yield Record(fields)
