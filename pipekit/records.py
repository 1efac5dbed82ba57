"""Record model: immutable field mappings over a small set of tagged values.

Values are limited to null, booleans, integers, floats, strings, lists (stored
as tuples) and nested records. Every pair of values is comparable through
``compare_values`` so stages never need a schema to order heterogeneous data.
"""

import csv
from collections.abc import Iterable, Iterator, Mapping
from enum import IntEnum
import json
import math
import re

from pipekit.errors import ParseError


class Tag(IntEnum):
    NULL = 0
    BOOLEAN = 1
    INTEGER = 2
    FLOAT = 3
    STRING = 4
    LIST = 5
    RECORD = 6


_NUMERIC = (Tag.INTEGER, Tag.FLOAT)
_INT_PATTERN = re.compile(r"^[+-]?\d+$")
_FLOAT_PATTERN = re.compile(r"^[+-]?(\d+\.\d*|\.\d+|\d+)([eE][+-]?\d+)?$")


class _Missing:
    _instance: "_Missing | None" = None

    def __new__(cls) -> "_Missing":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()


def value_tag(value: object) -> Tag:
    if value is None:
        return Tag.NULL
    # bool is a subclass of int, so it has to be checked first.
    if isinstance(value, bool):
        return Tag.BOOLEAN
    if isinstance(value, int):
        return Tag.INTEGER
    if isinstance(value, float):
        return Tag.FLOAT
    if isinstance(value, str):
        return Tag.STRING
    if isinstance(value, tuple):
        return Tag.LIST
    if isinstance(value, Record):
        return Tag.RECORD
    raise TypeError(f"unsupported value type: {type(value).__name__}")


def freeze_value(value: object, path: str = "") -> object:
    if value is None or isinstance(value, (bool, int, float, str, Record)):
        return value
    if isinstance(value, (list, tuple)):
        return tuple(freeze_value(item, f"{path}[{index}]") for index, item in enumerate(value))
    if isinstance(value, Mapping):
        return Record(value)
    raise ParseError(f"field {path!r} has unsupported type {type(value).__name__}", raw=value)


def thaw_value(value: object) -> object:
    if isinstance(value, tuple):
        return [thaw_value(item) for item in value]
    if isinstance(value, Record):
        return value.to_dict()
    return value


def _cmp(left, right) -> int:
    return (left > right) - (left < right)


def _compare_numbers(left: int | float, right: int | float) -> int:
    left_nan = isinstance(left, float) and math.isnan(left)
    right_nan = isinstance(right, float) and math.isnan(right)
    if left_nan or right_nan:
        # NaN sorts after every other number and equals itself.
        return _cmp(left_nan, right_nan)
    return _cmp(left, right)


def _compare_sequences(left: tuple, right: tuple) -> int:
    for left_item, right_item in zip(left, right):
        result = compare_values(left_item, right_item)
        if result:
            return result
    return _cmp(len(left), len(right))


def compare_values(left: object, right: object) -> int:
    left_tag = value_tag(left)
    right_tag = value_tag(right)

    if left_tag in _NUMERIC and right_tag in _NUMERIC:
        result = _compare_numbers(left, right)
        if result:
            return result
        # 3 and 3.0 are distinct values; the tag rank breaks the tie.
        return _cmp(left_tag, right_tag)
    if left_tag != right_tag:
        return _cmp(left_tag, right_tag)

    if left_tag is Tag.NULL:
        return 0
    if left_tag is Tag.LIST:
        return _compare_sequences(left, right)
    if left_tag is Tag.RECORD:
        for (left_name, left_value), (right_name, right_value) in zip(left.items(), right.items()):
            result = _cmp(left_name, right_name) or compare_values(left_value, right_value)
            if result:
                return result
        return _cmp(len(left), len(right))
    return _cmp(left, right)


def identity_key(value: object) -> tuple:
    """Hashable key that keeps tags apart (``1``, ``1.0`` and ``True`` differ)."""
    tag = value_tag(value)
    if tag is Tag.FLOAT and math.isnan(value):
        return (tag, "nan")
    if tag is Tag.LIST:
        return (tag, tuple(identity_key(item) for item in value))
    if tag is Tag.RECORD:
        return (tag, tuple((name, identity_key(item)) for name, item in value.items()))
    return (tag, value)


class Record(Mapping):
    __slots__ = ("_fields", "_hash")

    def __init__(self, fields: Mapping[str, object] | Iterable[tuple[str, object]] = ()) -> None:
        items = fields.items() if isinstance(fields, Mapping) else fields
        frozen: dict[str, object] = {}
        for name, value in items:
            if not isinstance(name, str):
                raise ParseError(f"field names must be strings, got {type(name).__name__}", raw=name)
            if name in frozen:
                raise ParseError(f"duplicate field name: {name!r}", raw=name)
            frozen[name] = freeze_value(value, name)
        self._fields = frozen
        self._hash: int | None = None

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, object]) -> "Record":
        return cls(mapping)

    def __getitem__(self, name: str) -> object:
        return self._fields[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._fields)

    def __len__(self) -> int:
        return len(self._fields)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Record):
            return NotImplemented
        return identity_key(self) == identity_key(other)

    def __hash__(self) -> int:
        if self._hash is None:
            self._hash = hash(identity_key(self))
        return self._hash

    def __repr__(self) -> str:
        return f"Record({self.to_dict()!r})"

    def field(self, name: str) -> object:
        return self._fields.get(name, MISSING)

    def replace(self, changes: Mapping[str, object]) -> "Record":
        merged = dict(self._fields)
        merged.update(changes)
        return Record(merged)

    def without(self, *names: str) -> "Record":
        return Record((name, value) for name, value in self._fields.items() if name not in names)

    def select(self, names: Iterable[str]) -> "Record":
        return Record((name, self._fields[name]) for name in names if name in self._fields)

    def rename(self, mapping: Mapping[str, str]) -> "Record":
        return Record((mapping.get(name, name), value) for name, value in self._fields.items())

    def to_dict(self) -> dict[str, object]:
        return {name: thaw_value(value) for name, value in self._fields.items()}


def _reject_duplicate_keys(pairs: list[tuple[str, object]]) -> dict[str, object]:
    payload: dict[str, object] = {}
    for name, value in pairs:
        if name in payload:
            raise ParseError(f"duplicate field name: {name!r}")
        payload[name] = value
    return payload


def parse_json_line(line: str, *, position: int | None = None) -> Record:
    try:
        payload = json.loads(line, object_pairs_hook=_reject_duplicate_keys)
    except json.JSONDecodeError as exc:
        raise ParseError(f"invalid JSON: {exc.msg}", raw=line, position=position) from exc
    except ParseError as exc:
        raise ParseError(str(exc), raw=line, position=position) from exc

    if not isinstance(payload, dict):
        raise ParseError("expected a JSON object per line", raw=line, position=position)
    return Record(payload)


def infer_cell(cell: str) -> object:
    if cell == "":
        return None
    lowered = cell.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    if _INT_PATTERN.match(cell):
        return int(cell)
    if _FLOAT_PATTERN.match(cell):
        return float(cell)
    return cell


def parse_delimited_line(
    line: str,
    header: list[str],
    *,
    delimiter: str = ",",
    infer_types: bool = False,
    position: int | None = None,
) -> Record:
    try:
        rows = list(csv.reader([line], delimiter=delimiter))
    except csv.Error as exc:
        raise ParseError(f"invalid delimited row: {exc}", raw=line, position=position) from exc

    return record_from_row(header, rows[0] if rows else [], infer_types=infer_types, position=position, raw=line)


def record_from_row(
    header: list[str],
    cells: list[str],
    *,
    infer_types: bool = False,
    position: int | None = None,
    raw: object = None,
) -> Record:
    if len(cells) != len(header):
        raise ParseError(f"expected {len(header)} columns, got {len(cells)}", raw=raw or cells, position=position)

    values = [infer_cell(cell) if infer_types else cell for cell in cells]
    try:
        return Record(zip(header, values))
    except ParseError as exc:
        raise ParseError(str(exc), raw=raw or cells, position=position) from exc
