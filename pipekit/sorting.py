"""Stable multi-key sorting with spill-to-disk for large inputs.

Records are ordered by a list of ``SortKey``s compared lexicographically.
Small inputs are sorted in memory. Inputs larger than ``memory_limit`` records
are cut into chunks that are sorted and written to the run's temporary
directory as JSON lines, then combined with a k-way heap merge. Ties inside a
chunk keep input order (the in-memory sort is stable) and ties across chunks
are broken by chunk index, so the whole sort is stable either way.
"""

from collections.abc import Iterable, Iterator, Mapping, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from functools import cmp_to_key
import heapq
import json
import logging
import os
from pathlib import Path
import tempfile

from pipekit.context import RunContext
from pipekit.errors import ConfigError, InvalidSortKey, PipelineIOError
from pipekit.records import MISSING, Record, compare_values
from pipekit.stages import Stage, StageMode


logger = logging.getLogger(__name__)

DEFAULT_MEMORY_LIMIT = 100_000


class Direction(Enum):
    ASC = "asc"
    DESC = "desc"


class NullOrder(Enum):
    FIRST = "first"
    LAST = "last"


@dataclass(frozen=True)
class SortKey:
    field: str
    direction: Direction = Direction.ASC
    nulls: NullOrder = NullOrder.LAST

    def __post_init__(self) -> None:
        if not isinstance(self.field, str) or not self.field:
            raise ConfigError("sort key needs a field name")
        if not isinstance(self.direction, Direction) or not isinstance(self.nulls, NullOrder):
            raise ConfigError(f"sort key {self.field!r} has an invalid direction or null ordering")

    @classmethod
    def parse(cls, value: "SortKey | str | Mapping[str, object]") -> "SortKey":
        if isinstance(value, SortKey):
            return value
        if isinstance(value, str):
            # "-name" is shorthand for descending on name.
            if value.startswith("-"):
                return cls(value[1:], Direction.DESC)
            return cls(value)
        if not isinstance(value, Mapping):
            raise ConfigError(f"invalid sort key: {value!r}")

        unknown = set(value) - {"field", "direction", "nulls"}
        if unknown:
            raise ConfigError(f"unknown sort key options: {', '.join(sorted(unknown))}")
        try:
            direction = Direction(str(value.get("direction", "asc")).lower())
            nulls = NullOrder(str(value.get("nulls", "last")).lower().removeprefix("nulls-"))
        except ValueError as exc:
            raise ConfigError(f"invalid sort key {value!r}: {exc}") from exc
        return cls(value.get("field"), direction, nulls)


def compare_records(left: Record, right: Record, keys: Sequence[SortKey]) -> int:
    for key in keys:
        left_value = left.field(key.field)
        right_value = right.field(key.field)
        left_null = left_value is MISSING or left_value is None
        right_null = right_value is MISSING or right_value is None

        if left_null or right_null:
            if left_null and right_null:
                continue
            # Null placement ignores the key direction.
            result = -1 if left_null else 1
            return -result if key.nulls is NullOrder.LAST else result

        result = compare_values(left_value, right_value)
        if result:
            return -result if key.direction is Direction.DESC else result
    return 0


def sort_key_function(keys: Sequence[SortKey]):
    return cmp_to_key(lambda left, right: compare_records(left, right, keys))


def sort_records(records: Iterable[Record], keys: Sequence[SortKey]) -> list[Record]:
    return sorted(records, key=sort_key_function(keys))


def merge_sorted_runs(runs: Sequence[Iterable[Record]], keys: Sequence[SortKey]) -> Iterator[Record]:
    key_function = sort_key_function(keys)
    iterators = [iter(run) for run in runs]

    heap: list[tuple[object, int, Record]] = []
    for index, iterator in enumerate(iterators):
        first = next(iterator, None)
        if first is not None:
            heap.append((key_function(first), index, first))
    heapq.heapify(heap)

    while heap:
        _, index, record = heap[0]
        yield record
        following = next(iterators[index], None)
        if following is None:
            heapq.heappop(heap)
        else:
            heapq.heapreplace(heap, (key_function(following), index, following))


def write_chunk(path: Path, records: Sequence[Record]) -> None:
    with path.open("w", encoding="utf-8") as outfile:
        for record in records:
            outfile.write(json.dumps(record.to_dict()))
            outfile.write("\n")


def read_chunk(path: Path) -> Iterator[Record]:
    with path.open("r", encoding="utf-8") as infile:
        for line in infile:
            yield Record(json.loads(line))


class SortStage(Stage):
    kind = "sort"
    mode = StageMode.BARRIER

    def __init__(
        self,
        keys: Sequence[SortKey | str | Mapping[str, object]],
        *,
        memory_limit: int = DEFAULT_MEMORY_LIMIT,
        schema_hint: Iterable[str] | None = None,
        name: str | None = None,
        fatal: bool = False,
    ) -> None:
        super().__init__(name=name, fatal=fatal)
        if isinstance(keys, (str, Mapping, SortKey)) or not keys:
            keys = [keys] if keys else []
        parsed = [SortKey.parse(key) for key in keys]
        if not parsed:
            raise ConfigError("sort stage needs at least one sort key")

        fields = [key.field for key in parsed]
        duplicates = sorted({field for field in fields if fields.count(field) > 1})
        if duplicates:
            raise ConfigError(f"sort keys repeat fields: {', '.join(duplicates)}")
        if isinstance(memory_limit, bool) or not isinstance(memory_limit, int) or memory_limit < 1:
            raise ConfigError("sort memory_limit must be a positive number of records")

        self.keys = tuple(parsed)
        self.memory_limit = memory_limit
        self.schema_hint = frozenset(schema_hint) if schema_hint is not None else None
        self.spilled_chunks = 0
        self.validate()

    def validate(self) -> None:
        if self.schema_hint is None:
            return
        for key in self.keys:
            if key.field not in self.schema_hint:
                raise InvalidSortKey(f"sort key {key.field!r} is not a field of the input schema")

    def _spill(self, records: list[Record], path: Path) -> None:
        write_chunk(path, sort_records(records, self.keys))

    @contextmanager
    def _temp_storage_errors(self) -> Iterator[None]:
        try:
            yield
        except OSError as exc:
            raise PipelineIOError(f"sort stage {self.name!r} could not use temporary storage: {exc}") from exc

    def _new_chunk_path(self, context: RunContext) -> Path:
        handle, name = tempfile.mkstemp(prefix="sort-", suffix=".jsonl", dir=context.temp_dir())
        os.close(handle)
        return Path(name)

    def drain(self, records: Iterable[Record], context: RunContext) -> Iterator[Record]:
        buffer: list[Record] = []
        chunk_paths: list[Path] = []
        pending: Future | None = None
        runs: list[Iterator[Record]] = []
        executor: ThreadPoolExecutor | None = None
        self.spilled_chunks = 0

        try:
            for record in records:
                buffer.append(record)
                if len(buffer) < self.memory_limit:
                    continue
                if executor is None:
                    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pipekit-spill")
                with self._temp_storage_errors():
                    chunk_paths.append(self._new_chunk_path(context))
                    # One chunk is written in the background while the next one fills.
                    if pending is not None:
                        pending.result()
                pending = executor.submit(self._spill, buffer, chunk_paths[-1])
                buffer = []

            if not chunk_paths:
                yield from sort_records(buffer, self.keys)
                return

            with self._temp_storage_errors():
                pending.result()

            self.spilled_chunks = len(chunk_paths)
            logger.debug(
                "merging spilled sort chunks",
                extra={"stage": self.name, "chunks": len(chunk_paths), "run_id": context.run_id},
            )
            runs = [read_chunk(path) for path in chunk_paths]
            if buffer:
                runs.append(iter(sort_records(buffer, self.keys)))
            with self._temp_storage_errors():
                yield from merge_sorted_runs(runs, self.keys)
        finally:
            if executor is not None:
                executor.shutdown(wait=True)
            for run in runs:
                close = getattr(run, "close", None)
                if close is not None:
                    close()
            for path in chunk_paths:
                path.unlink(missing_ok=True)
