from collections.abc import Iterable, Iterator
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from itertools import islice
import logging

from pipekit.context import RunContext
from pipekit.errors import ConfigError
from pipekit.records import Record
from pipekit.schemas import StageStats
from pipekit.stages import Emit, Fail, Outcome, Stage, StageMode


logger = logging.getLogger(__name__)

Trace = list[tuple[int, Outcome]]


def _evaluate(stages: list[Stage], record: Record) -> tuple[list[Record], Trace]:
    # Pure: safe to run on worker threads. Counters are replayed by the caller.
    outputs: list[Record] = []
    trace: Trace = []

    def push(index: int, current: Record) -> None:
        if index == len(stages):
            outputs.append(current)
            return
        outcome = stages[index].process(current)
        trace.append((index, outcome))
        if isinstance(outcome, Emit):
            for emitted in outcome.records:
                push(index + 1, emitted)

    push(0, record)
    return outputs, trace


def _batched(records: Iterable[Record], size: int) -> Iterator[list[Record]]:
    iterator = iter(records)
    while batch := list(islice(iterator, size)):
        yield batch


class Pipeline:
    def __init__(
        self,
        stages: Iterable[Stage] = (),
        *,
        name: str = "pipeline",
        workers: int = 1,
        batch_size: int = 64,
    ) -> None:
        if isinstance(workers, bool) or not isinstance(workers, int) or workers < 1:
            raise ConfigError("workers must be a positive integer")
        if isinstance(batch_size, bool) or not isinstance(batch_size, int) or batch_size < 1:
            raise ConfigError("batch_size must be a positive integer")
        self.name = name
        self.workers = workers
        self.batch_size = batch_size
        self.stages: list[Stage] = []
        for stage in stages:
            self.add(stage)

    def __len__(self) -> int:
        return len(self.stages)

    def __repr__(self) -> str:
        return f"Pipeline(name={self.name!r}, stages={self.stages!r})"

    def add(self, stage: Stage) -> "Pipeline":
        if not isinstance(stage, Stage):
            raise ConfigError(f"not a stage: {stage!r}")
        if stage.owner is not None:
            raise ConfigError(f"stage {stage.name!r} already belongs to a pipeline")
        stage.owner = self
        self.stages.append(stage)
        return self

    def validate(self) -> None:
        for stage in self.stages:
            stage.validate()

    def segments(self) -> list[tuple[StageMode, list[Stage]]]:
        segments: list[tuple[StageMode, list[Stage]]] = []
        for stage in self.stages:
            if stage.mode is StageMode.BARRIER:
                segments.append((StageMode.BARRIER, [stage]))
            elif segments and segments[-1][0] is StageMode.STREAMING:
                segments[-1][1].append(stage)
            else:
                segments.append((StageMode.STREAMING, [stage]))
        return segments

    def stream(self, records: Iterable[Record], context: RunContext) -> Iterator[Record]:
        chain: list[Iterator[Record]] = []
        current: Iterable[Record] = records
        for mode, stages in self.segments():
            stats = [context.stats_for(stage) for stage in stages]
            if mode is StageMode.BARRIER:
                current = self._barrier(stages[0], stats[0], current, context)
            elif self.workers > 1:
                current = self._parallel(stages, stats, current, context)
            else:
                current = self._streaming(stages, stats, current, context)
            chain.append(current)
        return self._guarded(iter(current), chain)

    def run(self, records: Iterable[Record], *, context: RunContext | None = None) -> list[Record]:
        owned = context is None
        context = context or RunContext()
        try:
            return list(self.stream(records, context))
        finally:
            if owned:
                context.close()

    def _guarded(self, output: Iterator[Record], chain: list[Iterator[Record]]) -> Iterator[Record]:
        try:
            yield from output
        finally:
            # Close downstream first so barrier stages release spill files promptly.
            for segment in reversed(chain):
                segment.close()

    def _replay(self, stages: list[Stage], stats: list[StageStats], trace: Trace, context: RunContext) -> None:
        for index, outcome in trace:
            stage_stats = stats[index]
            stage_stats.records_in += 1
            if isinstance(outcome, Emit):
                stage_stats.records_out += len(outcome.records)
            elif isinstance(outcome, Fail):
                context.handle_failure(stages[index], outcome.error, position=stage_stats.records_in)
            else:
                stage_stats.skipped += 1

    def _streaming(
        self,
        stages: list[Stage],
        stats: list[StageStats],
        records: Iterable[Record],
        context: RunContext,
    ) -> Iterator[Record]:
        for record in records:
            outputs, trace = _evaluate(stages, record)
            self._replay(stages, stats, trace, context)
            yield from outputs

    def _parallel(
        self,
        stages: list[Stage],
        stats: list[StageStats],
        records: Iterable[Record],
        context: RunContext,
    ) -> Iterator[Record]:
        evaluate = partial(_evaluate, stages)
        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="pipekit-worker") as executor:
            for batch in _batched(records, self.batch_size):
                # executor.map yields in submission order, so input order is kept.
                for outputs, trace in executor.map(evaluate, batch):
                    self._replay(stages, stats, trace, context)
                    yield from outputs

    def _barrier(
        self,
        stage: Stage,
        stats: StageStats,
        records: Iterable[Record],
        context: RunContext,
    ) -> Iterator[Record]:
        def counted() -> Iterator[Record]:
            for record in records:
                stats.records_in += 1
                yield record

        drained = iter(stage.drain(counted(), context))
        try:
            for record in drained:
                stats.records_out += 1
                yield record
        finally:
            close = getattr(drained, "close", None)
            if close is not None:
                close()
