"""Drives records from a source through a pipeline into a sink.

A source is any iterable of ``Record`` objects. Inputs it could not decode may
be yielded as ``ParseError`` instances; they are recorded in the report and
the run continues. Plain mappings are accepted and converted to records.

A sink is any object with ``write(record)``. Sink writes happen in exactly the
order the pipeline emits records.

Per-record failures never stop a run. ``OSError`` from the source or the sink,
and failures in stages marked fatal, stop it immediately; the partial report
is returned with ``fatal_error`` set. Configuration errors are raised before
the first record is pulled.
"""

from collections.abc import Iterable, Iterator, Mapping
import logging
from typing import Protocol

from pipekit.context import CancelToken, RunContext
from pipekit.errors import ParseError, PipelineIOError, RecordError, RunCancelled, SinkError, SourceError
from pipekit.pipeline import Pipeline
from pipekit.records import Record
from pipekit.retry import RetryExhaustedError, call_with_retries
from pipekit.schemas import ExecutionReport


logger = logging.getLogger(__name__)


class Source(Protocol):
    def __iter__(self) -> Iterator[Record | ParseError]: ...


class Sink(Protocol):
    def write(self, record: Record) -> None: ...


class ExecutionDriver:
    def __init__(
        self,
        pipeline: Pipeline,
        *,
        temp_root: str | None = None,
        sink_retries: int = 0,
        retry_backoff_seconds: float = 0.0,
    ) -> None:
        self.pipeline = pipeline
        self.temp_root = temp_root
        self.sink_retries = sink_retries
        self.retry_backoff_seconds = retry_backoff_seconds

    def execute(
        self,
        source: Iterable[Record | ParseError | Mapping[str, object]],
        sink: Sink,
        *,
        cancel: CancelToken | None = None,
        run_id: str | None = None,
    ) -> ExecutionReport:
        self.pipeline.validate()

        context = RunContext(run_id=run_id, temp_root=self.temp_root, cancel=cancel)
        report = ExecutionReport(run_id=context.run_id, failures=context.failures, stages=context.stage_stats)
        logger.info(
            "pipeline run started",
            extra={"run_id": report.run_id, "pipeline": self.pipeline.name, "stage_count": len(self.pipeline)},
        )

        output = self.pipeline.stream(self._pull(source, context, report), context)
        try:
            for record in output:
                context.cancel.raise_if_cancelled()
                self._write(sink, record)
                report.records_out += 1
        except RunCancelled:
            report.cancelled = True
            logger.warning("pipeline run cancelled", extra={"run_id": report.run_id})
        except (PipelineIOError, RecordError) as exc:
            # RecordError only escapes the pipeline from stages marked fatal.
            report.fatal_error = exc
            logger.error("pipeline run aborted", extra={"run_id": report.run_id, "error": str(exc)})
        finally:
            output.close()
            context.close()

        logger.info(
            "pipeline run finished",
            extra={
                "run_id": report.run_id,
                "status": report.status,
                "records_in": report.records_in,
                "records_out": report.records_out,
                "records_dropped": report.records_dropped,
                "errors": report.errors,
            },
        )
        return report

    def _pull(
        self,
        source: Iterable[Record | ParseError | Mapping[str, object]],
        context: RunContext,
        report: ExecutionReport,
    ) -> Iterator[Record]:
        try:
            iterator = iter(source)
        except OSError as exc:
            raise SourceError(f"source could not be opened: {exc}") from exc

        position = 0
        while True:
            # Cancellation is checked between records, never inside one.
            context.cancel.raise_if_cancelled()
            try:
                item = next(iterator)
            except StopIteration:
                return
            except OSError as exc:
                raise SourceError(f"source read failed: {exc}") from exc
            except ParseError as exc:
                item = exc

            position += 1
            report.records_in += 1
            if isinstance(item, ParseError):
                context.add_failure("source", item, position=item.position or position)
                continue
            if not isinstance(item, Record):
                try:
                    item = Record(item)
                except (ParseError, TypeError, ValueError) as exc:
                    context.add_failure("source", ParseError(str(exc), raw=item), position=position)
                    continue
            yield item

    def _write(self, sink: Sink, record: Record) -> None:
        def log_attempt(attempt: int, exc: Exception) -> None:
            logger.warning(
                "sink write failed",
                extra={"attempt": attempt, "max_attempts": self.sink_retries + 1, "error": str(exc)},
            )

        try:
            call_with_retries(
                lambda: sink.write(record),
                max_retries=self.sink_retries,
                backoff_seconds=self.retry_backoff_seconds,
                on_attempt_failure=log_attempt,
            )
        except RetryExhaustedError as exc:
            raise SinkError(f"sink write failed: {exc.__cause__}") from exc
