from collections.abc import Iterable
import json
import logging
from pathlib import Path
import re
import uuid

from sqlalchemy.orm import Session, sessionmaker

from pipekit.config import Settings
from pipekit.context import CancelToken
from pipekit.db_models import PipelineRun
from pipekit.driver import ExecutionDriver, Sink
from pipekit.errors import SinkError
from pipekit.pipeline import Pipeline
from pipekit.run_store import (
    create_or_get_run,
    mark_run_failed,
    mark_run_finished,
    mark_run_running,
    prune_history,
    reset_failed_run_state,
    store_record_failures,
)
from pipekit.schemas import ExecutionReport, RunResult


logger = logging.getLogger(__name__)
_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def write_json(path: Path, payload: dict[str, object]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as outfile:
        json.dump(payload, outfile, indent=2, sort_keys=True, default=str)
        outfile.write("\n")


class PipelineRunner:
    """Runs a pipeline once and records it in the run history."""

    def __init__(self, settings: Settings, session_factory: sessionmaker[Session]) -> None:
        self.settings = settings
        self.session_factory = session_factory

    def run(
        self,
        pipeline: Pipeline,
        source: Iterable,
        sink: Sink,
        *,
        run_key: str | None = None,
        trigger_source: str = "manual",
        cancel: CancelToken | None = None,
    ) -> RunResult:
        run_key = run_key or f"{pipeline.name}-{uuid.uuid4().hex[:12]}"

        with self.session_factory() as db:
            run, created = create_or_get_run(
                db,
                run_key=run_key,
                pipeline_name=pipeline.name,
                trigger_source=trigger_source,
            )
            if not created:
                if run.status in ("failed", "cancelled"):
                    # Keep the same run key and clear the earlier attempt.
                    logger.info("retrying previously failed run", extra={"run_key": run_key})
                    reset_failed_run_state(db, run)
                else:
                    logger.info("idempotent run reused", extra={"run_key": run_key, "status": run.status})
                    return self._result_from_run(run, reused_existing_run=True)

            mark_run_running(db, run)
            driver = ExecutionDriver(
                pipeline,
                temp_root=self.settings.temp_dir,
                sink_retries=self.settings.max_sink_retries,
                retry_backoff_seconds=self.settings.retry_backoff_seconds,
            )

            try:
                report = driver.execute(source, sink, cancel=cancel, run_id=f"{run.id}")
                self._close_sink(sink, report)
                store_record_failures(db, run_id=run.id, failures=report.failures)
                mark_run_finished(db, run, report)
                write_json(self._report_path(run_key), {"run_key": run_key, "pipeline": pipeline.name, **report.to_dict()})
            except Exception as exc:
                mark_run_failed(db, run, error=str(exc))
                logger.exception("pipeline run failed", extra={"run_key": run_key})
                return self._result_from_run(run, reused_existing_run=False)

            pruned = prune_history(db, keep=self.settings.history_limit)
            if pruned:
                logger.info("pruned run history", extra={"removed_runs": pruned})
            return self._result_from_run(run, reused_existing_run=False)

    def _close_sink(self, sink: Sink, report: ExecutionReport) -> None:
        close = getattr(sink, "close", None)
        if close is None:
            return
        try:
            close()
        except OSError as exc:
            if report.fatal_error is None:
                report.fatal_error = SinkError(f"sink could not be closed: {exc}")

    def _report_path(self, run_key: str) -> Path:
        return Path(self.settings.output_dir) / "reports" / f"{_UNSAFE_KEY_CHARS.sub('_', run_key)}.json"

    def _result_from_run(self, run: PipelineRun, *, reused_existing_run: bool) -> RunResult:
        report_path = self._report_path(run.run_key)
        return RunResult(
            run_id=run.id,
            run_key=run.run_key,
            pipeline_name=run.pipeline_name,
            status=run.status,
            records_in=run.records_in,
            records_out=run.records_out,
            records_dropped=run.records_dropped,
            errors=run.error_count,
            fatal_error=run.fatal_error,
            report_path=str(report_path) if report_path.exists() else None,
            reused_existing_run=reused_existing_run,
        )
