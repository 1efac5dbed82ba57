from dataclasses import dataclass
from datetime import UTC, datetime
import logging

from apscheduler.schedulers.blocking import BlockingScheduler
from sqlalchemy.orm import Session, sessionmaker

from pipekit.adapters import open_sink, open_source
from pipekit.config import Settings
from pipekit.runner import PipelineRunner
from pipekit.schemas import RunResult
from pipekit.stage_config import load_pipeline_file


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScheduledJob:
    pipeline_path: str
    input_path: str
    output_path: str
    input_format: str | None = None
    output_format: str | None = None


def run_scheduled_pipeline(settings: Settings, session_factory: sessionmaker[Session], job: ScheduledJob) -> RunResult:
    # The definition is reloaded every time so edits apply to the next run.
    pipeline = load_pipeline_file(
        job.pipeline_path,
        sort_memory_limit=settings.sort_memory_limit,
        workers=settings.pipeline_workers,
        batch_size=settings.worker_batch_size,
    )
    run_key = f"scheduled-{pipeline.name}-{datetime.now(UTC).strftime('%Y%m%dT%H%M%S%f')}"

    runner = PipelineRunner(settings, session_factory)
    result = runner.run(
        pipeline,
        open_source(job.input_path, job.input_format),
        open_sink(job.output_path, job.output_format),
        run_key=run_key,
        trigger_source="scheduled",
    )
    if result.status == "failed":
        logger.error(
            "scheduled pipeline run failed",
            extra={"run_key": result.run_key, "status": result.status, "error": result.fatal_error},
        )
    else:
        logger.info(
            "scheduled pipeline run completed",
            extra={"run_key": result.run_key, "status": result.status, "records_out": result.records_out},
        )
    return result


def start_scheduler(
    settings: Settings,
    session_factory: sessionmaker[Session],
    job: ScheduledJob,
    *,
    interval_seconds: float,
    run_now: bool = False,
    max_runs: int = 0,
) -> int:
    scheduler = BlockingScheduler(timezone="UTC")
    completed = {"runs": 0}

    def tick() -> bool:
        run_scheduled_pipeline(settings, session_factory, job)
        completed["runs"] += 1
        return bool(max_runs) and completed["runs"] >= max_runs

    def scheduled_tick() -> None:
        if tick():
            logger.info("reached maximum run count", extra={"max_runs": max_runs})
            scheduler.shutdown(wait=False)

    scheduler.add_job(
        scheduled_tick,
        "interval",
        seconds=interval_seconds,
        id="pipeline_interval",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    logger.info(
        "scheduler started",
        extra={"interval_seconds": interval_seconds, "max_runs": max_runs, "pipeline_path": job.pipeline_path},
    )

    if run_now and tick():
        logger.info("reached maximum run count", extra={"max_runs": max_runs})
        return completed["runs"]

    scheduler.start()
    return completed["runs"]
