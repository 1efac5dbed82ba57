import json

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pipekit.db_models import PipelineRun, RecordFailureRow, utc_now
from pipekit.schemas import ExecutionReport, RecordFailure


def get_run_by_key(db: Session, run_key: str) -> PipelineRun | None:
    stmt = select(PipelineRun).where(PipelineRun.run_key == run_key)
    return db.execute(stmt).scalar_one_or_none()


def create_or_get_run(
    db: Session,
    *,
    run_key: str,
    pipeline_name: str,
    trigger_source: str = "manual",
) -> tuple[PipelineRun, bool]:
    run = PipelineRun(run_key=run_key, pipeline_name=pipeline_name, trigger_source=trigger_source, status="queued")
    db.add(run)
    try:
        db.commit()
    except IntegrityError:
        # Unique run_key makes reruns of the same key idempotent.
        db.rollback()
        existing = get_run_by_key(db, run_key)
        if existing:
            return existing, False
        raise

    db.refresh(run)
    return run, True


def reset_failed_run_state(db: Session, run: PipelineRun) -> None:
    db.execute(delete(RecordFailureRow).where(RecordFailureRow.run_id == run.id))

    run.status = "queued"
    run.fatal_error = None
    run.cancelled = False
    run.completed_at = None
    run.duration_ms = None
    run.records_in = 0
    run.records_out = 0
    run.records_dropped = 0
    run.error_count = 0
    db.commit()


def mark_run_running(db: Session, run: PipelineRun) -> None:
    run.status = "running"
    run.started_at = utc_now()
    run.fatal_error = None
    db.commit()


def mark_run_finished(db: Session, run: PipelineRun, report: ExecutionReport) -> None:
    finished_at = utc_now()
    run.status = report.status
    run.records_in = report.records_in
    run.records_out = report.records_out
    run.records_dropped = report.records_dropped
    run.error_count = report.errors
    run.cancelled = report.cancelled
    run.fatal_error = str(report.fatal_error) if report.fatal_error is not None else None
    run.completed_at = finished_at
    run.duration_ms = (finished_at - run.started_at).total_seconds() * 1000
    db.commit()


def mark_run_failed(db: Session, run: PipelineRun, *, error: str) -> None:
    run.status = "failed"
    run.fatal_error = error
    run.completed_at = utc_now()
    db.commit()


def store_record_failures(db: Session, *, run_id: int, failures: list[RecordFailure]) -> None:
    for failure in failures:
        db.add(
            RecordFailureRow(
                run_id=run_id,
                stage=failure.stage,
                position=failure.position,
                reason=failure.reason,
                raw_record=json.dumps(failure.record, default=str) if failure.record is not None else None,
            )
        )
    db.commit()


def list_recent_runs(db: Session, *, limit: int = 20) -> list[PipelineRun]:
    stmt = select(PipelineRun).order_by(PipelineRun.id.desc()).limit(limit)
    return list(db.execute(stmt).scalars().all())


def list_run_failures(db: Session, run_id: int) -> list[RecordFailureRow]:
    stmt = select(RecordFailureRow).where(RecordFailureRow.run_id == run_id).order_by(RecordFailureRow.id)
    return list(db.execute(stmt).scalars().all())


def prune_history(db: Session, *, keep: int) -> int:
    if keep <= 0:
        return 0
    stmt = select(PipelineRun.id).order_by(PipelineRun.id.desc()).offset(keep)
    stale_ids = list(db.execute(stmt).scalars().all())
    if not stale_ids:
        return 0

    # SQLite does not enforce ON DELETE CASCADE unless foreign keys are switched on.
    db.execute(delete(RecordFailureRow).where(RecordFailureRow.run_id.in_(stale_ids)))
    db.execute(delete(PipelineRun).where(PipelineRun.id.in_(stale_ids)))
    db.commit()
    return len(stale_ids)
