from dataclasses import dataclass, field


@dataclass(frozen=True)
class RecordFailure:
    stage: str
    position: int
    reason: str
    record: object


@dataclass
class StageStats:
    name: str
    kind: str
    records_in: int = 0
    records_out: int = 0
    skipped: int = 0
    failed: int = 0

    @property
    def dropped(self) -> int:
        # Barrier stages only expose their totals; whatever vanished was dropped.
        return max(self.skipped, self.records_in - self.records_out - self.failed)


@dataclass
class ExecutionReport:
    run_id: str
    records_in: int = 0
    records_out: int = 0
    failures: list[RecordFailure] = field(default_factory=list)
    stages: list[StageStats] = field(default_factory=list)
    fatal_error: Exception | None = None
    cancelled: bool = False

    @property
    def records_dropped(self) -> int:
        return sum(stats.dropped for stats in self.stages)

    @property
    def errors(self) -> int:
        return len(self.failures)

    @property
    def status(self) -> str:
        if self.fatal_error is not None:
            return "failed"
        if self.cancelled:
            return "cancelled"
        return "succeeded"

    def to_dict(self) -> dict[str, object]:
        return {
            "run_id": self.run_id,
            "status": self.status,
            "records_in": self.records_in,
            "records_out": self.records_out,
            "records_dropped": self.records_dropped,
            "errors": self.errors,
            "fatal_error": str(self.fatal_error) if self.fatal_error is not None else None,
            "cancelled": self.cancelled,
            "failures": [
                {
                    "stage": failure.stage,
                    "position": failure.position,
                    "reason": failure.reason,
                    "record": failure.record,
                }
                for failure in self.failures
            ],
            "stages": [
                {
                    "name": stats.name,
                    "kind": stats.kind,
                    "records_in": stats.records_in,
                    "records_out": stats.records_out,
                    "dropped": stats.dropped,
                    "failed": stats.failed,
                }
                for stats in self.stages
            ],
        }


@dataclass(frozen=True)
class RunResult:
    run_id: int
    run_key: str
    pipeline_name: str
    status: str
    records_in: int
    records_out: int
    records_dropped: int
    errors: int
    fatal_error: str | None
    report_path: str | None
    reused_existing_run: bool
