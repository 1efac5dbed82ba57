import logging
from pathlib import Path
import shutil
import tempfile
import threading
import uuid

from pipekit.errors import RecordError, RunCancelled
from pipekit.records import Record
from pipekit.schemas import RecordFailure, StageStats


logger = logging.getLogger(__name__)


class CancelToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelled("run cancelled")


class RunContext:
    """Per-run state shared by the pipeline and its stages.

    Holds the failure list and stage counters that end up in the report, the
    cancellation token, and a private temporary directory created on first use
    and removed by ``close``.
    """

    def __init__(
        self,
        *,
        run_id: str | None = None,
        temp_root: str | None = None,
        cancel: CancelToken | None = None,
    ) -> None:
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.temp_root = temp_root
        self.cancel = cancel or CancelToken()
        self.failures: list[RecordFailure] = []
        self.stage_stats: list[StageStats] = []
        self._stats_by_stage: dict[int, StageStats] = {}
        self._temp_dir: Path | None = None
        self._lock = threading.Lock()

    def stats_for(self, stage) -> StageStats:
        stats = self._stats_by_stage.get(id(stage))
        if stats is None:
            stats = StageStats(name=stage.name, kind=stage.kind)
            self._stats_by_stage[id(stage)] = stats
            self.stage_stats.append(stats)
        return stats

    def handle_failure(self, stage, error: RecordError, *, position: int) -> None:
        error.stage = stage.name
        if stage.fatal:
            raise error
        self.stats_for(stage).failed += 1
        self.add_failure(stage.name, error, position=position)

    def add_failure(self, stage_name: str, error: Exception, *, position: int) -> None:
        record = getattr(error, "record", None)
        if record is None:
            record = getattr(error, "raw", None)
        if isinstance(record, Record):
            record = record.to_dict()
        self.failures.append(RecordFailure(stage=stage_name, position=position, reason=str(error), record=record))
        logger.debug("record failed", extra={"run_id": self.run_id, "stage": stage_name, "reason": str(error)})

    def temp_dir(self) -> Path:
        with self._lock:
            if self._temp_dir is None:
                # One namespace per run so concurrent invocations never collide.
                self._temp_dir = Path(tempfile.mkdtemp(prefix=f"pipekit-{self.run_id}-", dir=self.temp_root))
            return self._temp_dir

    def close(self) -> None:
        with self._lock:
            if self._temp_dir is not None:
                shutil.rmtree(self._temp_dir, ignore_errors=True)
                self._temp_dir = None
