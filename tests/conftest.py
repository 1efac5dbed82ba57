from collections.abc import Generator
from pathlib import Path

import pytest

from pipekit.config import Settings
from pipekit.database import build_session_factory
from pipekit.runner import PipelineRunner


@pytest.fixture()
def temp_workspace(tmp_path: Path) -> Path:
    (tmp_path / "data" / "input").mkdir(parents=True, exist_ok=True)
    (tmp_path / "outputs").mkdir(parents=True, exist_ok=True)
    (tmp_path / "spill").mkdir(parents=True, exist_ok=True)
    return tmp_path


@pytest.fixture()
def test_settings(temp_workspace: Path) -> Settings:
    return Settings(
        app_name="pipekit",
        database_url=f"sqlite:///{temp_workspace / 'test.db'}",
        log_level="INFO",
        output_dir=str(temp_workspace / "outputs"),
        temp_dir=str(temp_workspace / "spill"),
        sort_memory_limit=4,
        pipeline_workers=1,
        worker_batch_size=8,
        max_sink_retries=0,
        retry_backoff_seconds=0,
        history_limit=50,
    )


@pytest.fixture()
def runner(test_settings: Settings) -> Generator[PipelineRunner, None, None]:
    session_factory = build_session_factory(test_settings.database_url)
    yield PipelineRunner(test_settings, session_factory)
