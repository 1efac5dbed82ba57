from dataclasses import dataclass
import os

from dotenv import load_dotenv


load_dotenv()


@dataclass(frozen=True)
class Settings:
    app_name: str
    database_url: str
    log_level: str
    output_dir: str
    temp_dir: str | None
    sort_memory_limit: int
    pipeline_workers: int
    worker_batch_size: int
    max_sink_retries: int
    retry_backoff_seconds: float
    history_limit: int


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("APP_NAME", "pipekit"),
        database_url=os.getenv("DATABASE_URL", "sqlite:///./pipekit.db"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        output_dir=os.getenv("OUTPUT_DIR", "./outputs"),
        temp_dir=os.getenv("TEMP_DIR") or None,
        sort_memory_limit=int(os.getenv("SORT_MEMORY_LIMIT", "100000")),
        pipeline_workers=int(os.getenv("PIPELINE_WORKERS", "1")),
        worker_batch_size=int(os.getenv("WORKER_BATCH_SIZE", "64")),
        max_sink_retries=int(os.getenv("MAX_SINK_RETRIES", "0")),
        retry_backoff_seconds=float(os.getenv("RETRY_BACKOFF_SECONDS", "1")),
        history_limit=int(os.getenv("HISTORY_LIMIT", "200")),
    )
