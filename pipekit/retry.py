import time
from collections.abc import Callable
from typing import TypeVar


T = TypeVar("T")


class RetryExhaustedError(RuntimeError):
    def __init__(self, message: str, *, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


def call_with_retries(
    fn: Callable[[], T],
    *,
    max_retries: int,
    backoff_seconds: float,
    retry_on: tuple[type[Exception], ...] = (OSError,),
    on_attempt_failure: Callable[[int, Exception], None] | None = None,
) -> T:
    last_error: Exception | None = None
    attempt = 0

    for attempt in range(1, max_retries + 2):
        try:
            return fn()
        except retry_on as exc:
            last_error = exc
            if on_attempt_failure:
                on_attempt_failure(attempt, exc)
            if attempt > max_retries:
                break
            time.sleep(backoff_seconds * attempt)

    raise RetryExhaustedError(f"gave up after {attempt} attempt(s): {last_error}", attempts=attempt) from last_error
