import pytest

from pipekit.retry import RetryExhaustedError, call_with_retries


def test_retry_succeeds_after_transient_errors(monkeypatch) -> None:
    sleeps: list[float] = []
    monkeypatch.setattr("pipekit.retry.time.sleep", sleeps.append)
    attempts: list[int] = []

    def flaky() -> str:
        attempts.append(1)
        if len(attempts) < 3:
            raise OSError("busy")
        return "ok"

    assert call_with_retries(flaky, max_retries=3, backoff_seconds=0.5) == "ok"
    assert sleeps == [0.5, 1.0]


def test_retry_gives_up_and_keeps_cause(monkeypatch) -> None:
    monkeypatch.setattr("pipekit.retry.time.sleep", lambda _: None)
    seen: list[int] = []

    def broken() -> None:
        raise OSError("disk full")

    with pytest.raises(RetryExhaustedError) as excinfo:
        call_with_retries(
            broken, max_retries=2, backoff_seconds=0, on_attempt_failure=lambda attempt, exc: seen.append(attempt)
        )

    assert excinfo.value.attempts == 3
    assert isinstance(excinfo.value.__cause__, OSError)
    assert seen == [1, 2, 3]


def test_other_errors_are_not_retried() -> None:
    calls: list[int] = []

    def wrong() -> None:
        calls.append(1)
        raise ValueError("bad record")

    with pytest.raises(ValueError):
        call_with_retries(wrong, max_retries=5, backoff_seconds=0)
    assert calls == [1]
