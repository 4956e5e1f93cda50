"""Tests for the backoff executor."""

from __future__ import annotations

import pytest

from osoperator.backoff import (
    POLL_BACKOFF,
    READ_BACKOFF,
    WRITE_BACKOFF,
    BackoffPolicy,
    call_with_backoff,
    retry_with_backoff,
)
from osoperator.errors import ConvergenceTimeout, NotFoundError, TransportError


class Recorder:
    """Sleep stand-in that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class TestBackoffPolicy:
    """Tests for BackoffPolicy."""

    def test_delay_grows_by_factor(self) -> None:
        """Test that each delay is the previous one times the factor."""
        policy = BackoffPolicy(duration=1.0, factor=2.0, jitter=0.0, steps=4)

        assert policy.delay(0) == 1.0
        assert policy.delay(1) == 2.0
        assert policy.delay(2) == 4.0

    def test_jitter_is_bounded(self) -> None:
        """Test that jitter adds at most its fraction of the delay."""
        policy = BackoffPolicy(duration=1.0, factor=1.0, jitter=0.1, steps=2)

        assert policy.delay(0, rng=lambda: 0.0) == 1.0
        assert policy.delay(0, rng=lambda: 0.999) == pytest.approx(1.0999)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"duration": 1.0, "factor": 1.5, "jitter": 0.1, "steps": 0},
            {"duration": -1.0, "factor": 1.5, "jitter": 0.1, "steps": 3},
            {"duration": 1.0, "factor": 0.5, "jitter": 0.1, "steps": 3},
            {"duration": 1.0, "factor": 1.5, "jitter": -0.1, "steps": 3},
        ],
    )
    def test_invalid_policy_rejected(self, kwargs: dict[str, float]) -> None:
        """Test that nonsensical schedules are rejected at construction."""
        with pytest.raises(ValueError):
            BackoffPolicy(**kwargs)  # type: ignore[arg-type]

    def test_builtin_policies(self) -> None:
        """Test the relative sizes of the built-in schedules."""
        assert WRITE_BACKOFF.steps < READ_BACKOFF.steps < POLL_BACKOFF.steps


class TestRetryWithBackoff:
    """Tests for retry_with_backoff."""

    def test_returns_on_first_success(self) -> None:
        """Test that a condition done on the first call never sleeps."""
        sleep = Recorder()
        calls = []

        def condition() -> bool:
            calls.append(1)
            return True

        retry_with_backoff(READ_BACKOFF, condition, sleep=sleep)

        assert len(calls) == 1
        assert sleep.delays == []

    def test_exhaustion_raises_timeout_after_exact_steps(self) -> None:
        """Test that a never-done condition is attempted exactly `steps` times."""
        policy = BackoffPolicy(duration=1.0, factor=2.0, jitter=0.0, steps=3)
        sleep = Recorder()
        calls = []

        def condition() -> bool:
            calls.append(1)
            return False

        with pytest.raises(ConvergenceTimeout) as exc_info:
            retry_with_backoff(policy, condition, sleep=sleep, description="wait for thing")

        assert len(calls) == 3
        assert sleep.delays == [1.0, 2.0]
        assert exc_info.value.attempts == 3
        assert "wait for thing" in str(exc_info.value)

    def test_jittered_schedule_until_timeout(self) -> None:
        """Test three attempts of a jittered 1s x1.5 schedule, then a timeout."""
        policy = BackoffPolicy(duration=1.0, factor=1.5, jitter=0.1, steps=3)
        sleep = Recorder()
        calls = []

        def condition() -> bool:
            calls.append(1)
            return False

        with pytest.raises(ConvergenceTimeout) as exc_info:
            retry_with_backoff(policy, condition, sleep=sleep, rng=lambda: 1.0)

        assert len(calls) == 3
        assert sleep.delays == [pytest.approx(1.1), pytest.approx(1.65)]
        assert exc_info.value.attempts == 3

    def test_succeeds_after_retries(self) -> None:
        """Test that the condition is retried until it reports done."""
        policy = BackoffPolicy(duration=0.5, factor=1.0, jitter=0.0, steps=5)
        results = iter([False, False, True])
        sleep = Recorder()

        retry_with_backoff(policy, lambda: next(results), sleep=sleep)

        assert sleep.delays == [0.5, 0.5]

    def test_transport_error_is_retried(self) -> None:
        """Test that a transient error counts as not done yet."""
        policy = BackoffPolicy(duration=0.1, factor=1.0, jitter=0.0, steps=3)
        attempts = []

        def condition() -> bool:
            attempts.append(1)
            if len(attempts) < 2:
                raise TransportError("503", status_code=503)
            return True

        retry_with_backoff(policy, condition, sleep=Recorder())

        assert len(attempts) == 2

    def test_last_transport_error_is_surfaced(self) -> None:
        """Test that exhausting on a transient error raises that error."""
        policy = BackoffPolicy(duration=0.1, factor=1.0, jitter=0.0, steps=2)

        def condition() -> bool:
            raise TransportError("service unavailable", status_code=503)

        with pytest.raises(TransportError, match="service unavailable"):
            retry_with_backoff(policy, condition, sleep=Recorder())

    def test_non_retryable_error_aborts(self) -> None:
        """Test that other errors propagate without further attempts."""
        attempts = []

        def condition() -> bool:
            attempts.append(1)
            raise NotFoundError("gone", status_code=404)

        with pytest.raises(NotFoundError):
            retry_with_backoff(READ_BACKOFF, condition, sleep=Recorder())

        assert len(attempts) == 1


class TestCallWithBackoff:
    """Tests for call_with_backoff."""

    def test_returns_value(self) -> None:
        """Test that the call's return value is passed through."""
        assert call_with_backoff(WRITE_BACKOFF, lambda: "server-1", sleep=Recorder()) == "server-1"

    def test_retries_transient_failure(self) -> None:
        """Test that a transient failure is retried and the value returned."""
        outcomes = iter([TransportError("reset"), "ok"])

        def fn() -> str:
            value = next(outcomes)
            if isinstance(value, Exception):
                raise value
            return value

        sleep = Recorder()
        assert call_with_backoff(WRITE_BACKOFF, fn, sleep=sleep, rng=lambda: 0.0) == "ok"
        assert sleep.delays == [WRITE_BACKOFF.duration]
