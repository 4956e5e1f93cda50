"""Exponential backoff with jitter for eventually-consistent cloud calls.

This is the single place where transient inconsistency of the control plane
is absorbed: a just-created resource that is not yet listed, a floating IP
whose address has not propagated, a 5xx from an overloaded API. Facade calls
choose a policy per operation class:

- READ_BACKOFF: gets, lists and tag operations (short, frequent)
- WRITE_BACKOFF: creates, updates and deletes (fewer attempts)
- POLL_BACKOFF: floating IP address discovery and provisioning waits (slowest)

Example:
    done = retry_with_backoff(
        READ_BACKOFF,
        lambda: client.get_server(server_id).status == "ACTIVE",
        description="wait for server",
    )
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from .errors import ConvergenceTimeout, TransportError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Condition returns True when done, False for "not yet, try again".
Condition = Callable[[], bool]


@dataclass(frozen=True)
class BackoffPolicy:
    """Retry schedule for one class of operation.

    Attributes:
        duration: Initial delay in seconds before the second attempt.
        factor: Multiplier applied to the delay after every attempt.
        jitter: Fraction of the delay added at random (0.1 = up to +10%).
        steps: Maximum number of attempts, including the first one.
    """

    duration: float
    factor: float
    jitter: float
    steps: int

    def __post_init__(self) -> None:
        if self.steps < 1:
            raise ValueError(f"steps must be at least 1: {self.steps}")
        if self.duration < 0:
            raise ValueError(f"duration cannot be negative: {self.duration}")
        if self.factor < 1.0:
            raise ValueError(f"factor must be >= 1.0: {self.factor}")
        if self.jitter < 0:
            raise ValueError(f"jitter cannot be negative: {self.jitter}")

    def delay(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        """Compute the sleep before retry number ``attempt`` (0-based)."""
        base = self.duration * (self.factor**attempt)
        if self.jitter > 0:
            base += base * self.jitter * rng()
        return base


READ_BACKOFF = BackoffPolicy(duration=1.0, factor=1.5, jitter=0.1, steps=10)
WRITE_BACKOFF = BackoffPolicy(duration=1.0, factor=1.5, jitter=0.1, steps=5)
POLL_BACKOFF = BackoffPolicy(duration=1.0, factor=1.5, jitter=0.1, steps=20)


def retry_with_backoff(
    policy: BackoffPolicy,
    condition: Condition,
    *,
    sleep: Callable[[float], None] = time.sleep,
    rng: Callable[[], float] = random.random,
    description: str = "operation",
) -> None:
    """Invoke ``condition`` until it reports done or the policy is exhausted.

    Args:
        policy: Backoff schedule to follow.
        condition: Callable returning True when done, False to try again.
            Raising TransportError also retries; any other exception
            aborts the remaining attempts and propagates unchanged.
        sleep: Sleep function (injectable for tests).
        rng: Random source in [0, 1) used for jitter (injectable for tests).
        description: Human-readable name used in logs and errors.

    Raises:
        ConvergenceTimeout: If every attempt returned False.
        TransportError: If the final attempt failed with a transient error.
    """
    last_error: TransportError | None = None

    for attempt in range(policy.steps):
        if attempt > 0:
            wait_seconds = policy.delay(attempt - 1, rng)
            logger.debug(
                "Retrying after backoff",
                extra={
                    "operation": description,
                    "attempt": attempt + 1,
                    "max_attempts": policy.steps,
                    "wait_seconds": round(wait_seconds, 3),
                },
            )
            sleep(wait_seconds)

        try:
            if condition():
                return
            last_error = None
        except TransportError as e:
            last_error = e
            if attempt + 1 < policy.steps:
                logger.info(
                    "Transient error, will retry",
                    extra={"operation": description, "attempt": attempt + 1, "error": str(e)},
                )

    if last_error is not None:
        logger.warning(
            "Hit maximum retries with error",
            extra={"operation": description, "attempts": policy.steps, "error": str(last_error)},
        )
        raise last_error

    logger.warning(
        "Hit maximum retries without convergence",
        extra={"operation": description, "attempts": policy.steps},
    )
    raise ConvergenceTimeout(
        f"{description} did not converge after {policy.steps} attempts",
        attempts=policy.steps,
    )


def call_with_backoff(
    policy: BackoffPolicy,
    fn: Callable[[], T],
    *,
    sleep: Callable[[float], None] = time.sleep,
    rng: Callable[[], float] = random.random,
    description: str = "operation",
) -> T:
    """Run a value-returning call under ``retry_with_backoff``.

    The call is done as soon as it returns; only TransportError retries.
    """
    result: list[T] = []

    def condition() -> bool:
        result.append(fn())
        return True

    retry_with_backoff(policy, condition, sleep=sleep, rng=rng, description=description)
    return result[-1]
