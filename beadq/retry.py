"""Retry accounting and backoff delays.

The broker never sleeps on behalf of a failed job. A nack computes a
``RetryDecision`` and the delay only moves the job's ``scheduled_at``
forward, so other jobs keep flowing while one is waiting for its retry.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Literal


BackoffType = Literal["exponential", "fixed"]
BACKOFF_TYPES: tuple[str, ...] = ("exponential", "fixed")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE = 2000


def to_milliseconds(value: int | float | timedelta) -> int:
    if isinstance(value, timedelta):
        return int(value.total_seconds() * 1000)
    return int(value)


@dataclass(frozen=True)
class BackoffPolicy:
    """Delay before a failed attempt becomes eligible for redelivery.

    Examples:
        >>> BackoffPolicy().delay(1)
        2000
        >>> BackoffPolicy().delay(3)
        8000
        >>> BackoffPolicy(base=1000, max_delay=3000).delay(5)
        3000

    Args:
        type (str): ``"exponential"`` computes ``base * 2 ** (attempt - 1)``,
            ``"fixed"`` always waits ``base``.
        base (int): Base delay in milliseconds. Defaults to 2 seconds.
        max_delay (int | None): Optional ceiling in milliseconds.
    """

    type: BackoffType = "exponential"
    base: int = DEFAULT_BACKOFF_BASE
    max_delay: int | None = None

    def __post_init__(self) -> None:
        if self.type not in BACKOFF_TYPES:
            raise ValueError(f"Unknown backoff type: {self.type!r}")
        if not isinstance(self.base, int) or self.base < 0:
            raise ValueError("Backoff base must be a non-negative integer")
        if self.max_delay is not None and self.max_delay < 0:
            raise ValueError("Backoff max_delay must be non-negative")

    def delay(self, attempt: int) -> int:
        """Milliseconds to wait after ``attempt`` failed."""
        if attempt < 1:
            raise ValueError("Attempt numbers start at 1")

        if self.type == "fixed":
            planned = self.base
        else:
            planned = self.base * 2 ** (attempt - 1)

        if self.max_delay is not None:
            return min(planned, self.max_delay)
        return planned

    @staticmethod
    def from_value(
        value: "BackoffPolicy | int | timedelta | None",
        default: "BackoffPolicy | None" = None,
    ) -> "BackoffPolicy":
        """Accept a policy, a base delay, or None for the default."""
        if value is None:
            return default or BackoffPolicy()
        if isinstance(value, BackoffPolicy):
            return value
        if isinstance(value, (int, timedelta)):
            template = default or BackoffPolicy()
            return BackoffPolicy(
                type=template.type,
                base=to_milliseconds(value),
                max_delay=template.max_delay,
            )
        raise ValueError("backoff must be a BackoffPolicy, int or timedelta")


@dataclass(frozen=True)
class RetryDecision:
    terminal: bool
    attempt: int
    delay: int


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)

    def __post_init__(self) -> None:
        if not isinstance(self.max_attempts, int) or self.max_attempts < 1:
            raise ValueError("max_attempts must be a positive integer")

    def after_failure(self, attempt: int, retryable: bool = True) -> RetryDecision:
        """Decide what happens to a job whose ``attempt`` just failed.

        A terminal decision keeps the attempt number of the last delivery.
        Otherwise the job moves to the next attempt after the backoff delay
        computed for the attempt that failed.
        """
        if not retryable or attempt + 1 > self.max_attempts:
            return RetryDecision(terminal=True, attempt=attempt, delay=0)
        return RetryDecision(
            terminal=False,
            attempt=attempt + 1,
            delay=self.backoff.delay(attempt),
        )
