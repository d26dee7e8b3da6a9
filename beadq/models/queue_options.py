from dataclasses import dataclass, field

from beadq.retry import BackoffPolicy, RetryPolicy, DEFAULT_MAX_ATTEMPTS


@dataclass(frozen=True)
class QueueOptions:
    """Per-queue delivery settings.

    Args:
        max_attempts (int): Deliveries before a failing job is dead-lettered.
        backoff (BackoffPolicy): Delay between a failed attempt and the next.
        lease_timeout (int): Milliseconds a worker may hold a job before the
            lease is considered expired.
        keep_completed (int): How many completed jobs to retain.
        keep_failed (int): How many failed (dead-lettered) jobs to retain.
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    lease_timeout: int = 30 * 1000
    keep_completed: int = 100
    keep_failed: int = 500

    def __post_init__(self) -> None:
        if self.lease_timeout <= 0:
            raise ValueError("lease_timeout must be positive")
        if self.keep_completed < 0 or self.keep_failed < 0:
            raise ValueError("Retention counts cannot be negative")
        # Validates max_attempts
        self.retry_policy

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(max_attempts=self.max_attempts, backoff=self.backoff)
