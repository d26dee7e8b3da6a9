import json
import logging
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4, UUID
from typing import Any, Literal

from beadq.retry import BackoffPolicy, RetryPolicy
from .raw_job import RawJob


logger = logging.getLogger(__name__)


JobStatusValueType = Literal[
    "pending",
    "leased",
    "completed",
    "retrying",
    "failed",
]


def from_ms(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, timezone.utc)


@dataclass
class Job:
    id: UUID = field(default_factory=uuid4)
    """The unique identifier for the job.

    Generated on the client side at enqueue time unless the producer passes
    its own ``job_id`` to deduplicate submissions. The same id follows the
    job through every retry, so it can be used to correlate log lines of
    different attempts.
    """
    queue: str = field(default="")
    """The name of the queue that the job belongs to."""
    payload: Any | None = field(default=None)
    """The decoded JSON payload of the job."""
    status: JobStatusValueType | None = field(default=None)
    """The status of the job.

    Jobs are created ``pending``. A worker lease moves the job to
    ``leased``. An ack makes it ``completed``. A nack either schedules it as
    ``retrying`` (eligible again once ``scheduled_at`` has passed) or, when
    the attempts are exhausted, makes it ``failed`` for good.
    """
    attempt: int = field(default=1)
    """The number of the current delivery attempt. Starts at 1."""
    max_attempts: int = field(default=3)
    """The number of deliveries after which a failing job is dead-lettered."""
    backoff_type: str = field(default="exponential")
    backoff_base: int = field(default=2000)
    """Base backoff delay in milliseconds."""
    backoff_max_delay: int | None = field(default=None)
    """Optional ceiling on the backoff delay in milliseconds."""
    enqueued_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    scheduled_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    """The job will not be leased before this time.

    Represented as a datetime object in UTC. The broker stores it as a Unix
    epoch timestamp in milliseconds.
    """
    leased_at: datetime | None = field(default=None)
    lease_expires_at: datetime | None = field(default=None)
    """If the job is still leased at this time, it is recovered as failed."""
    leased_by: str | None = field(default=None)
    """The name of the worker holding the lease."""
    lease_token: UUID | None = field(default=None)
    """Identifies the current lease. Acks and nacks from older leases are ignored."""
    error: str | None = field(default=None)
    error_trace: str | None = field(default=None)
    finished_at: datetime | None = field(default=None)
    _failed: bool = field(default=False)
    _retryable: bool = field(default=True)
    _exception: BaseException | None = field(default=None)

    @staticmethod
    def from_raw_job(raw_job: RawJob) -> "Job":
        return Job(
            id=raw_job.id,
            queue=raw_job.queue,
            payload=Job.deserialize_payload(raw_job.payload),
            status=raw_job.status,
            attempt=raw_job.attempt,
            max_attempts=raw_job.max_attempts,
            backoff_type=raw_job.backoff_type,
            backoff_base=raw_job.backoff_base,
            backoff_max_delay=raw_job.backoff_max_delay,
            enqueued_at=from_ms(raw_job.enqueued_at),
            scheduled_at=from_ms(raw_job.scheduled_at),
            leased_at=from_ms(raw_job.leased_at),
            lease_expires_at=from_ms(raw_job.lease_expires_at),
            leased_by=raw_job.leased_by,
            lease_token=raw_job.lease_token,
            error=raw_job.error,
            error_trace=raw_job.error_trace,
            finished_at=from_ms(raw_job.finished_at),
        )

    @property
    def backoff(self) -> BackoffPolicy:
        return BackoffPolicy(
            type=self.backoff_type,
            base=self.backoff_base,
            max_delay=self.backoff_max_delay,
        )

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(max_attempts=self.max_attempts, backoff=self.backoff)

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed")

    def fail(
        self,
        exception: str | BaseException | None = None,
        retry: bool = True,
    ) -> None:
        """Fail the job without raising an exception.

        The job is nacked when the ``dequeue()`` context manager exits.
        With ``retry=False`` the job is dead-lettered right away, regardless
        of the attempts left.

        Warning: This method should be called inside the ``dequeue()``
        context manager or a stage handler only.

        Args:
            exception (str | BaseException | None): The reason of the
                failure. Strings are used as the error message, exceptions
                also provide the stack trace.
            retry (bool): Whether the failure may be retried.
        """
        self._failed = True
        self._retryable = retry
        if exception is not None:
            self._exception = exception if isinstance(exception, BaseException) else None
            self.error = str(exception)
            if isinstance(exception, BaseException):
                self.error_trace = "".join(traceback.format_exception(exception))

    @staticmethod
    def serialize_payload(payload: Any | None) -> str | None:
        if payload is None:
            return None
        if isinstance(payload, str):
            return payload
        return json.dumps(payload)

    @staticmethod
    def deserialize_payload(serialized_payload: str | None) -> Any | None:
        if not serialized_payload:
            return None

        try:
            return json.loads(serialized_payload)
        except json.JSONDecodeError:
            logger.debug(
                f"Failed to deserialize payload using JSON: {serialized_payload}"
            )
            return serialized_payload
