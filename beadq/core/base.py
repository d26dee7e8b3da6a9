import abc
import asyncio
import logging
import traceback
from datetime import datetime, timedelta, timezone
from uuid import UUID
from typing import Any, Iterable

from beadq.models import Job, RawJob, QueueStats, QueueOptions
from beadq.models.params import ClaimParams
from beadq.models.payloads import PayloadRegistry, default_registry
from beadq.retry import BackoffPolicy, RetryDecision


logger = logging.getLogger(__name__)


def describe_error(
    error: BaseException | str | None,
) -> tuple[str | None, str | None]:
    """Return the message and the formatted traceback of an error."""
    if error is None:
        return None, None
    if isinstance(error, BaseException):
        trace = "".join(traceback.format_exception(error))
        return str(error) or type(error).__name__, trace
    return str(error), None


class AsyncDequeueContextManager:
    def __init__(
        self,
        broker: "BaseBroker",
        queue: str,
        lease_timeout: int | timedelta | None = None,
        claim_as: str | None = None,
        recover: bool = True,
        block: bool = False,
        stop_event: asyncio.Event | None = None,
        poll_interval: int = 1000,
    ) -> None:
        self.broker = broker
        self.queue = queue
        self.lease_timeout = lease_timeout
        self.claim_as = claim_as
        self.recover = recover
        self.block = block
        self.stop_event = stop_event
        self.poll_interval = poll_interval

        self.job: Job | None = None
        self.exception: BaseException | None = None
        self.acked: bool = False
        self.nacked_job: Job | None = None

    async def __aenter__(self) -> Job | None:
        if self.block:
            self.job = await self.broker.lease(
                self.queue,
                self.lease_timeout,
                claim_as=self.claim_as,
                stop_event=self.stop_event,
                poll_interval=self.poll_interval,
                recover=self.recover,
            )
            return self.job

        # Recover jobs whose lease expired before looking for a new one
        if self.recover:
            await self.broker.recover_expired(self.queue)

        self.job = await self.broker.claim(
            self.queue, self.lease_timeout, claim_as=self.claim_as
        )
        return self.job

    async def __aexit__(
        self, exc_type: Any, exc_value: Any, traceback: Any
    ) -> bool:
        """Acknowledge the job according to how the block exited.

        A. There was no job to process.

            Nothing to acknowledge. Exceptions, if any, propagate.

        B. The block was cancelled or interrupted (``CancelledError``,
            ``KeyboardInterrupt`` or any other ``BaseException`` that is not
            an ``Exception``).

            The job is left leased. It will be recovered by lease expiry and
            redelivered, possibly to another process. The interruption
            propagates.

        C. An exception was raised, or ``job.fail()`` was called.

            The job is nacked. The retry policy decides whether it is
            scheduled for another attempt or dead-lettered. The exception is
            suppressed.

        D. The block finished cleanly.

            The job is acked.
        """
        if not self.job:
            return False

        if exc_type is not None and not issubclass(exc_type, Exception):
            logger.warning(
                f"Processing of job {self.job.id} was interrupted, "
                f"leaving it to lease expiry"
            )
            return False

        finished_at = self.broker._now()
        if self.job.leased_at:
            duration = (finished_at - self.job.leased_at).total_seconds()
            logger.debug(f"Job {self.job.id} ran for {duration:.2f} seconds")

        if exc_type is not None:
            self.exception = exc_value
            logger.error(
                f"Failed to process job {self.job.id} from {self.job.queue!r} "
                f"(attempt {self.job.attempt}): {exc_value}",
                exc_info=exc_value,
            )
            self.job.fail(exc_value)

        if self.job._failed:
            self.nacked_job = await self.broker.nack(
                self.job.id,
                self.job._exception or self.job.error,
                lease_token=self.job.lease_token,
                retry=self.job._retryable,
            )
        else:
            self.acked = await self.broker.ack(
                self.job.id, lease_token=self.job.lease_token
            )

        return True


class BaseBroker(abc.ABC):
    """Durable queue of jobs shared by every worker pool of a process.

    Both implementations follow the same state machine::

        pending ──lease──▶ leased ──ack──▶ completed
           ▲                 │
           │                nack / lease expiry
           │                 ▼
        retrying ◀──(attempts left)── ──(exhausted)──▶ failed

    A ``retrying`` job is eligible for lease once its ``scheduled_at`` has
    passed, exactly like a ``pending`` one.

    Args:
        registry (PayloadRegistry | None): Payload schemas per queue.
            Defaults to the ``scrape-project`` and ``generate-posts`` queues.
        queue_options (dict[str, QueueOptions] | None): Delivery settings
            per queue.
        default_options (QueueOptions | None): Settings for queues that are
            not listed in ``queue_options``.
    """

    PENDING = "pending"
    LEASED = "leased"
    COMPLETED = "completed"
    RETRYING = "retrying"
    FAILED = "failed"

    def __init__(
        self,
        registry: PayloadRegistry | None = None,
        queue_options: dict[str, QueueOptions] | None = None,
        default_options: QueueOptions | None = None,
    ) -> None:
        self.registry = registry or default_registry()
        self.queue_options = dict(queue_options or {})
        self.default_options = default_options or QueueOptions()

    def options(self, queue: str) -> QueueOptions:
        return self.queue_options.get(queue, self.default_options)

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def _lease_values(p: ClaimParams) -> dict[str, Any]:
        return dict(
            status=BaseBroker.LEASED,
            leased_at=p.now_ms,
            lease_expires_at=p.lease_expires_at_ms,
            leased_by=p.claim_as,
            lease_token=p.lease_token,
        )

    @staticmethod
    def _ack_values(finished_at: int) -> dict[str, Any]:
        return dict(
            status=BaseBroker.COMPLETED,
            finished_at=finished_at,
            lease_expires_at=None,
            lease_token=None,
        )

    @staticmethod
    def _nack_values(
        job: Job,
        error: BaseException | str | None,
        now: int,
        retry: bool = True,
    ) -> tuple[dict[str, Any], RetryDecision]:
        decision = job.retry_policy.after_failure(job.attempt, retryable=retry)
        message, trace = describe_error(error)
        values: dict[str, Any] = dict(
            attempt=decision.attempt,
            error=message,
            error_trace=trace,
            lease_expires_at=None,
            lease_token=None,
        )
        if decision.terminal:
            values.update(status=BaseBroker.FAILED, finished_at=now)
        else:
            values.update(
                status=BaseBroker.RETRYING,
                scheduled_at=now + decision.delay,
            )
        return values, decision

    def _owns_lease(self, raw_job: RawJob | None, lease_token: UUID | None) -> bool:
        if raw_job is None or raw_job.status != self.LEASED:
            return False
        return lease_token is None or raw_job.lease_token == lease_token

    @staticmethod
    def _log_nack(job: Job, decision: RetryDecision, message: str | None) -> None:
        if decision.terminal:
            logger.debug(
                f"Job {job.id} in {job.queue!r} exhausted its attempts "
                f"({job.attempt}/{job.max_attempts}): {message}"
            )
        else:
            logger.debug(
                f"Rescheduling job {job.id} in {job.queue!r} for attempt "
                f"{decision.attempt} in {decision.delay} ms"
            )

    @abc.abstractmethod
    async def connect(self) -> None:
        """Verify that the broker is reachable.

        Raises:
            BrokerUnavailable: If the broker cannot be reached.
        """

    @abc.abstractmethod
    async def close(self) -> None:
        """Release the broker connection."""

    @abc.abstractmethod
    async def ping(self) -> bool:
        """Return True if the broker responds."""

    @abc.abstractmethod
    async def enqueue(
        self,
        queue: str,
        payload: Any,
        *,
        job_id: UUID | None = None,
        at: datetime | int | None = None,
        delay: int | timedelta | None = None,
        max_attempts: int | None = None,
        backoff: BackoffPolicy | int | timedelta | None = None,
    ) -> Job:
        """Enqueue a job for processing.

        The payload is validated against the schema registered for the
        queue. It can be the queue's payload dataclass or a dict in wire
        format.

        Examples:

            Enqueue a scrape job for immediate processing
            >>> await broker.enqueue(
            ...     "scrape-project", ScrapeProjectJob(project_id="p1", sources=["twitter"])
            ... )

            Enqueue a job at most once per producer-side key
            >>> await broker.enqueue("generate-posts", payload, job_id=key)

        Args:
            queue (str): Name of the queue.
            payload (Any): Job payload.
            job_id (UUID | None): Explicit job id. If a job with this id
                already exists, it is returned and nothing is inserted.
            at (datetime | int | None): The job will not be leased before
                this time (UTC, ``datetime`` or epoch milliseconds).
            delay (int | timedelta | None): Added to ``at``.
            max_attempts (int | None): Overrides the queue setting.
            backoff (BackoffPolicy | int | timedelta | None): Overrides the
                queue's backoff policy. A number is used as the base delay.

        Returns:
            Job: The created (or already existing) job.

        Raises:
            BrokerUnavailable: If the broker cannot be reached.
            PayloadValidationError: For unknown queues and invalid payloads.
        """

    @abc.abstractmethod
    async def claim(
        self,
        queue: str,
        lease_timeout: int | timedelta | None = None,
        *,
        claim_as: str | None = None,
    ) -> Job | None:
        """Lease the oldest eligible job without waiting.

        This is a low level API. The caller must ``ack()`` or ``nack()`` the
        job with its ``lease_token`` before ``lease_expires_at``. Consider
        using the ``dequeue()`` context manager instead.

        Args:
            queue (str): Name of the queue.
            lease_timeout (int | timedelta | None): Lease duration.
                Defaults to the queue's ``lease_timeout``.
            claim_as (str | None): Name of the worker taking the lease.

        Returns:
            (Job | None): The leased job or None if no job is eligible.
        """

    @abc.abstractmethod
    async def ack(self, job_id: UUID, *, lease_token: UUID | None = None) -> bool:
        """Mark a leased job as completed.

        Acking a job that is unknown, already completed, failed, or leased
        under another token is a no-op.

        Returns:
            bool: True if the job was transitioned to ``completed``.
        """

    @abc.abstractmethod
    async def nack(
        self,
        job_id: UUID,
        error: BaseException | str | None = None,
        *,
        lease_token: UUID | None = None,
        retry: bool = True,
    ) -> Job | None:
        """Report a failed attempt of a leased job.

        If the job has attempts left, it is rescheduled as ``retrying``
        after the backoff delay of the attempt that failed. Otherwise, or
        when ``retry`` is False, it becomes ``failed`` and is never leased
        again.

        Returns:
            (Job | None): The job after the transition, or None if the job
            was not leased (under ``lease_token``, when given).
        """

    @abc.abstractmethod
    async def extend(
        self,
        job_id: UUID,
        *,
        lease_token: UUID,
        lease_timeout: int | timedelta | None = None,
    ) -> Job | None:
        """Push the lease of a job ``lease_timeout`` into the future.

        Long running handlers call this periodically so that their job is
        not recovered as expired while it is still being processed. The
        ``WorkerPool`` does it automatically.

        Args:
            job_id (UUID): ID of the leased job.
            lease_token (UUID): Token of the lease to extend.
            lease_timeout (int | timedelta | None): New lease duration,
                counted from now. Defaults to the queue's ``lease_timeout``.

        Returns:
            (Job | None): The job with its new ``lease_expires_at``, or None
            if the job is no longer leased under ``lease_token``.
        """

    async def holds_lease(self, job: Job) -> bool:
        """Return True if ``job`` is still leased under its ``lease_token``."""
        current = await self.get(job.id)
        return (
            current is not None
            and current.status == self.LEASED
            and current.lease_token == job.lease_token
        )

    @abc.abstractmethod
    async def recover_expired(self, *queues: str) -> int:
        """Nack every leased job whose lease has expired.

        Args:
            queues (str): Queue names. Defaults to all queues.

        Returns:
            int: Number of jobs recovered.
        """

    @abc.abstractmethod
    async def get(self, job_id: UUID) -> Job | None:
        """Get a job by ID."""

    @abc.abstractmethod
    async def jobs(
        self,
        *queues: str,
        status: str | Iterable[str] | None = None,
    ) -> list[Job]:
        """List jobs from latest to oldest scheduled."""

    @abc.abstractmethod
    async def count(
        self,
        queue: str | None = None,
        status: str | Iterable[str] | None = None,
    ) -> int:
        """Count jobs in a queue (or all queues) with the given status(es)."""

    @abc.abstractmethod
    async def queues(self) -> list[str]:
        """List all queues that have jobs."""

    @abc.abstractmethod
    async def stats(self, *queues: str) -> dict[str, QueueStats]:
        """Compute per-status counts for queues."""

    async def dead_letters(self, queue: str) -> list[Job]:
        """List the dead-lettered jobs of a queue, latest first."""
        return await self.jobs(queue, status=self.FAILED)

    async def lease(
        self,
        queue: str,
        lease_timeout: int | timedelta | None = None,
        *,
        claim_as: str | None = None,
        stop_event: asyncio.Event | None = None,
        poll_interval: int = 1000,
        recover: bool = True,
        timeout: int | None = None,
    ) -> Job | None:
        """Wait for the next eligible job and lease it.

        Polls the queue every ``poll_interval`` milliseconds. Returns None
        as soon as ``stop_event`` is set, or when ``timeout`` milliseconds
        have passed without a job.

        Args:
            queue (str): Name of the queue.
            lease_timeout (int | timedelta | None): Lease duration.
            claim_as (str | None): Name of the worker taking the lease.
            stop_event (asyncio.Event | None): Shutdown signal.
            poll_interval (int): Milliseconds between polls.
            recover (bool): Recover expired leases before each claim.
            timeout (int | None): Give up after this many milliseconds.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout / 1000

        while True:
            if stop_event is not None and stop_event.is_set():
                return None

            if recover:
                await self.recover_expired(queue)

            job = await self.claim(queue, lease_timeout, claim_as=claim_as)
            if job is not None:
                return job

            wait = poll_interval / 1000
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return None
                wait = min(wait, remaining)

            if stop_event is None:
                await asyncio.sleep(wait)
            else:
                try:
                    await asyncio.wait_for(stop_event.wait(), wait)
                except asyncio.TimeoutError:
                    pass

    def dequeue(
        self,
        queue: str,
        lease_timeout: int | timedelta | None = None,
        *,
        claim_as: str | None = None,
        recover: bool = True,
        block: bool = False,
        stop_event: asyncio.Event | None = None,
        poll_interval: int = 1000,
    ) -> AsyncDequeueContextManager:
        """Lease a job and acknowledge it when the block exits.

        The job is acked if the block finishes cleanly and nacked if it
        raises or calls ``job.fail()``. If the block is cancelled, the job
        stays leased and is recovered by lease expiry.

        Examples:

            >>> async with broker.dequeue("scrape-project") as job:
            ...     if job:
            ...         await scrape(job.payload)

            Wait for a job until shutdown is requested
            >>> async with broker.dequeue(
            ...     "generate-posts", block=True, stop_event=stop
            ... ) as job:
            ...     ...

        Yields:
            (Job | None): The leased job or None if no job is available.
        """
        return AsyncDequeueContextManager(
            broker=self,
            queue=queue,
            lease_timeout=lease_timeout,
            claim_as=claim_as,
            recover=recover,
            block=block,
            stop_event=stop_event,
            poll_interval=poll_interval,
        )
