import asyncio
import contextlib
import inspect
import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable

from beadq.core.base import BaseBroker
from beadq.exceptions import BrokerUnavailable, HandlerError, TerminalFailure
from beadq.models import Job
from beadq.retry import to_milliseconds


logger = logging.getLogger(__name__)


JobHandler = Callable[[Job], Awaitable[Any]]
CompletedHook = Callable[[Job, Any], Any]
FailedHook = Callable[[Job, BaseException, bool], Any]


async def call_hook(name: str, hook: Callable[..., Any] | None, *args: Any) -> None:
    """Run a sync or async hook, logging its errors instead of raising them."""
    if hook is None:
        return
    try:
        result = hook(*args)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception(f"Hook {name} raised an exception, ignoring it")


class LeaseHeartbeat:
    """Keeps extending the lease of a job while it is being processed.

    Every ``interval`` milliseconds the lease is pushed ``lease_timeout``
    into the future, so a slow but healthy handler is never mistaken for a
    crashed one. If the broker reports that the lease is gone, ``lost`` is
    set and the heartbeat stops.

    Examples:

        >>> async with LeaseHeartbeat(broker, job, 30000) as heartbeat:
        ...     await handle(job)
        >>> heartbeat.lost
        False

    Args:
        broker (BaseBroker): Broker holding the job.
        job (Job): The leased job.
        lease_timeout (int): Lease duration in milliseconds.
        interval (float | None): Milliseconds between extensions. Defaults to
            half of ``lease_timeout``.
    """

    def __init__(
        self,
        broker: BaseBroker,
        job: Job,
        lease_timeout: int,
        interval: float | None = None,
    ) -> None:
        self.broker = broker
        self.job = job
        self.lease_timeout = lease_timeout
        self.interval = interval if interval is not None else lease_timeout / 2
        if self.interval <= 0:
            raise ValueError("Heartbeat interval must be positive")

        self.beats = 0
        self.lost = False
        self._task: asyncio.Task | None = None

    async def __aenter__(self) -> "LeaseHeartbeat":
        self._task = asyncio.create_task(
            self._beat(), name=f"beadq-heartbeat-{self.job.id}"
        )
        return self

    async def __aexit__(self, exc_type: Any, exc_value: Any, traceback: Any) -> bool:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        return False

    async def _beat(self) -> None:
        while True:
            await asyncio.sleep(self.interval / 1000)
            try:
                extended = await self.broker.extend(
                    self.job.id,
                    lease_token=self.job.lease_token,
                    lease_timeout=self.lease_timeout,
                )
            except BrokerUnavailable as exc:
                logger.warning(
                    f"Could not extend the lease of job {self.job.id}: {exc}"
                )
                continue
            except Exception:
                logger.exception(
                    f"Unexpected error extending the lease of job {self.job.id}"
                )
                continue

            if extended is None:
                self.lost = True
                logger.warning(
                    f"Job {self.job.id} is no longer leased under its token, "
                    f"stopping its heartbeat"
                )
                return
            self.beats += 1
            self.job.lease_expires_at = extended.lease_expires_at


class WorkerPool:
    """Fixed number of asyncio workers consuming one queue.

    Each worker leases a job, passes it to ``handler`` and acknowledges it
    through the broker's ``dequeue()`` context manager: ack when the handler
    returns, nack when it raises or calls ``job.fail()``. The number of jobs
    processed at the same time never exceeds ``concurrency`` because exactly
    that many workers exist.

    Examples:

        >>> async def scrape(job: Job) -> None:
        ...     print(job.payload)
        >>> pool = WorkerPool(broker, "scrape-project", scrape, concurrency=2)
        >>> pool.start()
        >>> ...
        >>> await pool.shutdown(grace_timeout=30)

    Args:
        broker (BaseBroker): Broker shared by every pool of the process.
        queue (str): Queue to consume.
        handler (JobHandler): Async callable receiving the leased ``Job``.
        concurrency (int): Number of workers. Defaults to 1.
        lease_timeout (int | timedelta | None): Lease duration. Defaults to
            the queue's ``lease_timeout``.
        poll_interval (int): Milliseconds between polls of an empty queue.
        reconnect_delay (int): Milliseconds to wait after the broker became
            unreachable before trying again.
        name (str | None): Prefix of the worker names recorded in
            ``leased_by``. Defaults to the queue name.
        on_completed (CompletedHook | None): Called with the job and the
            handler result after a successful ack.
        on_failed (FailedHook | None): Called with the job, the error and
            whether the failure was terminal after a nack.
        heartbeat (bool): Extend the lease of each job while its handler
            runs. Defaults to True.
        heartbeat_interval (int | None): Milliseconds between lease
            extensions. Defaults to half of the lease timeout.
    """

    def __init__(
        self,
        broker: BaseBroker,
        queue: str,
        handler: JobHandler,
        concurrency: int = 1,
        lease_timeout: int | timedelta | None = None,
        poll_interval: int = 1000,
        reconnect_delay: int = 5000,
        name: str | None = None,
        on_completed: CompletedHook | None = None,
        on_failed: FailedHook | None = None,
        heartbeat: bool = True,
        heartbeat_interval: int | None = None,
    ) -> None:
        if not isinstance(concurrency, int) or concurrency < 1:
            raise ValueError("concurrency must be a positive integer")
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if heartbeat_interval is not None and heartbeat_interval <= 0:
            raise ValueError("heartbeat_interval must be positive")

        self.broker = broker
        self.queue = queue
        self.handler = handler
        self.concurrency = concurrency
        self.lease_timeout = lease_timeout
        self.poll_interval = poll_interval
        self.reconnect_delay = reconnect_delay
        self.name = name or queue
        self.on_completed = on_completed
        self.on_failed = on_failed
        self.heartbeat = heartbeat
        self.heartbeat_interval = heartbeat_interval

        self.active = 0
        self.processed = 0
        self.stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    def __repr__(self) -> str:
        return (
            f"WorkerPool(queue={self.queue!r}, concurrency={self.concurrency}, "
            f"active={self.active})"
        )

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        """Spawn the workers on the running event loop."""
        if self._tasks:
            raise RuntimeError(f"Worker pool {self.name!r} was already started")

        logger.info(
            f"Starting {self.concurrency} worker(s) for queue {self.queue!r}"
        )
        self._tasks = [
            asyncio.create_task(
                self._run_worker(f"{self.name}-{i}"),
                name=f"beadq-{self.name}-{i}",
            )
            for i in range(1, self.concurrency + 1)
        ]

    def stop(self) -> None:
        """Stop leasing new jobs.

        Jobs that are being processed are finished and acknowledged.
        """
        if not self.stop_event.is_set():
            logger.info(f"Stopping worker pool {self.name!r}")
        self.stop_event.set()

    async def join(self, timeout: float | None = None) -> bool:
        """Wait for every worker to exit.

        Returns:
            bool: True if all workers exited within ``timeout`` seconds.
        """
        if not self._tasks:
            return True
        _, pending = await asyncio.wait(self._tasks, timeout=timeout)
        return not pending

    async def shutdown(self, grace_timeout: float = 30) -> bool:
        """Stop the pool and drain it.

        Workers still busy after ``grace_timeout`` seconds are cancelled.
        Their jobs stay leased and are redelivered after lease expiry.

        Returns:
            bool: True if the pool drained within the grace period.
        """
        self.stop()
        drained = await self.join(grace_timeout)
        if not drained:
            pending = [task for task in self._tasks if not task.done()]
            logger.warning(
                f"Grace period of {grace_timeout}s elapsed with {self.active} "
                f"job(s) in flight in {self.queue!r}, cancelling "
                f"{len(pending)} worker(s)"
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        else:
            logger.info(f"Worker pool {self.name!r} drained")
        return drained

    async def _run_worker(self, worker_name: str) -> None:
        logger.debug(f"Worker {worker_name} started")
        while not self.stop_event.is_set():
            try:
                await self._process_next(worker_name)
            except BrokerUnavailable as exc:
                logger.warning(
                    f"Worker {worker_name} lost the broker: {exc}. "
                    f"Retrying in {self.reconnect_delay} ms"
                )
                await self._sleep(self.reconnect_delay)
            except asyncio.CancelledError:
                logger.info(f"Worker {worker_name} interrupted by cancellation")
                raise
            except Exception:
                # Never let one job take the worker down
                logger.exception(f"Unexpected error in worker {worker_name}")
                await self._sleep(self.poll_interval)
        logger.debug(f"Worker {worker_name} stopped")

    async def _process_next(self, worker_name: str) -> None:
        result = None
        ctx = self.broker.dequeue(
            self.queue,
            self.lease_timeout,
            claim_as=worker_name,
            block=True,
            stop_event=self.stop_event,
            poll_interval=self.poll_interval,
        )
        async with ctx as job:
            if job is None:
                return
            self.active += 1
            try:
                async with self._heartbeat(job):
                    result = await self.handler(job)
            finally:
                self.active -= 1

        self.processed += 1
        if ctx.acked:
            await call_hook("on_completed", self.on_completed, job, result)
        elif ctx.nacked_job is not None:
            await self._report_failure(job, ctx.nacked_job, ctx.exception)
        else:
            logger.warning(
                f"Job {job.id} was no longer leased by {worker_name} when it "
                f"finished, its outcome was discarded"
            )

    def _heartbeat(self, job: Job) -> contextlib.AbstractAsyncContextManager:
        if not self.heartbeat:
            return contextlib.nullcontext()
        if self.lease_timeout is not None:
            lease_timeout = to_milliseconds(self.lease_timeout)
        else:
            lease_timeout = self.broker.options(job.queue).lease_timeout
        return LeaseHeartbeat(
            self.broker, job, lease_timeout, interval=self.heartbeat_interval
        )

    async def _report_failure(
        self,
        job: Job,
        nacked_job: Job,
        exception: BaseException | None,
    ) -> None:
        error: BaseException
        if nacked_job.status == BaseBroker.FAILED:
            error = TerminalFailure(
                job.id, job.queue, nacked_job.attempt, nacked_job.error
            )
            logger.error(str(error))
            terminal = True
        else:
            error = exception or job._exception or HandlerError(job.id, job.error or "")
            terminal = False
        await call_hook("on_failed", self.on_failed, nacked_job, error, terminal)

    async def _sleep(self, milliseconds: int) -> None:
        try:
            await asyncio.wait_for(self.stop_event.wait(), milliseconds / 1000)
        except asyncio.TimeoutError:
            pass
