import logging
import threading
from datetime import datetime, timedelta
from uuid import UUID
from typing import Any, Iterable

from beadq.exceptions import BrokerUnavailable, LeaseExpired
from beadq.models import Job, RawJob, QueueStats, QueueOptions
from beadq.models.payloads import PayloadRegistry
from beadq.retry import BackoffPolicy
from beadq.core.base import BaseBroker
from beadq.core import common


logger = logging.getLogger(__name__)


class MemoryBroker(BaseBroker):
    """In-process broker with the same semantics as ``SQLBroker``.

    Nothing survives the process, so it is meant for tests and local
    experiments. Rows are kept as detached ``RawJob`` objects and every
    transition happens under a lock, which makes lease, ack and nack atomic
    even when the broker is shared between threads.

    Setting ``available`` to False simulates a broker outage: every call
    raises ``BrokerUnavailable`` until it is set back to True.
    """

    def __init__(
        self,
        registry: PayloadRegistry | None = None,
        queue_options: dict[str, QueueOptions] | None = None,
        default_options: QueueOptions | None = None,
    ) -> None:
        super().__init__(
            registry=registry,
            queue_options=queue_options,
            default_options=default_options,
        )
        self.available = True
        self._open = True
        self._rows: dict[UUID, RawJob] = {}
        self._lock = threading.Lock()

    def _check(self) -> None:
        if not self.available:
            raise BrokerUnavailable("Memory broker is unavailable")
        if not self._open:
            raise BrokerUnavailable("Memory broker is closed")

    async def connect(self) -> None:
        if not self.available:
            raise BrokerUnavailable("Memory broker is unavailable")
        self._open = True

    async def ping(self) -> bool:
        return self.available and self._open

    async def close(self) -> None:
        self._open = False

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
        p = common.parse_enqueue_params(
            self.registry,
            self.options(queue),
            queue=queue,
            payload=payload,
            job_id=job_id,
            at=at,
            delay=delay,
            max_attempts=max_attempts,
            backoff=backoff,
        )
        with self._lock:
            self._check()
            existing = self._rows.get(p.job_id)
            if existing is not None:
                logger.debug(f"Job {p.job_id} already exists, not enqueued")
                return Job.from_raw_job(existing)

            raw_job = RawJob.from_enqueue_params(p)
            self._rows[raw_job.id] = raw_job
            job = Job.from_raw_job(raw_job)

        logger.debug(f"Enqueued job {job.id} in {queue!r}")
        return job

    async def claim(
        self,
        queue: str,
        lease_timeout: int | timedelta | None = None,
        *,
        claim_as: str | None = None,
    ) -> Job | None:
        if lease_timeout is None:
            lease_timeout = self.options(queue).lease_timeout
        p = common.parse_claim_params(queue, lease_timeout, claim_as=claim_as)
        with self._lock:
            self._check()
            candidates = [
                raw_job
                for raw_job in self._rows.values()
                if raw_job.queue == p.queue
                and raw_job.status in (self.PENDING, self.RETRYING)
                and raw_job.scheduled_at <= p.now_ms
            ]
            if not candidates:
                logger.debug(f"No job available in queue {queue!r}")
                return None

            raw_job = min(candidates, key=lambda r: (r.scheduled_at, r.enqueued_at))
            self._apply(raw_job, self._lease_values(p))
            job = Job.from_raw_job(raw_job)

        logger.debug(
            f"Leased job {job.id} from {queue!r} (attempt {job.attempt}) as {claim_as}"
        )
        return job

    async def ack(self, job_id: UUID, *, lease_token: UUID | None = None) -> bool:
        common.validate_job_id(job_id)
        with self._lock:
            self._check()
            raw_job = self._rows.get(job_id)
            if not self._owns_lease(raw_job, lease_token):
                logger.debug(f"Ignoring ack of job {job_id}: not leased")
                return False

            self._apply(raw_job, self._ack_values(common.now_ms()))
            self._trim(raw_job.queue, self.COMPLETED, self.options(raw_job.queue).keep_completed)

        logger.debug(f"Job {job_id} completed")
        return True

    async def nack(
        self,
        job_id: UUID,
        error: BaseException | str | None = None,
        *,
        lease_token: UUID | None = None,
        retry: bool = True,
    ) -> Job | None:
        common.validate_job_id(job_id)
        return self._fail_lease(job_id, error, lease_token, retry)

    def _fail_lease(
        self,
        job_id: UUID,
        error: BaseException | str | None,
        lease_token: UUID | None,
        retry: bool,
        expired_by: int | None = None,
    ) -> Job | None:
        with self._lock:
            self._check()
            raw_job = self._rows.get(job_id)
            if not self._owns_lease(raw_job, lease_token):
                logger.debug(f"Ignoring nack of job {job_id}: not leased")
                return None
            if expired_by is not None and raw_job.lease_expires_at > expired_by:
                logger.debug(f"Lease of job {job_id} was extended, not recovering")
                return None

            job = Job.from_raw_job(raw_job)
            values, decision = self._nack_values(
                job, error, common.now_ms(), retry=retry
            )
            self._apply(raw_job, values)
            updated_job = Job.from_raw_job(raw_job)
            if decision.terminal:
                self._trim(job.queue, self.FAILED, self.options(job.queue).keep_failed)

        self._log_nack(job, decision, values["error"])
        return updated_job

    async def extend(
        self,
        job_id: UUID,
        *,
        lease_token: UUID,
        lease_timeout: int | timedelta | None = None,
    ) -> Job | None:
        common.validate_job_id(job_id)
        with self._lock:
            self._check()
            raw_job = self._rows.get(job_id)
            if lease_token is None or not self._owns_lease(raw_job, lease_token):
                logger.debug(f"Ignoring lease extension of job {job_id}: not leased")
                return None

            if lease_timeout is None:
                lease_timeout = self.options(raw_job.queue).lease_timeout
            raw_job.lease_expires_at = (
                common.now_ms() + common.parse_lease_timeout(lease_timeout)
            )
            job = Job.from_raw_job(raw_job)

        logger.debug(f"Extended lease of job {job_id} until {job.lease_expires_at}")
        return job

    async def recover_expired(self, *queues: str) -> int:
        for queue in queues:
            common.validate_queue_name(queue)

        now = common.now_ms()
        with self._lock:
            self._check()
            expired = [
                (raw_job.id, raw_job.lease_token, raw_job.leased_by)
                for raw_job in self._rows.values()
                if raw_job.status == self.LEASED
                and raw_job.lease_expires_at <= now
                and (not queues or raw_job.queue in queues)
            ]

        recovered = 0
        for job_id, lease_token, leased_by in expired:
            job = self._fail_lease(
                job_id,
                LeaseExpired(job_id, leased_by),
                lease_token,
                retry=True,
                expired_by=now,
            )
            if job is not None:
                recovered += 1
                logger.warning(
                    f"Lease of job {job_id} held by {leased_by} expired, "
                    f"job is now {job.status}"
                )
        return recovered

    async def get(self, job_id: UUID) -> Job | None:
        common.validate_job_id(job_id)
        with self._lock:
            self._check()
            raw_job = self._rows.get(job_id)
            return Job.from_raw_job(raw_job) if raw_job else None

    async def jobs(
        self,
        *queues: str,
        status: str | Iterable[str] | None = None,
    ) -> list[Job]:
        for queue in queues:
            common.validate_queue_name(queue)
        statuses = common.parse_statuses(status)

        with self._lock:
            self._check()
            rows = [
                raw_job
                for raw_job in self._rows.values()
                if (not queues or raw_job.queue in queues)
                and (not statuses or raw_job.status in statuses)
            ]
            rows.sort(key=lambda r: (r.scheduled_at, r.enqueued_at), reverse=True)
            return [Job.from_raw_job(raw_job) for raw_job in rows]

    async def count(
        self,
        queue: str | None = None,
        status: str | Iterable[str] | None = None,
    ) -> int:
        if queue is not None:
            common.validate_queue_name(queue)
        statuses = common.parse_statuses(status)

        with self._lock:
            self._check()
            return sum(
                1
                for raw_job in self._rows.values()
                if (not queue or raw_job.queue == queue)
                and (not statuses or raw_job.status in statuses)
            )

    async def queues(self) -> list[str]:
        with self._lock:
            self._check()
            return sorted({raw_job.queue for raw_job in self._rows.values()})

    async def stats(self, *queues: str) -> dict[str, QueueStats]:
        with self._lock:
            self._check()
            stats: dict[str, QueueStats] = {}
            for raw_job in self._rows.values():
                if queues and raw_job.queue not in queues:
                    continue
                queue_stats = stats.setdefault(
                    raw_job.queue, QueueStats(raw_job.queue, 0, 0, 0, 0, 0, 0)
                )
                queue_stats.total += 1
                setattr(
                    queue_stats,
                    raw_job.status,
                    getattr(queue_stats, raw_job.status) + 1,
                )
            return stats

    @staticmethod
    def _apply(raw_job: RawJob, values: dict[str, Any]) -> None:
        for key, value in values.items():
            setattr(raw_job, key, value)

    def _trim(self, queue: str, status: str, keep: int) -> None:
        finished = sorted(
            (
                raw_job
                for raw_job in self._rows.values()
                if raw_job.queue == queue and raw_job.status == status
            ),
            key=lambda r: (r.finished_at or 0, r.enqueued_at),
            reverse=True,
        )
        for raw_job in finished[keep:]:
            del self._rows[raw_job.id]
        if finished[keep:]:
            logger.debug(
                f"Evicted {len(finished[keep:])} {status} job(s) from {queue!r}"
            )
