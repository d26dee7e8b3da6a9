from datetime import datetime, timezone, timedelta
from uuid import UUID, uuid4
from typing import Any, Iterable

from beadq.models import Job
from beadq.models.params import EnqueueParams, ClaimParams
from beadq.models.payloads import PayloadRegistry
from beadq.models.queue_options import QueueOptions
from beadq.retry import BackoffPolicy, to_milliseconds


STATUSES = ("pending", "leased", "completed", "retrying", "failed")


def now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def validate_queue_name(queue: str) -> None:
    if not queue or not isinstance(queue, str):
        raise ValueError("Queue name must be a non-empty string")


def validate_job_id(job_id: UUID) -> None:
    if not job_id or not isinstance(job_id, UUID):
        raise ValueError("Job ID must be a UUID")


def validate_claim_as(claim_as: str | None) -> None:
    if claim_as is not None and not isinstance(claim_as, str):
        raise ValueError("claim_as must be a string")


def validate_status(status: str) -> None:
    if status not in STATUSES:
        raise ValueError(f"Unknown job status: {status!r}")


def parse_statuses(status: str | Iterable[str] | None) -> list[str]:
    if status is None:
        return []
    if isinstance(status, str):
        status = [status]
    elif not isinstance(status, Iterable):
        raise ValueError("status must be a string or an iterable of strings")
    statuses = list(status)
    for s in statuses:
        validate_status(s)
    return statuses


def parse_enqueue_params(
    registry: PayloadRegistry,
    options: QueueOptions,
    queue: str,
    payload: Any,
    job_id: UUID | None = None,
    at: datetime | int | None = None,
    delay: int | timedelta | None = None,
    max_attempts: int | None = None,
    backoff: BackoffPolicy | int | timedelta | None = None,
) -> EnqueueParams:
    validate_queue_name(queue)
    if job_id is not None:
        validate_job_id(job_id)

    # Raises PayloadValidationError for unknown queues and bad payloads
    serialized_payload = Job.serialize_payload(registry.dump(queue, payload))

    if max_attempts is None:
        max_attempts = options.max_attempts
    if not isinstance(max_attempts, int) or max_attempts < 1:
        raise ValueError("max_attempts must be a positive integer")

    policy = BackoffPolicy.from_value(backoff, default=options.backoff)

    # Determine the scheduled_at time
    now = datetime.now(timezone.utc)
    scheduled_at = at or now
    if isinstance(at, int):
        scheduled_at = datetime.fromtimestamp(at / 1000, timezone.utc)

    if delay:
        scheduled_at += timedelta(milliseconds=to_milliseconds(delay))

    return EnqueueParams(
        job_id=job_id or uuid4(),
        queue=queue,
        serialized_payload=serialized_payload,
        max_attempts=max_attempts,
        backoff_type=policy.type,
        backoff_base=policy.base,
        backoff_max_delay=policy.max_delay,
        enqueued_at_ms=int(now.timestamp() * 1000),
        scheduled_at_ms=int(scheduled_at.timestamp() * 1000),
    )


def parse_lease_timeout(lease_timeout: int | timedelta) -> int:
    lease_timeout_ms = to_milliseconds(lease_timeout)
    if lease_timeout_ms <= 0:
        raise ValueError("lease_timeout must be positive")
    return lease_timeout_ms


def parse_claim_params(
    queue: str,
    lease_timeout: int | timedelta,
    claim_as: str | None = None,
) -> ClaimParams:
    validate_queue_name(queue)
    validate_claim_as(claim_as)
    lease_timeout_ms = parse_lease_timeout(lease_timeout)

    now = now_ms()
    return ClaimParams(
        queue=queue,
        now_ms=now,
        lease_expires_at_ms=now + lease_timeout_ms,
        claim_as=claim_as,
        lease_token=uuid4(),
    )
