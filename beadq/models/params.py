from dataclasses import dataclass
from uuid import UUID


@dataclass
class EnqueueParams:
    job_id: UUID
    queue: str
    serialized_payload: str | None
    max_attempts: int
    backoff_type: str
    backoff_base: int
    backoff_max_delay: int | None
    enqueued_at_ms: int
    scheduled_at_ms: int


@dataclass
class ClaimParams:
    queue: str
    now_ms: int
    lease_expires_at_ms: int
    claim_as: str | None
    lease_token: UUID
