from datetime import datetime, timezone
from uuid import uuid4, UUID
from typing import Optional

from sqlalchemy import Index, Integer, BigInteger, String, Uuid
from sqlalchemy.orm import mapped_column, Mapped

from .params import EnqueueParams
from .base_sql import BaseSQL


def now_ms() -> int:
    return int(
        datetime.now(timezone.utc).timestamp() * 1000
    )  # pragma: no cover


class RawJob(BaseSQL):
    __tablename__ = "beadq_jobs"
    __table_args__ = (
        Index("ix_beadq_jobs_queue_status_scheduled", "queue", "status", "scheduled_at"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    queue: Mapped[str] = mapped_column(String, nullable=False, index=True)
    payload: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default="pending", index=True
    )
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    backoff_type: Mapped[str] = mapped_column(
        String(30), nullable=False, default="exponential"
    )
    backoff_base: Mapped[int] = mapped_column(
        Integer, nullable=False, default=2000
    )
    backoff_max_delay: Mapped[Optional[int]] = mapped_column(
        Integer, nullable=True
    )
    enqueued_at: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=now_ms
    )
    scheduled_at: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=now_ms
    )
    leased_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    lease_expires_at: Mapped[Optional[int]] = mapped_column(
        BigInteger, nullable=True, index=True
    )
    leased_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    lease_token: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    error_trace: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    finished_at: Mapped[Optional[int]] = mapped_column(
        BigInteger, nullable=True
    )

    @staticmethod
    def from_enqueue_params(enqueue_params: EnqueueParams) -> "RawJob":
        return RawJob(
            id=enqueue_params.job_id,
            queue=enqueue_params.queue,
            payload=enqueue_params.serialized_payload,
            status="pending",
            attempt=1,
            max_attempts=enqueue_params.max_attempts,
            backoff_type=enqueue_params.backoff_type,
            backoff_base=enqueue_params.backoff_base,
            backoff_max_delay=enqueue_params.backoff_max_delay,
            enqueued_at=enqueue_params.enqueued_at_ms,
            scheduled_at=enqueue_params.scheduled_at_ms,
        )
