"""Runtime configuration loaded from ``BEADQ_*`` environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from sqlalchemy.engine.url import URL, make_url

from beadq.models.payloads import QueueName
from beadq.models.queue_options import QueueOptions
from beadq.retry import (
    BACKOFF_TYPES,
    DEFAULT_BACKOFF_BASE,
    DEFAULT_MAX_ATTEMPTS,
    BackoffPolicy,
)


@dataclass(slots=True)
class BrokerSettings:
    """Where the job table lives."""

    url: str | None = None
    driver: str = "postgresql+asyncpg"
    host: str = "localhost"
    port: int = 5432
    user: str | None = None
    password: str | None = None
    database: str | None = None

    def sqlalchemy_url(self) -> URL:
        """Return the explicit URL if one is set, otherwise build it from parts."""
        if self.url:
            return make_url(self.url)
        return URL.create(
            drivername=self.driver,
            username=self.user,
            password=self.password,
            host=self.host,
            port=self.port,
            database=self.database,
        )


@dataclass(slots=True)
class JobSettings:
    """Delivery settings shared by every queue."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_type: str = "exponential"
    backoff_base_ms: int = DEFAULT_BACKOFF_BASE
    backoff_max_ms: int | None = None
    keep_completed: int = 100
    keep_failed: int = 500
    lease_timeout_ms: int = 30_000


@dataclass(slots=True)
class WorkerSettings:
    """Worker pool sizing and timing."""

    scrape_concurrency: int = 2
    postgen_concurrency: int = 1
    poll_interval_ms: int = 1_000
    grace_timeout_seconds: float = 30.0
    reconnect_delay_ms: int = 5_000

    def concurrency(self) -> dict[str, int]:
        return {
            QueueName.SCRAPE_PROJECT: self.scrape_concurrency,
            QueueName.GENERATE_POSTS: self.postgen_concurrency,
        }


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    broker: BrokerSettings = field(default_factory=BrokerSettings)
    jobs: JobSettings = field(default_factory=JobSettings)
    workers: WorkerSettings = field(default_factory=WorkerSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from the environment, falling back to defaults."""

        return cls(
            broker=BrokerSettings(
                url=os.getenv("BEADQ_BROKER_URL") or None,
                driver=os.getenv("BEADQ_BROKER_DRIVER", "postgresql+asyncpg"),
                host=os.getenv("BEADQ_BROKER_HOST", "localhost"),
                port=_env_int("BEADQ_BROKER_PORT", 5432),
                user=os.getenv("BEADQ_BROKER_USER") or None,
                password=os.getenv("BEADQ_BROKER_PASSWORD") or None,
                database=os.getenv("BEADQ_BROKER_DATABASE") or None,
            ),
            jobs=JobSettings(
                max_attempts=_env_int("BEADQ_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
                backoff_type=os.getenv("BEADQ_BACKOFF_TYPE", "exponential"),
                backoff_base_ms=_env_int("BEADQ_BACKOFF_BASE_MS", DEFAULT_BACKOFF_BASE),
                backoff_max_ms=_env_optional_int("BEADQ_BACKOFF_MAX_MS"),
                keep_completed=_env_int("BEADQ_KEEP_COMPLETED", 100),
                keep_failed=_env_int("BEADQ_KEEP_FAILED", 500),
                lease_timeout_ms=_env_int("BEADQ_LEASE_TIMEOUT_MS", 30_000),
            ),
            workers=WorkerSettings(
                scrape_concurrency=_env_int("BEADQ_SCRAPE_CONCURRENCY", 2),
                postgen_concurrency=_env_int("BEADQ_POSTGEN_CONCURRENCY", 1),
                poll_interval_ms=_env_int("BEADQ_POLL_INTERVAL_MS", 1_000),
                grace_timeout_seconds=_env_float("BEADQ_GRACE_TIMEOUT_SECONDS", 30.0),
                reconnect_delay_ms=_env_int("BEADQ_RECONNECT_DELAY_MS", 5_000),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error naming the first invalid variable."""

        if self.jobs.max_attempts < 1:
            raise ValueError("BEADQ_MAX_ATTEMPTS must be >= 1.")
        if self.jobs.backoff_type not in BACKOFF_TYPES:
            raise ValueError(
                f"BEADQ_BACKOFF_TYPE must be one of: {', '.join(BACKOFF_TYPES)}."
            )
        if self.jobs.backoff_base_ms < 0:
            raise ValueError("BEADQ_BACKOFF_BASE_MS must be >= 0.")
        if self.jobs.backoff_max_ms is not None and self.jobs.backoff_max_ms < 0:
            raise ValueError("BEADQ_BACKOFF_MAX_MS must be >= 0.")
        if self.jobs.keep_completed < 0:
            raise ValueError("BEADQ_KEEP_COMPLETED must be >= 0.")
        if self.jobs.keep_failed < 0:
            raise ValueError("BEADQ_KEEP_FAILED must be >= 0.")
        if self.jobs.lease_timeout_ms <= 0:
            raise ValueError("BEADQ_LEASE_TIMEOUT_MS must be > 0.")
        if self.workers.scrape_concurrency < 1:
            raise ValueError("BEADQ_SCRAPE_CONCURRENCY must be >= 1.")
        if self.workers.postgen_concurrency < 1:
            raise ValueError("BEADQ_POSTGEN_CONCURRENCY must be >= 1.")
        if self.workers.poll_interval_ms <= 0:
            raise ValueError("BEADQ_POLL_INTERVAL_MS must be > 0.")
        if self.workers.grace_timeout_seconds < 0:
            raise ValueError("BEADQ_GRACE_TIMEOUT_SECONDS must be >= 0.")
        if self.workers.reconnect_delay_ms < 0:
            raise ValueError("BEADQ_RECONNECT_DELAY_MS must be >= 0.")
        if not self.broker.url and not self.broker.driver:
            raise ValueError("Set BEADQ_BROKER_URL or BEADQ_BROKER_DRIVER.")

    def backoff(self) -> BackoffPolicy:
        return BackoffPolicy(
            type=self.jobs.backoff_type,  # type: ignore[arg-type]
            base=self.jobs.backoff_base_ms,
            max_delay=self.jobs.backoff_max_ms,
        )

    def queue_options(self) -> QueueOptions:
        """Delivery settings applied to every queue."""

        return QueueOptions(
            max_attempts=self.jobs.max_attempts,
            backoff=self.backoff(),
            lease_timeout=self.jobs.lease_timeout_ms,
            keep_completed=self.jobs.keep_completed,
            keep_failed=self.jobs.keep_failed,
        )


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}.") from None


def _env_optional_int(name: str) -> int | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    return _env_int(name, 0)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}.") from None
