import pytest

from beadq.config import Settings
from beadq.retry import BackoffPolicy


ENV_VARS = [
    "BEADQ_BROKER_URL",
    "BEADQ_BROKER_DRIVER",
    "BEADQ_BROKER_HOST",
    "BEADQ_BROKER_PORT",
    "BEADQ_BROKER_USER",
    "BEADQ_BROKER_PASSWORD",
    "BEADQ_BROKER_DATABASE",
    "BEADQ_MAX_ATTEMPTS",
    "BEADQ_BACKOFF_TYPE",
    "BEADQ_BACKOFF_BASE_MS",
    "BEADQ_BACKOFF_MAX_MS",
    "BEADQ_KEEP_COMPLETED",
    "BEADQ_KEEP_FAILED",
    "BEADQ_LEASE_TIMEOUT_MS",
    "BEADQ_SCRAPE_CONCURRENCY",
    "BEADQ_POSTGEN_CONCURRENCY",
    "BEADQ_POLL_INTERVAL_MS",
    "BEADQ_GRACE_TIMEOUT_SECONDS",
    "BEADQ_RECONNECT_DELAY_MS",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_defaults(clean_env):
    settings = Settings.from_env()
    settings.validate()

    assert settings.jobs.max_attempts == 3
    assert settings.jobs.backoff_type == "exponential"
    assert settings.jobs.backoff_base_ms == 2000
    assert settings.jobs.backoff_max_ms is None
    assert settings.jobs.keep_completed == 100
    assert settings.jobs.keep_failed == 500
    assert settings.workers.scrape_concurrency == 2
    assert settings.workers.postgen_concurrency == 1
    assert settings.workers.grace_timeout_seconds == 30.0
    assert settings.workers.concurrency() == {"scrape-project": 2, "generate-posts": 1}

    url = settings.broker.sqlalchemy_url()
    assert url.drivername == "postgresql+asyncpg"
    assert url.host == "localhost"
    assert url.port == 5432


def test_from_env(clean_env):
    clean_env.setenv("BEADQ_BROKER_HOST", "db.internal")
    clean_env.setenv("BEADQ_BROKER_PORT", "6543")
    clean_env.setenv("BEADQ_BROKER_USER", "beadq")
    clean_env.setenv("BEADQ_BROKER_PASSWORD", "secret")
    clean_env.setenv("BEADQ_BROKER_DATABASE", "jobs")
    clean_env.setenv("BEADQ_MAX_ATTEMPTS", "5")
    clean_env.setenv("BEADQ_BACKOFF_TYPE", "fixed")
    clean_env.setenv("BEADQ_BACKOFF_BASE_MS", "500")
    clean_env.setenv("BEADQ_BACKOFF_MAX_MS", "1500")
    clean_env.setenv("BEADQ_KEEP_COMPLETED", "10")
    clean_env.setenv("BEADQ_KEEP_FAILED", "20")
    clean_env.setenv("BEADQ_LEASE_TIMEOUT_MS", "60000")
    clean_env.setenv("BEADQ_SCRAPE_CONCURRENCY", "4")
    clean_env.setenv("BEADQ_GRACE_TIMEOUT_SECONDS", "2.5")

    settings = Settings.from_env()
    settings.validate()

    url = settings.broker.sqlalchemy_url()
    assert url.host == "db.internal"
    assert url.port == 6543
    assert url.username == "beadq"
    assert url.password == "secret"
    assert url.database == "jobs"

    options = settings.queue_options()
    assert options.max_attempts == 5
    assert options.backoff == BackoffPolicy(type="fixed", base=500, max_delay=1500)
    assert options.keep_completed == 10
    assert options.keep_failed == 20
    assert options.lease_timeout == 60000
    assert settings.workers.scrape_concurrency == 4
    assert settings.workers.grace_timeout_seconds == 2.5


def test_broker_url_overrides_parts(clean_env):
    clean_env.setenv("BEADQ_BROKER_URL", "sqlite+aiosqlite:///jobs.db")
    clean_env.setenv("BEADQ_BROKER_HOST", "ignored")

    url = Settings.from_env().broker.sqlalchemy_url()
    assert url.drivername == "sqlite+aiosqlite"
    assert url.database == "jobs.db"


def test_invalid_number(clean_env):
    clean_env.setenv("BEADQ_MAX_ATTEMPTS", "three")

    with pytest.raises(ValueError, match="BEADQ_MAX_ATTEMPTS"):
        Settings.from_env()


@pytest.mark.parametrize(
    "name, value",
    [
        ("BEADQ_MAX_ATTEMPTS", "0"),
        ("BEADQ_BACKOFF_TYPE", "linear"),
        ("BEADQ_BACKOFF_BASE_MS", "-1"),
        ("BEADQ_KEEP_FAILED", "-5"),
        ("BEADQ_LEASE_TIMEOUT_MS", "0"),
        ("BEADQ_SCRAPE_CONCURRENCY", "0"),
        ("BEADQ_POSTGEN_CONCURRENCY", "0"),
        ("BEADQ_POLL_INTERVAL_MS", "0"),
    ],
)
def test_validate(clean_env, name, value):
    clean_env.setenv(name, value)

    with pytest.raises(ValueError, match=name):
        Settings.from_env().validate()
