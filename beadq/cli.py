"""Command line interface of beadq."""

import asyncio
import importlib
import logging
import sys
from typing import Any, Awaitable, Callable

import click

from beadq.config import Settings
from beadq.core import SQLBroker
from beadq.events import EventBus
from beadq.exceptions import BrokerUnavailable
from beadq.pipeline import Pipeline
from beadq.runner import PipelineRunner, EXIT_BROKER_UNAVAILABLE


logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


AppFactory = Callable[[SQLBroker, EventBus, Settings], Pipeline]


def load_app(path: str) -> AppFactory:
    """Import ``module:attribute`` and return the pipeline factory."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise click.BadParameter(
            f"Expected 'module:factory', got {path!r}", param_hint="APP"
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise click.BadParameter(
            f"Cannot import module {module_name!r}: {exc}", param_hint="APP"
        ) from exc
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise click.BadParameter(
            f"Module {module_name!r} has no callable {attr!r}", param_hint="APP"
        )
    return factory


def make_broker(settings: Settings) -> SQLBroker:
    return SQLBroker(
        settings.broker.sqlalchemy_url(),
        default_options=settings.queue_options(),
    )


def run_with_broker(
    settings: Settings, fn: Callable[[SQLBroker], Awaitable[Any]]
) -> Any:
    """Run ``fn`` against a fresh broker and always dispose of it."""

    async def main() -> Any:
        broker = make_broker(settings)
        try:
            return await fn(broker)
        finally:
            await broker.close()

    try:
        return asyncio.run(main())
    except BrokerUnavailable as exc:
        click.echo(f"Broker unavailable: {exc}", err=True)
        sys.exit(EXIT_BROKER_UNAVAILABLE)


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Logging verbosity.",
)
@click.option(
    "--broker-url",
    default=None,
    help="SQLAlchemy URL of the broker database. Overrides BEADQ_BROKER_URL.",
)
@click.pass_context
def cli(ctx: click.Context, log_level: str, broker_url: str | None) -> None:
    """beadq - durable job pipeline workers"""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        settings = Settings.from_env()
        if broker_url:
            settings.broker.url = broker_url
        settings.validate()
    except ValueError as exc:
        raise click.UsageError(str(exc)) from exc
    ctx.obj = settings


@cli.command()
@click.argument("app")
@click.pass_obj
def run(settings: Settings, app: str) -> None:
    """Run the worker pools of a pipeline until SIGTERM or SIGINT.

    APP is 'module:factory'. The factory is called with the broker, the
    event bus and the settings and returns the Pipeline to run.

    Example:
        beadq run myservice.workers:build_pipeline
    """
    factory = load_app(app)
    broker = make_broker(settings)
    bus = EventBus()
    pipeline = factory(broker, bus, settings)
    if not isinstance(pipeline, Pipeline):
        raise click.BadParameter(
            f"{app} returned {type(pipeline).__name__}, expected a Pipeline",
            param_hint="APP",
        )

    runner = PipelineRunner(
        pipeline,
        grace_timeout=settings.workers.grace_timeout_seconds,
        poll_interval=settings.workers.poll_interval_ms,
        reconnect_delay=settings.workers.reconnect_delay_ms,
    )
    sys.exit(asyncio.run(runner.run()))


@cli.command("init-db")
@click.pass_obj
def init_db(settings: Settings) -> None:
    """Create the jobs table if it does not exist."""
    run_with_broker(settings, lambda broker: broker.create_all())
    click.echo("Jobs table is ready")


@cli.command()
@click.pass_obj
def ping(settings: Settings) -> None:
    """Check that the broker is reachable."""
    if run_with_broker(settings, lambda broker: broker.ping()):
        click.echo("Broker is reachable")
        return
    click.echo("Broker is unreachable", err=True)
    sys.exit(EXIT_BROKER_UNAVAILABLE)


@cli.command()
@click.argument("queues", nargs=-1)
@click.pass_obj
def stats(settings: Settings, queues: tuple[str, ...]) -> None:
    """Show job counts by status for QUEUES (all queues by default)."""
    result = run_with_broker(settings, lambda broker: broker.stats(*queues))
    if not result:
        click.echo("No jobs")
        return

    columns = ("queue", "total", "pending", "leased", "completed", "retrying", "failed")
    click.echo("  ".join(f"{c:>10}" for c in columns))
    for name in sorted(result):
        s = result[name]
        values = (name, s.total, s.pending, s.leased, s.completed, s.retrying, s.failed)
        click.echo("  ".join(f"{v:>10}" for v in values))


@cli.command("dead-letters")
@click.argument("queue")
@click.option("--limit", type=click.IntRange(min=1), default=20, show_default=True)
@click.pass_obj
def dead_letters(settings: Settings, queue: str, limit: int) -> None:
    """List the failed jobs of QUEUE, latest first."""
    jobs = run_with_broker(settings, lambda broker: broker.dead_letters(queue))
    if not jobs:
        click.echo(f"No dead-lettered jobs in {queue}")
        return
    for job in jobs[:limit]:
        finished = job.finished_at.isoformat() if job.finished_at else "-"
        click.echo(f"{job.id}  attempt={job.attempt}  finished={finished}  error={job.error}")
