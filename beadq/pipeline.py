import inspect
import logging
from dataclasses import dataclass, field
from graphlib import CycleError, TopologicalSorter
from typing import Any, Callable, Awaitable

from beadq.core.base import BaseBroker
from beadq.events import EventBus
from beadq.exceptions import PayloadValidationError
from beadq.models import Job
from beadq.models.payloads import PayloadRegistry
from beadq.worker import WorkerPool, CompletedHook, FailedHook


logger = logging.getLogger(__name__)


StageHandler = Callable[[Any, "StageContext"], Awaitable[Any]]
Derive = Callable[[Any, Any], Any]


@dataclass
class Stage:
    """A worker role bound to one queue."""

    queue: str
    handler: StageHandler
    concurrency: int = 1
    lease_timeout: int | None = None
    name: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.concurrency, int) or self.concurrency < 1:
            raise ValueError(
                f"Concurrency of stage {self.queue!r} must be a positive integer"
            )
        self.name = self.name or self.queue


@dataclass(frozen=True)
class Edge:
    """Feeds the result of a successful upstream job into a downstream queue.

    ``derive`` receives the upstream payload and the handler result and
    returns the downstream payload, a list of payloads, or None to skip.
    """

    upstream: str
    downstream: str
    derive: Derive


@dataclass
class StageContext:
    """Handle given to stage handlers next to their payload.

    Jobs and events requested through the context are buffered. They are
    enqueued and published only after the handler succeeded, right before
    the job is acked. A failed attempt discards them.
    """

    job: Job
    pipeline: "Pipeline"
    jobs: list[tuple[str, Any, dict[str, Any]]] = field(default_factory=list)
    events: list[tuple[str, Any]] = field(default_factory=list)

    def enqueue(self, queue: str, payload: Any, **options: Any) -> None:
        # Fail fast inside the handler, not after it already succeeded
        self.pipeline.registry.dump(queue, payload)
        self.jobs.append((queue, payload, options))

    def publish(self, topic: str, payload: Any = None) -> None:
        self.events.append((topic, payload))

    def fail(self, reason: str | BaseException | None = None, retry: bool = True) -> None:
        self.job.fail(reason, retry=retry)

    async def flush(self) -> tuple[list[Job], int]:
        enqueued = []
        for queue, payload, options in self.jobs:
            enqueued.append(
                await self.pipeline.broker.enqueue(queue, payload, **options)
            )
        delivered = 0
        for topic, payload in self.events:
            delivered += await self.pipeline.bus.publish(topic, payload)
        self.jobs.clear()
        self.events.clear()
        return enqueued, delivered


class Pipeline:
    """Stages connected by edges into a directed acyclic graph.

    Each stage consumes one queue. When a job of a stage succeeds, every
    outgoing edge derives downstream payloads from it, and they are enqueued
    before the job is acked. A crash between the two can deliver the
    downstream job twice, so downstream handlers must tolerate duplicates.

    Examples:

        >>> pipeline = Pipeline(broker, bus)
        >>> @pipeline.stage("scrape-project", concurrency=2)
        ... async def scrape(payload, ctx):
        ...     return await scraper.scrape(payload.project_id, payload.sources)
        >>> pipeline.connect(
        ...     "scrape-project",
        ...     "generate-posts",
        ...     lambda payload, result: GeneratePostsJob(
        ...         project_id=payload.project_id, insight_ids=result
        ...     ),
        ... )
        >>> await pipeline.submit("scrape-project", ScrapeProjectJob(project_id="p1"))

    Args:
        broker (BaseBroker): Broker used to enqueue and lease jobs.
        bus (EventBus | None): Event bus for stage notifications.
        registry (PayloadRegistry | None): Payload schemas. Defaults to the
            broker's registry.
    """

    def __init__(
        self,
        broker: BaseBroker,
        bus: EventBus | None = None,
        registry: PayloadRegistry | None = None,
    ) -> None:
        self.broker = broker
        self.bus = bus or EventBus()
        self.registry = registry or broker.registry
        self.stages: dict[str, Stage] = {}
        self.edges: list[Edge] = []

    def add_stage(
        self,
        queue: str,
        handler: StageHandler,
        concurrency: int = 1,
        lease_timeout: int | None = None,
        name: str | None = None,
    ) -> Stage:
        if queue not in self.registry:
            raise PayloadValidationError(f"Unknown queue: {queue!r}")
        if queue in self.stages:
            raise ValueError(f"Stage for queue {queue!r} is already registered")

        stage = Stage(
            queue=queue,
            handler=handler,
            concurrency=concurrency,
            lease_timeout=lease_timeout,
            name=name,
        )
        self.stages[queue] = stage
        logger.debug(f"Registered stage {stage.name!r} on queue {queue!r}")
        return stage

    def stage(
        self,
        queue: str,
        concurrency: int = 1,
        lease_timeout: int | None = None,
        name: str | None = None,
    ) -> Callable[[StageHandler], StageHandler]:
        def decorator(handler: StageHandler) -> StageHandler:
            self.add_stage(
                queue,
                handler,
                concurrency=concurrency,
                lease_timeout=lease_timeout,
                name=name,
            )
            return handler

        return decorator

    def connect(self, upstream: str, downstream: str, derive: Derive) -> Edge:
        """Add an edge from ``upstream`` to ``downstream``.

        Raises:
            ValueError: If ``upstream`` has no stage, ``downstream`` has no
                payload schema, or the edge would close a cycle.
        """
        if upstream not in self.stages:
            raise ValueError(f"No stage registered for queue {upstream!r}")
        if downstream not in self.registry:
            raise PayloadValidationError(f"Unknown queue: {downstream!r}")

        edge = Edge(upstream=upstream, downstream=downstream, derive=derive)
        self.edges.append(edge)
        try:
            self.topological_order()
        except ValueError:
            self.edges.remove(edge)
            raise
        return edge

    def outgoing(self, queue: str) -> list[Edge]:
        return [edge for edge in self.edges if edge.upstream == queue]

    def topological_order(self) -> list[str]:
        """Queues ordered so that every upstream comes before its downstreams."""
        sorter: TopologicalSorter = TopologicalSorter()
        for queue in self.stages:
            sorter.add(queue)
        for edge in self.edges:
            sorter.add(edge.downstream, edge.upstream)
        try:
            return list(sorter.static_order())
        except CycleError as exc:
            cycle = " -> ".join(exc.args[1])
            raise ValueError(f"Pipeline contains a cycle: {cycle}") from exc

    def validate(self) -> None:
        """Check that the graph is acyclic.

        Edges may end at a queue that has no stage in this process, for
        example when another service consumes it.
        """
        self.topological_order()
        for edge in self.edges:
            if edge.downstream not in self.stages:
                logger.warning(
                    f"Edge {edge.upstream!r} -> {edge.downstream!r} leads to "
                    f"a queue without a local stage"
                )

    async def submit(self, queue: str, payload: Any, **options: Any) -> Job:
        """Enqueue a job at the head of the pipeline or at any stage."""
        if queue not in self.stages:
            raise ValueError(f"No stage registered for queue {queue!r}")
        return await self.broker.enqueue(queue, payload, **options)

    async def execute(self, job: Job) -> Any:
        """Run the stage of a leased job and flush its downstream work.

        Meant to be used as a ``WorkerPool`` handler, so that a raised
        exception or ``job.fail()`` turns into a nack and a clean return
        into an ack. Nothing is flushed unless the job is still leased under
        its token when the handler returns.
        """
        stage = self.stages[job.queue]
        try:
            payload = self.registry.load(job.queue, job.payload)
        except PayloadValidationError as exc:
            logger.error(
                f"Job {job.id} in {job.queue!r} has an invalid payload, "
                f"dead-lettering it: {exc}"
            )
            job.fail(exc, retry=False)
            return None

        ctx = StageContext(job=job, pipeline=self)
        result = stage.handler(payload, ctx)
        if inspect.isawaitable(result):
            result = await result

        if job._failed:
            logger.debug(
                f"Stage {stage.name!r} failed job {job.id}, discarding "
                f"{len(ctx.jobs)} job(s) and {len(ctx.events)} event(s)"
            )
            return result

        # Only the current lease holder may produce downstream work
        if not await self.broker.holds_lease(job):
            logger.warning(
                f"Job {job.id} in {job.queue!r} lost its lease while stage "
                f"{stage.name!r} was running, discarding {len(ctx.jobs)} "
                f"job(s) and {len(ctx.events)} event(s)"
            )
            return result

        for edge in self.outgoing(job.queue):
            derived = edge.derive(payload, result)
            if derived is None:
                continue
            if not isinstance(derived, (list, tuple)):
                derived = [derived]
            for downstream_payload in derived:
                ctx.enqueue(edge.downstream, downstream_payload)

        enqueued, _ = await ctx.flush()
        if enqueued:
            logger.debug(
                f"Job {job.id} in {job.queue!r} produced "
                f"{len(enqueued)} downstream job(s)"
            )
        return result

    def build_pools(
        self,
        poll_interval: int = 1000,
        reconnect_delay: int = 5000,
        concurrency: dict[str, int] | None = None,
        on_completed: CompletedHook | None = None,
        on_failed: FailedHook | None = None,
    ) -> list[WorkerPool]:
        """Create one worker pool per stage, in topological order.

        Args:
            poll_interval (int): Milliseconds between polls of an empty queue.
            reconnect_delay (int): Milliseconds to wait after a broker outage.
            concurrency (dict[str, int] | None): Overrides the concurrency of
                the stages by queue name.
            on_completed (CompletedHook | None): Passed to every pool.
            on_failed (FailedHook | None): Passed to every pool.
        """
        self.validate()
        overrides = concurrency or {}
        return [
            WorkerPool(
                broker=self.broker,
                queue=queue,
                handler=self.execute,
                concurrency=overrides.get(queue, self.stages[queue].concurrency),
                lease_timeout=self.stages[queue].lease_timeout,
                poll_interval=poll_interval,
                reconnect_delay=reconnect_delay,
                name=self.stages[queue].name,
                on_completed=on_completed,
                on_failed=on_failed,
            )
            for queue in self.topological_order()
            if queue in self.stages
        ]
