"""The content pipeline: scrape a project, then generate posts from it.

Scraping social sources and generating posts are done by collaborators
that implement the ``Scraper`` and ``PostGenerator`` protocols. This module
only wires them into stages and decides what flows between them.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Iterable, Protocol

from beadq.config import Settings
from beadq.core.base import BaseBroker
from beadq.events import EventBus, Event, INSIGHT_NEW, POST_GENERATED, SCRAPE_REQUESTED
from beadq.exceptions import PayloadValidationError
from beadq.models.payloads import (
    QueueName,
    SCRAPE_SOURCES,
    GeneratePostsJob,
    ScrapeProjectJob,
)
from beadq.pipeline import Pipeline, StageContext


logger = logging.getLogger(__name__)


@dataclass
class Insight:
    id: str
    project_id: str
    source: str
    content: str
    url: str | None = None
    author: str | None = None
    created_at: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class Scraper(Protocol):
    async def scrape(self, project_id: str, sources: list[str]) -> list[Insight]:
        """Collect and store new insights of a project, return them."""
        ...


class PostGenerator(Protocol):
    async def generate(self, project_id: str, insight_ids: list[str]) -> int:
        """Generate and store posts from insights, return how many."""
        ...


@dataclass
class ScrapeResult:
    insight_ids: list[str] = field(default_factory=list)


def derive_generate_posts(
    payload: ScrapeProjectJob, result: ScrapeResult
) -> GeneratePostsJob:
    # One job per successful scrape, even when nothing new was found
    return GeneratePostsJob(
        project_id=payload.project_id,
        insight_ids=list(result.insight_ids),
    )


def build_content_pipeline(
    broker: BaseBroker,
    bus: EventBus,
    scraper: Scraper,
    generator: PostGenerator,
    settings: Settings | None = None,
) -> Pipeline:
    """Build the ``scrape-project`` -> ``generate-posts`` pipeline.

    The scrape stage publishes ``insight.new`` with the scraped insights and
    hands their ids to the post generation stage, which publishes
    ``post.generated`` with the number of posts it created.

    Args:
        broker (BaseBroker): Broker used by both stages.
        bus (EventBus): Bus for the ``insight.new`` and ``post.generated``
            events.
        scraper (Scraper): Scraping collaborator.
        generator (PostGenerator): Post generation collaborator.
        settings (Settings | None): Stage concurrency. Defaults to 2 scrape
            workers and 1 post generation worker.

    Returns:
        Pipeline: The pipeline, ready for ``build_pools()``.
    """
    settings = settings or Settings()
    pipeline = Pipeline(broker, bus)

    async def scrape_project(
        payload: ScrapeProjectJob, ctx: StageContext
    ) -> ScrapeResult:
        insights = await scraper.scrape(payload.project_id, list(payload.sources))
        logger.info(
            f"Scraped {len(insights)} insight(s) for project "
            f"{payload.project_id} (attempt {ctx.job.attempt})"
        )
        ctx.publish(
            INSIGHT_NEW,
            {
                "project": payload.project_id,
                "data": [insight.to_dict() for insight in insights],
            },
        )
        return ScrapeResult(insight_ids=[insight.id for insight in insights])

    async def generate_posts(payload: GeneratePostsJob, ctx: StageContext) -> int:
        count = await generator.generate(payload.project_id, list(payload.insight_ids))
        logger.info(f"Generated {count} post(s) for project {payload.project_id}")
        ctx.publish(POST_GENERATED, {"project": payload.project_id, "count": count})
        return count

    pipeline.add_stage(
        QueueName.SCRAPE_PROJECT,
        scrape_project,
        concurrency=settings.workers.scrape_concurrency,
        name="scrape",
    )
    pipeline.add_stage(
        QueueName.GENERATE_POSTS,
        generate_posts,
        concurrency=settings.workers.postgen_concurrency,
        name="postgen",
    )
    pipeline.connect(
        QueueName.SCRAPE_PROJECT,
        QueueName.GENERATE_POSTS,
        derive_generate_posts,
    )
    return pipeline


def forward_scrape_requests(
    bus: EventBus,
    pipeline: Pipeline,
    sources: Iterable[str] = SCRAPE_SOURCES,
) -> Callable[[], None]:
    """Enqueue a ``ScrapeProjectJob`` for every ``scrape.requested`` event.

    Returns:
        Callable[[], None]: Stops forwarding when called.
    """
    sources = list(sources)

    async def on_scrape_requested(event: Event) -> None:
        project = (event.payload or {}).get("project")
        if not project:
            logger.warning(f"Ignoring {SCRAPE_REQUESTED!r} event without a project")
            return
        try:
            job = await pipeline.submit(
                QueueName.SCRAPE_PROJECT,
                {"projectId": project, "sources": list(sources)},
            )
        except PayloadValidationError as exc:
            logger.warning(f"Ignoring invalid {SCRAPE_REQUESTED!r} event: {exc}")
            return
        logger.info(f"Scrape of project {project} requested as job {job.id}")

    return bus.subscribe(SCRAPE_REQUESTED, on_scrape_requested)
