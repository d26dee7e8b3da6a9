"""Typed job payloads, one closed schema per queue.

Payloads travel through the broker as JSON objects with the camelCase keys
used by the producers (``projectId``, ``insightIds``). In Python they are
pydantic models, and the ``PayloadRegistry`` decides which model belongs to
which queue. The registry is consulted when a job is enqueued and again when
a stage picks the job up, so a malformed payload never reaches a handler.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from beadq.exceptions import PayloadValidationError


class QueueName:
    SCRAPE_PROJECT = "scrape-project"
    GENERATE_POSTS = "generate-posts"


ScrapeSource = Literal["twitter", "farcaster"]

SCRAPE_SOURCES: tuple[str, ...] = ("twitter", "farcaster")


class ScrapeProjectJob(BaseModel):
    """Scrape the given sources for new insights about a project."""

    model_config = ConfigDict(populate_by_name=True)

    project_id: str = Field(alias="projectId", min_length=1)
    sources: list[ScrapeSource] = Field(
        default_factory=lambda: list(SCRAPE_SOURCES)
    )


class GeneratePostsJob(BaseModel):
    """Generate posts for a project from freshly stored insights."""

    model_config = ConfigDict(populate_by_name=True)

    project_id: str = Field(alias="projectId", min_length=1)
    insight_ids: list[str] = Field(default_factory=list, alias="insightIds")


def describe_validation_error(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in error['loc']) or 'payload'}: {error['msg']}"
        for error in exc.errors()
    )


class PayloadRegistry:
    """Maps queue names to their payload models.

    Examples:
        >>> registry = PayloadRegistry()
        >>> registry.register("scrape-project", ScrapeProjectJob)
        >>> registry.dump(
        ...     "scrape-project",
        ...     ScrapeProjectJob(project_id="p1", sources=["twitter"]),
        ... )
        {'projectId': 'p1', 'sources': ['twitter']}
    """

    def __init__(self, types: dict[str, type[BaseModel]] | None = None) -> None:
        self._types: dict[str, type[BaseModel]] = {}
        for queue, payload_type in (types or {}).items():
            self.register(queue, payload_type)

    def register(self, queue: str, payload_type: type[BaseModel]) -> None:
        if not isinstance(queue, str) or not queue:
            raise ValueError("Queue name must be a non-empty string")
        if not isinstance(payload_type, type) or not issubclass(payload_type, BaseModel):
            raise ValueError(f"Payload type of {queue!r} must be a pydantic model")
        self._types[queue] = payload_type

    def __contains__(self, queue: str) -> bool:
        return queue in self._types

    @property
    def queues(self) -> list[str]:
        return list(self._types)

    def payload_type(self, queue: str) -> type[BaseModel]:
        try:
            return self._types[queue]
        except KeyError:
            raise PayloadValidationError(f"Unknown queue: {queue!r}") from None

    def dump(self, queue: str, payload: Any) -> dict[str, Any]:
        """Validate a payload for ``queue`` and return its JSON form.

        Accepts either an instance of the registered model or a dict in
        wire format.

        Raises:
            PayloadValidationError: For unknown queues, payloads of another
                type and dicts that do not match the schema.
        """
        payload_type = self.payload_type(queue)
        if isinstance(payload, dict):
            payload = self.load(queue, payload)
        elif not isinstance(payload, payload_type):
            raise PayloadValidationError(
                f"Queue {queue!r} expects {payload_type.__name__}, "
                f"got {type(payload).__name__}"
            )
        return payload.model_dump(mode="json", by_alias=True)

    def load(self, queue: str, data: Any) -> BaseModel:
        """Validate a JSON payload and turn it into the queue's model."""
        payload_type = self.payload_type(queue)
        try:
            return payload_type.model_validate(data)
        except ValidationError as exc:
            raise PayloadValidationError(
                f"Invalid {payload_type.__name__} payload: "
                f"{describe_validation_error(exc)}"
            ) from exc


def default_registry() -> PayloadRegistry:
    return PayloadRegistry(
        {
            QueueName.SCRAPE_PROJECT: ScrapeProjectJob,
            QueueName.GENERATE_POSTS: GeneratePostsJob,
        }
    )
