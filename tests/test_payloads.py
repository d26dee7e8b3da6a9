import pytest
from pydantic import BaseModel, ValidationError

from beadq import (
    GeneratePostsJob,
    PayloadRegistry,
    PayloadValidationError,
    ScrapeProjectJob,
)
from beadq.models import default_registry


def test_wire_format():
    registry = default_registry()

    assert registry.dump(
        "scrape-project", ScrapeProjectJob(project_id="p1", sources=["farcaster"])
    ) == {"projectId": "p1", "sources": ["farcaster"]}
    assert registry.dump(
        "generate-posts", GeneratePostsJob(project_id="p1", insight_ids=["i1"])
    ) == {"projectId": "p1", "insightIds": ["i1"]}
    assert registry.load(
        "scrape-project", {"projectId": "p1", "sources": []}
    ) == ScrapeProjectJob(project_id="p1", sources=[])


def test_construct_by_alias():
    assert ScrapeProjectJob(projectId="p1") == ScrapeProjectJob(project_id="p1")
    assert GeneratePostsJob(projectId="p1", insightIds=["i1"]).insight_ids == ["i1"]


def test_default_sources():
    assert ScrapeProjectJob(project_id="p1").sources == ["twitter", "farcaster"]
    assert GeneratePostsJob(project_id="p1").insight_ids == []


def test_unknown_source_is_rejected_on_construction():
    with pytest.raises(ValidationError):
        ScrapeProjectJob(project_id="p1", sources=["instagram"])


@pytest.mark.parametrize(
    "data",
    [
        None,
        [],
        {"sources": ["twitter"]},
        {"projectId": "", "sources": ["twitter"]},
        {"projectId": "p1", "sources": "twitter"},
        {"projectId": "p1", "sources": ["instagram"]},
    ],
)
def test_invalid_scrape_payload(data):
    with pytest.raises(PayloadValidationError):
        default_registry().load("scrape-project", data)


def test_invalid_generate_payload():
    registry = default_registry()

    with pytest.raises(PayloadValidationError, match="insightIds"):
        registry.load("generate-posts", {"projectId": "p1", "insightIds": [1, 2]})
    with pytest.raises(PayloadValidationError, match="projectId"):
        registry.dump("generate-posts", {"insightIds": ["i1"]})


def test_validation_error_is_chained():
    with pytest.raises(PayloadValidationError) as exc_info:
        default_registry().load("scrape-project", {"projectId": 1})

    assert isinstance(exc_info.value.__cause__, ValidationError)
    assert isinstance(exc_info.value, ValueError)


def test_registry():
    registry = default_registry()

    assert registry.queues == ["scrape-project", "generate-posts"]
    assert "scrape-project" in registry
    assert "default" not in registry

    data = registry.dump("generate-posts", {"projectId": "p1", "insightIds": ["i1"]})
    assert registry.load("generate-posts", data) == GeneratePostsJob(
        project_id="p1", insight_ids=["i1"]
    )

    with pytest.raises(PayloadValidationError):
        registry.dump("generate-posts", "p1")
    with pytest.raises(PayloadValidationError):
        registry.dump("scrape-project", GeneratePostsJob(project_id="p1"))
    with pytest.raises(PayloadValidationError):
        registry.load("default", {})


def test_custom_registry():
    class Ping(BaseModel):
        host: str

    registry = PayloadRegistry()
    registry.register("scrape-only", ScrapeProjectJob)
    registry.register("ping", Ping)

    assert registry.payload_type("scrape-only") is ScrapeProjectJob
    assert registry.dump("ping", {"host": "db"}) == {"host": "db"}
    with pytest.raises(ValueError):
        registry.register("", ScrapeProjectJob)
    with pytest.raises(ValueError):
        registry.register("plain", dict)
