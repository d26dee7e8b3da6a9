import asyncio
import uuid
from datetime import datetime, timezone

import pytest

from beadq import BaseBroker, ScrapeProjectJob
from .fixtures import make_broker, broker


async def enqueue_projects(broker: BaseBroker, count: int) -> list:
    jobs = []
    for i in range(count):
        jobs.append(
            await broker.enqueue("scrape-project", ScrapeProjectJob(project_id=f"p{i}"))
        )
        # Distinct enqueue timestamps keep the order deterministic
        await asyncio.sleep(0.002)
    return jobs


@pytest.mark.asyncio
async def test_claim(broker: BaseBroker):
    job = await broker.enqueue("scrape-project", ScrapeProjectJob(project_id="p1"))

    leased = await broker.claim("scrape-project", claim_as="worker-1")
    assert leased.id == job.id
    assert leased.status == broker.LEASED
    assert leased.attempt == 1
    assert leased.leased_by == "worker-1"
    assert isinstance(leased.lease_token, uuid.UUID)
    assert leased.leased_at <= datetime.now(timezone.utc)
    assert leased.lease_expires_at > leased.leased_at

    # Nothing else to lease
    assert await broker.claim("scrape-project") is None
    assert await broker.count("scrape-project", broker.LEASED) == 1


@pytest.mark.asyncio
async def test_claim_empty_queue(broker: BaseBroker):
    assert await broker.claim("scrape-project") is None


@pytest.mark.asyncio
async def test_claim_in_order(broker: BaseBroker):
    jobs = await enqueue_projects(broker, 3)

    for job in jobs:
        leased = await broker.claim("scrape-project")
        assert leased.id == job.id


@pytest.mark.asyncio
async def test_claim_only_from_queue(broker: BaseBroker):
    await broker.enqueue("generate-posts", {"projectId": "p1", "insightIds": []})
    assert await broker.claim("scrape-project") is None


@pytest.mark.asyncio
async def test_concurrent_claims_never_share_a_job(broker: BaseBroker):
    jobs = await enqueue_projects(broker, 5)

    leased = await asyncio.gather(
        *(broker.claim("scrape-project", claim_as=f"w{i}") for i in range(10))
    )
    ids = [job.id for job in leased if job is not None]

    assert len(ids) == len(set(ids)) == 5
    assert set(ids) == {job.id for job in jobs}


@pytest.mark.asyncio
async def test_ack(broker: BaseBroker):
    await broker.enqueue("scrape-project", ScrapeProjectJob(project_id="p1"))
    job = await broker.claim("scrape-project")

    assert await broker.ack(job.id, lease_token=job.lease_token)
    completed = await broker.get(job.id)
    assert completed.status == broker.COMPLETED
    assert completed.finished_at is not None
    assert completed.lease_token is None

    # Acking again is a no-op
    assert not await broker.ack(job.id, lease_token=job.lease_token)
    assert not await broker.ack(job.id)
    assert not await broker.ack(uuid.uuid4())

    assert await broker.nack(job.id, "late failure") is None
    assert (await broker.get(job.id)).status == broker.COMPLETED


@pytest.mark.asyncio
async def test_stale_lease_token(broker: BaseBroker):
    await broker.enqueue("scrape-project", ScrapeProjectJob(project_id="p1"))
    job = await broker.claim("scrape-project")
    stale_token = uuid.uuid4()

    assert not await broker.ack(job.id, lease_token=stale_token)
    assert await broker.nack(job.id, "boom", lease_token=stale_token) is None
    assert (await broker.get(job.id)).status == broker.LEASED

    assert await broker.ack(job.id, lease_token=job.lease_token)


@pytest.mark.asyncio
async def test_nack_pending_job_is_noop(broker: BaseBroker):
    job = await broker.enqueue("scrape-project", ScrapeProjectJob(project_id="p1"))

    assert await broker.nack(job.id, "boom") is None
    assert not await broker.ack(job.id)
    assert (await broker.get(job.id)).status == broker.PENDING


@pytest.mark.asyncio
async def test_dequeue_acks(broker: BaseBroker):
    job = await broker.enqueue("scrape-project", ScrapeProjectJob(project_id="p1"))

    async with broker.dequeue("scrape-project") as leased:
        assert leased.id == job.id
        assert leased.payload == {"projectId": "p1", "sources": ["twitter", "farcaster"]}
        assert leased.status == broker.LEASED

    assert (await broker.get(job.id)).status == broker.COMPLETED


@pytest.mark.asyncio
async def test_dequeue_no_job(broker: BaseBroker):
    async with broker.dequeue("scrape-project") as job:
        assert job is None


@pytest.mark.asyncio
async def test_dequeue_exception_nacks(broker: BaseBroker):
    job = await broker.enqueue("scrape-project", ScrapeProjectJob(project_id="p1"))

    async with broker.dequeue("scrape-project") as leased:
        raise RuntimeError("Something went wrong")

    failed = await broker.get(job.id)
    assert failed.status == broker.RETRYING
    assert failed.attempt == 2
    assert failed.error == "Something went wrong"
    assert "RuntimeError" in failed.error_trace


@pytest.mark.asyncio
async def test_dequeue_fail_without_retry(broker: BaseBroker):
    job = await broker.enqueue("scrape-project", ScrapeProjectJob(project_id="p1"))

    async with broker.dequeue("scrape-project") as leased:
        leased.fail("Project was deleted", retry=False)

    failed = await broker.get(job.id)
    assert failed.status == broker.FAILED
    assert failed.attempt == 1
    assert failed.error == "Project was deleted"
    assert [j.id for j in await broker.dead_letters("scrape-project")] == [job.id]


@pytest.mark.asyncio
async def test_dequeue_cancelled_leaves_job_leased(broker: BaseBroker):
    job = await broker.enqueue("scrape-project", ScrapeProjectJob(project_id="p1"))
    started = asyncio.Event()

    async def process():
        async with broker.dequeue("scrape-project") as leased:
            started.set()
            await asyncio.sleep(10)

    task = asyncio.create_task(process())
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    leased = await broker.get(job.id)
    assert leased.status == broker.LEASED
    assert leased.attempt == 1


@pytest.mark.asyncio
async def test_lease_waits_for_job(broker: BaseBroker):
    async def produce():
        await asyncio.sleep(0.1)
        return await broker.enqueue("scrape-project", ScrapeProjectJob(project_id="p1"))

    producer = asyncio.create_task(produce())
    leased = await broker.lease("scrape-project", poll_interval=20, timeout=2000)
    job = await producer

    assert leased is not None
    assert leased.id == job.id


@pytest.mark.asyncio
async def test_lease_returns_on_stop(broker: BaseBroker):
    stop = asyncio.Event()
    asyncio.get_running_loop().call_later(0.05, stop.set)

    leased = await broker.lease("scrape-project", stop_event=stop, poll_interval=5000)
    assert leased is None


@pytest.mark.asyncio
async def test_lease_timeout(broker: BaseBroker):
    assert await broker.lease("scrape-project", poll_interval=20, timeout=100) is None


@pytest.mark.asyncio
async def test_inspection(broker: BaseBroker):
    await enqueue_projects(broker, 3)
    await broker.enqueue("generate-posts", {"projectId": "p1", "insightIds": ["i1"]})

    job = await broker.claim("scrape-project")
    await broker.ack(job.id, lease_token=job.lease_token)
    await broker.claim("scrape-project")

    assert await broker.queues() == ["generate-posts", "scrape-project"]
    assert await broker.count() == 4
    assert await broker.count("scrape-project", [broker.PENDING, broker.LEASED]) == 2
    assert len(await broker.jobs("scrape-project")) == 3
    assert len(await broker.jobs(status=broker.PENDING)) == 2

    stats = await broker.stats()
    assert stats["scrape-project"].total == 3
    assert stats["scrape-project"].pending == 1
    assert stats["scrape-project"].leased == 1
    assert stats["scrape-project"].completed == 1
    assert stats["generate-posts"].pending == 1
    assert list(await broker.stats("generate-posts")) == ["generate-posts"]

    with pytest.raises(ValueError):
        await broker.count(status="done")
