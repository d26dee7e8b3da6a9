import asyncio
import logging
from typing import Any, Callable

import pytest
import pytest_asyncio

from beadq import MemoryBroker, SQLBroker, QueueOptions, BackoffPolicy


# Short delays so that retries become eligible within a test
FAST_OPTIONS = QueueOptions(
    backoff=BackoffPolicy(base=100),
    lease_timeout=5000,
)


async def wait_for(
    predicate: Callable[[], Any], timeout: float = 5, interval: float = 0.01
) -> None:
    """Poll a sync or async predicate until it returns something truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return
        if loop.time() > deadline:
            raise AssertionError("Condition was not met in time")
        await asyncio.sleep(interval)


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def make_broker(request, tmp_path):
    logging.getLogger("beadq").setLevel(logging.DEBUG)
    created = []

    async def factory(**kwargs):
        if request.param == "memory":
            broker = MemoryBroker(**kwargs)
        else:
            path = tmp_path / f"beadq-{len(created)}.db"
            broker = SQLBroker(f"sqlite+aiosqlite:///{path}", **kwargs)
            await broker.create_all()
        created.append(broker)
        return broker

    yield factory

    for broker in created:
        await broker.close()


@pytest_asyncio.fixture
async def broker(make_broker):
    return await make_broker(default_options=FAST_OPTIONS)


@pytest.fixture
def memory_broker():
    logging.getLogger("beadq").setLevel(logging.DEBUG)
    return MemoryBroker(default_options=FAST_OPTIONS)


@pytest_asyncio.fixture
async def pg_broker(postgres_dsn_async):
    logging.getLogger("beadq").setLevel(logging.DEBUG)

    instance = SQLBroker(postgres_dsn_async, default_options=FAST_OPTIONS)
    try:
        await instance.drop_all()
        await instance.create_all()
        yield instance
    finally:
        await instance.drop_all()
        await instance.close()
