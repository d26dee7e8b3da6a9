from .core import BaseBroker, SQLBroker, MemoryBroker
from .events import EventBus, Event
from .exceptions import (
    BeadqError,
    BrokerUnavailable,
    HandlerError,
    LeaseExpired,
    PayloadValidationError,
    TerminalFailure,
)
from .models import (
    Job,
    QueueStats,
    QueueOptions,
    QueueName,
    PayloadRegistry,
    ScrapeProjectJob,
    GeneratePostsJob,
)
from .pipeline import Pipeline, Stage, StageContext, Edge
from .retry import BackoffPolicy, RetryPolicy
from .worker import LeaseHeartbeat, WorkerPool


__all__ = [
    "BaseBroker",
    "SQLBroker",
    "MemoryBroker",
    "EventBus",
    "Event",
    "BeadqError",
    "BrokerUnavailable",
    "HandlerError",
    "LeaseExpired",
    "PayloadValidationError",
    "TerminalFailure",
    "Job",
    "QueueStats",
    "QueueOptions",
    "QueueName",
    "PayloadRegistry",
    "ScrapeProjectJob",
    "GeneratePostsJob",
    "Pipeline",
    "Stage",
    "StageContext",
    "Edge",
    "BackoffPolicy",
    "RetryPolicy",
    "LeaseHeartbeat",
    "WorkerPool",
]
