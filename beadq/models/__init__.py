from .base_sql import BaseSQL
from .raw_job import RawJob
from .job import Job, JobStatusValueType
from .queue_stats import QueueStats
from .queue_options import QueueOptions
from .payloads import (
    QueueName,
    PayloadRegistry,
    ScrapeProjectJob,
    GeneratePostsJob,
    default_registry,
)


__all__ = [
    "BaseSQL",
    "RawJob",
    "Job",
    "JobStatusValueType",
    "QueueStats",
    "QueueOptions",
    "QueueName",
    "PayloadRegistry",
    "ScrapeProjectJob",
    "GeneratePostsJob",
    "default_registry",
]
