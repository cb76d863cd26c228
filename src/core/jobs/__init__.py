from src.core.jobs.models import JobQueueOptions, JobState, QueueDepth, QueuedJob
from src.core.jobs.queue import JobQueue, UnrecoverableJobError
from src.core.jobs.scheduler import RecurringJobScheduler
from src.core.jobs.worker import JobProcessor, QueueWorker

__all__ = [
    "JobProcessor",
    "JobQueue",
    "JobQueueOptions",
    "JobState",
    "QueueDepth",
    "QueueWorker",
    "QueuedJob",
    "RecurringJobScheduler",
    "UnrecoverableJobError",
]
