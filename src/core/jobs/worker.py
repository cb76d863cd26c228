import asyncio
import logging
from contextvars import ContextVar
from typing import Awaitable, Callable, Optional

from src.core.jobs.models import QueuedJob
from src.core.jobs.queue import JobQueue, UnrecoverableJobError

logger = logging.getLogger(__name__)

JobProcessor = Callable[[QueuedJob], Awaitable[None]]

job_id_var: ContextVar[str] = ContextVar("job_id", default="")
job_queue_var: ContextVar[str] = ContextVar("job_queue", default="")


class QueueWorker:
    """Pool of asyncio tasks draining one queue with a single processor.

    A processor exception fails the attempt and hands the job back to the
    queue's retry policy; it never stops the pool.
    """

    def __init__(self, queue: JobQueue, processor: JobProcessor, *, concurrency: int = 1) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._queue = queue
        self._processor = processor
        self._concurrency = concurrency
        self._tasks: list[asyncio.Task] = []

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(self._run(), name=f"{self._queue.name}-worker-{slot}")
            for slot in range(self._concurrency)
        ]

    async def stop(self, timeout_seconds: Optional[float] = None) -> None:
        """Wait for in-flight jobs; the queue must be closed first."""
        if not self._tasks:
            return
        await asyncio.wait(self._tasks, timeout=timeout_seconds)
        for task in self._tasks:
            if not task.done():
                task.cancel()
        self._tasks = []

    async def _run(self) -> None:
        while True:
            job = await self._queue.claim()
            if job is None:
                return
            await self._process(job)

    async def _process(self, job: QueuedJob) -> None:
        job_token = job_id_var.set(job.job_id)
        queue_token = job_queue_var.set(job.queue_name)
        try:
            await self._processor(job)
        except UnrecoverableJobError as exc:
            self._log_failure(job, exc, retrying=False)
            await self._queue.fail(job, exc.reason, retry=False)
        except Exception as exc:
            self._log_failure(job, exc, retrying=job.attempts_made < job.max_attempts)
            await self._queue.fail(job, str(exc) or exc.__class__.__name__)
        else:
            await self._queue.complete(job)
        finally:
            job_id_var.reset(job_token)
            job_queue_var.reset(queue_token)

    def _log_failure(self, job: QueuedJob, exc: Exception, *, retrying: bool) -> None:
        logger.error(
            "queue.job.failed",
            extra={
                "extra_fields": {
                    "queue": job.queue_name,
                    "job_id": job.job_id,
                    "job_name": job.name,
                    "portfolio_id": job.payload.get("portfolio_id"),
                    "attempt": job.attempts_made,
                    "max_attempts": job.max_attempts,
                    "retrying": retrying,
                    "error": str(exc) or exc.__class__.__name__,
                }
            },
        )
