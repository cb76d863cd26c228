import asyncio
import heapq
import itertools
import logging
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from src.core.jobs.models import JobQueueOptions, QueueDepth, QueuedJob
from src.core.jobs.queue import JobQueue

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 100
PENDING_STATES = ("waiting", "active", "delayed")


class InMemoryJobQueue(JobQueue):
    """Single-process asyncio broker with retries, priorities and retention.

    Lower ``priority`` values are claimed first; jobs without a priority are
    claimed in insertion order after prioritized ones. A failed attempt is
    parked in ``delayed`` for ``backoff_seconds * 2 ** (attempt - 1)`` before
    it becomes claimable again.
    """

    def __init__(self, name: str, *, options: Optional[JobQueueOptions] = None) -> None:
        self._name = name
        self._options = options or JobQueueOptions()
        self._jobs: dict[str, QueuedJob] = {}
        self._ready: list[tuple[int, int, str]] = []
        self._sequence = itertools.count()
        self._completed: deque[str] = deque()
        self._failed: deque[str] = deque()
        self._timers: set[asyncio.Task] = set()
        self._condition = asyncio.Condition()
        self._closed = False

    @property
    def name(self) -> str:
        return self._name

    def get_job(self, job_id: str) -> Optional[QueuedJob]:
        return self._jobs.get(job_id)

    async def add(
        self,
        name: str,
        payload: Dict[str, Any],
        *,
        job_id: Optional[str] = None,
        priority: Optional[int] = None,
    ) -> QueuedJob:
        async with self._condition:
            resolved_id = job_id or uuid.uuid4().hex
            existing = self._jobs.get(resolved_id)
            if existing is not None:
                logger.info(
                    "queue.job.duplicate_ignored",
                    extra={"extra_fields": {"queue": self._name, "job_id": resolved_id}},
                )
                return existing
            job = QueuedJob(
                job_id=resolved_id,
                queue_name=self._name,
                name=name,
                payload=dict(payload),
                priority=priority,
                max_attempts=self._options.attempts,
                created_at=_utc_now(),
            )
            self._jobs[job.job_id] = job
            self._push_ready(job)
            self._condition.notify_all()
            return job

    async def claim(self) -> Optional[QueuedJob]:
        async with self._condition:
            await self._condition.wait_for(lambda: self._closed or bool(self._ready))
            if self._closed:
                return None
            _, _, job_id = heapq.heappop(self._ready)
            job = self._jobs[job_id]
            job.state = "active"
            job.attempts_made += 1
            return job

    async def complete(self, job: QueuedJob) -> None:
        async with self._condition:
            job.state = "completed"
            job.finished_at = _utc_now()
            self._completed.append(job.job_id)
            self._trim(self._completed, self._options.remove_on_complete)
            self._condition.notify_all()

    async def fail(self, job: QueuedJob, error: str, *, retry: bool = True) -> None:
        async with self._condition:
            job.failed_reason = error
            if retry and job.attempts_made < job.max_attempts and not self._closed:
                job.state = "delayed"
                delay = self._options.retry_delay_seconds(job.attempts_made)
                timer = asyncio.create_task(self._promote_after(job.job_id, delay))
                self._timers.add(timer)
                timer.add_done_callback(self._timers.discard)
            else:
                job.state = "failed"
                job.finished_at = _utc_now()
                self._failed.append(job.job_id)
                self._trim(self._failed, self._options.remove_on_fail)
            self._condition.notify_all()

    async def counts(self) -> QueueDepth:
        async with self._condition:
            depth = QueueDepth()
            for job in self._jobs.values():
                setattr(depth, job.state, getattr(depth, job.state) + 1)
            return depth

    async def wait_until_idle(self) -> None:
        async with self._condition:
            await self._condition.wait_for(self._is_idle)

    async def ping(self) -> bool:
        return not self._closed

    async def close(self) -> None:
        async with self._condition:
            self._closed = True
            for timer in list(self._timers):
                timer.cancel()
            self._condition.notify_all()

    async def _promote_after(self, job_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        async with self._condition:
            job = self._jobs.get(job_id)
            if job is None or job.state != "delayed":
                return
            job.state = "waiting"
            self._push_ready(job)
            self._condition.notify_all()

    def _push_ready(self, job: QueuedJob) -> None:
        priority = job.priority if job.priority is not None else DEFAULT_PRIORITY
        heapq.heappush(self._ready, (priority, next(self._sequence), job.job_id))

    def _trim(self, retained: deque, limit: int) -> None:
        while len(retained) > limit:
            self._jobs.pop(retained.popleft(), None)

    def _is_idle(self) -> bool:
        return self._closed or not any(
            job.state in PENDING_STATES for job in self._jobs.values()
        )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
