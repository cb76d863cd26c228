import logging
from typing import Any, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from pydantic import BaseModel

from src.core.jobs.models import QueuedJob
from src.core.jobs.queue import JobQueue

logger = logging.getLogger(__name__)


class RecurringSchedule(BaseModel):
    schedule_id: str
    queue: Any
    job_name: str
    payload: Dict[str, Any]
    interval_seconds: float


class RecurringJobScheduler:
    """Registers interval schedules that feed job queues.

    Registration is keyed by ``schedule_id``: registering the same id again
    replaces the previous definition instead of adding a second timer. The
    underlying ``AsyncIOScheduler`` is created on ``start()`` so the scheduler
    always binds to the running event loop.
    """

    def __init__(self) -> None:
        self._schedules: dict[str, RecurringSchedule] = {}
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def register_repeating(
        self,
        schedule_id: str,
        queue: JobQueue,
        name: str,
        payload: Dict[str, Any],
        *,
        interval_seconds: float,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        schedule = RecurringSchedule(
            schedule_id=schedule_id,
            queue=queue,
            job_name=name,
            payload=dict(payload),
            interval_seconds=interval_seconds,
        )
        replaced = schedule_id in self._schedules
        self._schedules[schedule_id] = schedule
        if self._scheduler is not None:
            self._add_to_scheduler(schedule)
        logger.info(
            "scheduler.schedule.registered",
            extra={
                "extra_fields": {
                    "schedule_id": schedule_id,
                    "queue": queue.name,
                    "interval_seconds": interval_seconds,
                    "replaced": replaced,
                }
            },
        )

    def unregister(self, schedule_id: str) -> None:
        self._schedules.pop(schedule_id, None)
        if self._scheduler is not None and self._scheduler.get_job(schedule_id) is not None:
            self._scheduler.remove_job(schedule_id)

    def registered_schedule_ids(self) -> list[str]:
        return sorted(self._schedules)

    async def enqueue_once(
        self,
        queue: JobQueue,
        name: str,
        payload: Dict[str, Any],
        *,
        priority: Optional[int] = None,
        job_id: Optional[str] = None,
    ) -> QueuedJob:
        return await queue.add(name, payload, job_id=job_id, priority=priority)

    def start(self) -> None:
        if self.running:
            return
        self._scheduler = AsyncIOScheduler(timezone="UTC")
        for schedule in self._schedules.values():
            self._add_to_scheduler(schedule)
        self._scheduler.start()

    def stop(self) -> None:
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None

    def _add_to_scheduler(self, schedule: RecurringSchedule) -> None:
        self._scheduler.add_job(
            self._fire,
            trigger=IntervalTrigger(seconds=schedule.interval_seconds),
            id=schedule.schedule_id,
            name=schedule.schedule_id,
            kwargs={"schedule_id": schedule.schedule_id},
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )

    async def _fire(self, schedule_id: str) -> None:
        schedule = self._schedules.get(schedule_id)
        if schedule is None:
            return
        await schedule.queue.add(schedule.job_name, schedule.payload)
