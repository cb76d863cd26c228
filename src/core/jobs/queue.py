from typing import Any, Dict, Optional, Protocol

from src.core.jobs.models import QueueDepth, QueuedJob


class UnrecoverableJobError(Exception):
    """Raised by a processor when retrying the job cannot succeed."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class JobQueue(Protocol):
    @property
    def name(self) -> str: ...

    async def add(
        self,
        name: str,
        payload: Dict[str, Any],
        *,
        job_id: Optional[str] = None,
        priority: Optional[int] = None,
    ) -> QueuedJob: ...

    async def claim(self) -> Optional[QueuedJob]: ...

    async def complete(self, job: QueuedJob) -> None: ...

    async def fail(self, job: QueuedJob, error: str, *, retry: bool = True) -> None: ...

    async def counts(self) -> QueueDepth: ...

    async def wait_until_idle(self) -> None: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...
