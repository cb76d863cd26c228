import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from src.core.locks.backend import InMemoryLockBackend, LockBackend, LockBackendUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TTL_SECONDS = 300


def lock_key(portfolio_id: str) -> str:
    return f"lock:rebalance:{portfolio_id}"


class PortfolioLockService:
    """Per-portfolio mutual exclusion for rebalance execution.

    Acquisition is a single set-if-absent with a TTL, so a crashed holder can
    block a portfolio for at most ``default_ttl_seconds``. When the distributed
    backend cannot be reached the service keeps working against the
    process-local ``fallback`` and reports ``degraded`` until a call to the
    primary backend succeeds again.
    """

    def __init__(
        self,
        *,
        backend: LockBackend,
        fallback: Optional[InMemoryLockBackend] = None,
        default_ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
    ) -> None:
        self._backend = backend
        self._fallback = fallback or InMemoryLockBackend()
        self._default_ttl_seconds = default_ttl_seconds
        self._degraded = False

    @property
    def degraded(self) -> bool:
        return self._degraded or getattr(self._backend, "degraded", False)

    @property
    def default_ttl_seconds(self) -> int:
        return self._default_ttl_seconds

    async def acquire(self, portfolio_id: str, ttl_seconds: Optional[int] = None) -> bool:
        key = lock_key(portfolio_id)
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl_seconds
        try:
            acquired = await self._backend.set_if_absent(key, ttl_seconds=ttl)
        except LockBackendUnavailableError as exc:
            self._mark_degraded(exc)
            return await self._fallback.set_if_absent(key, ttl_seconds=ttl)
        self._degraded = False
        return acquired

    async def release(self, portfolio_id: str) -> None:
        key = lock_key(portfolio_id)
        await self._fallback.delete(key)
        try:
            await self._backend.delete(key)
        except LockBackendUnavailableError as exc:
            self._mark_degraded(exc)

    async def is_locked(self, portfolio_id: str) -> bool:
        key = lock_key(portfolio_id)
        if await self._fallback.exists(key):
            return True
        try:
            return await self._backend.exists(key)
        except LockBackendUnavailableError as exc:
            self._mark_degraded(exc)
            return False

    async def ping(self) -> bool:
        try:
            return await self._backend.ping()
        except LockBackendUnavailableError:
            return False

    @asynccontextmanager
    async def hold(
        self, portfolio_id: str, ttl_seconds: Optional[int] = None
    ) -> AsyncIterator[bool]:
        acquired = await self.acquire(portfolio_id, ttl_seconds)
        try:
            yield acquired
        finally:
            if acquired:
                await self.release(portfolio_id)

    def _mark_degraded(self, exc: LockBackendUnavailableError) -> None:
        self._degraded = True
        logger.warning(
            "lock.backend.degraded",
            extra={
                "extra_fields": {
                    "error": exc.detail or str(exc),
                    "fallback": "in_process",
                }
            },
        )
