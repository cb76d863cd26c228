import logging
from typing import Any, Optional

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from src.core.locks.backend import InMemoryLockBackend, LockBackend, LockBackendUnavailableError

logger = logging.getLogger(__name__)

LOCK_VALUE = "locked"


class RedisLockBackend(LockBackend):
    def __init__(self, *, client: Any) -> None:
        self._client = client

    @classmethod
    def from_url(cls, redis_url: str) -> "RedisLockBackend":
        return cls(client=aioredis.from_url(redis_url, socket_connect_timeout=2))

    async def set_if_absent(self, key: str, *, ttl_seconds: float) -> bool:
        try:
            result = await self._client.set(
                key, LOCK_VALUE, nx=True, px=int(ttl_seconds * 1000)
            )
        except (RedisError, OSError) as exc:
            raise LockBackendUnavailableError(str(exc)) from exc
        return bool(result)

    async def delete(self, key: str) -> None:
        try:
            await self._client.delete(key)
        except (RedisError, OSError) as exc:
            raise LockBackendUnavailableError(str(exc)) from exc

    async def exists(self, key: str) -> bool:
        try:
            return bool(await self._client.exists(key))
        except (RedisError, OSError) as exc:
            raise LockBackendUnavailableError(str(exc)) from exc

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except (RedisError, OSError) as exc:
            raise LockBackendUnavailableError(str(exc)) from exc

    async def close(self) -> None:
        await self._client.aclose()


async def select_lock_backend(redis_url: Optional[str]) -> LockBackend:
    """Return a Redis-backed lock table when reachable, else a process-local one."""
    if not redis_url:
        logger.warning(
            "lock.backend.in_process",
            extra={"extra_fields": {"reason": "REBALANCER_REDIS_URL not set"}},
        )
        return InMemoryLockBackend()
    backend = RedisLockBackend.from_url(redis_url)
    try:
        await backend.ping()
    except LockBackendUnavailableError as exc:
        logger.warning(
            "lock.backend.in_process",
            extra={"extra_fields": {"reason": "redis_unreachable", "error": exc.detail}},
        )
        await backend.close()
        return InMemoryLockBackend(degraded=True)
    return backend
