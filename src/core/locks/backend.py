import time
from threading import Lock
from typing import Callable, Optional, Protocol


class LockBackendUnavailableError(Exception):
    def __init__(self, detail: str = "") -> None:
        super().__init__("LOCK_BACKEND_UNAVAILABLE")
        self.detail = detail


class LockBackend(Protocol):
    async def set_if_absent(self, key: str, *, ttl_seconds: float) -> bool: ...

    async def delete(self, key: str) -> None: ...

    async def exists(self, key: str) -> bool: ...

    async def ping(self) -> bool: ...


class InMemoryLockBackend(LockBackend):
    """Process-local lock table keyed by lock name with monotonic expiries."""

    def __init__(
        self, *, clock: Optional[Callable[[], float]] = None, degraded: bool = False
    ) -> None:
        self._lock = Lock()
        self._clock = clock or time.monotonic
        self._expiries: dict[str, float] = {}
        # Set when this table stands in for an unreachable distributed backend.
        self.degraded = degraded

    async def set_if_absent(self, key: str, *, ttl_seconds: float) -> bool:
        now = self._clock()
        with self._lock:
            expiry = self._expiries.get(key)
            if expiry is not None and expiry > now:
                return False
            self._expiries[key] = now + ttl_seconds
            return True

    async def delete(self, key: str) -> None:
        with self._lock:
            self._expiries.pop(key, None)

    async def exists(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            expiry = self._expiries.get(key)
            if expiry is None:
                return False
            if expiry <= now:
                del self._expiries[key]
                return False
            return True

    async def ping(self) -> bool:
        return True
