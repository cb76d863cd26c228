from src.core.locks.backend import (
    InMemoryLockBackend,
    LockBackend,
    LockBackendUnavailableError,
)
from src.core.locks.service import DEFAULT_LOCK_TTL_SECONDS, PortfolioLockService, lock_key

__all__ = [
    "DEFAULT_LOCK_TTL_SECONDS",
    "InMemoryLockBackend",
    "LockBackend",
    "LockBackendUnavailableError",
    "PortfolioLockService",
    "lock_key",
]
