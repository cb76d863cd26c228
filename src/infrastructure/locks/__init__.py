from src.infrastructure.locks.redis_backend import RedisLockBackend, select_lock_backend

__all__ = ["RedisLockBackend", "select_lock_backend"]
