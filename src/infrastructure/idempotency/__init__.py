from src.infrastructure.idempotency.in_memory import InMemoryIdempotencyRepository
from src.infrastructure.idempotency.postgres import PostgresIdempotencyRepository
from src.infrastructure.idempotency.sqlite import SqliteIdempotencyRepository

__all__ = [
    "InMemoryIdempotencyRepository",
    "PostgresIdempotencyRepository",
    "SqliteIdempotencyRepository",
]
