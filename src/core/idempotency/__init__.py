from src.core.idempotency.gate import (
    DEFAULT_IDEMPOTENCY_TTL_SECONDS,
    IdempotencyGate,
    IdempotencyKeyConflictError,
    IdempotencyKeyValidationError,
)
from src.core.idempotency.models import IdempotencyRecord, IdempotentResponse
from src.core.idempotency.repository import IdempotencyRepository

__all__ = [
    "DEFAULT_IDEMPOTENCY_TTL_SECONDS",
    "IdempotencyGate",
    "IdempotencyKeyConflictError",
    "IdempotencyKeyValidationError",
    "IdempotencyRecord",
    "IdempotencyRepository",
    "IdempotentResponse",
]
