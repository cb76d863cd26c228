from datetime import datetime
from typing import Optional, Protocol

from src.core.idempotency.models import IdempotencyRecord


class IdempotencyRepository(Protocol):
    def get_record(self, *, key: str, now: datetime) -> Optional[IdempotencyRecord]: ...

    def insert_record_if_absent(self, record: IdempotencyRecord) -> bool: ...

    def purge_expired(self, *, now: datetime) -> int: ...
