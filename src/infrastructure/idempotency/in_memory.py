from copy import deepcopy
from datetime import datetime
from threading import Lock
from typing import Optional

from src.core.idempotency.models import IdempotencyRecord
from src.core.idempotency.repository import IdempotencyRepository


class InMemoryIdempotencyRepository(IdempotencyRepository):
    def __init__(self) -> None:
        self._lock = Lock()
        self._records: dict[str, IdempotencyRecord] = {}

    def get_record(self, *, key: str, now: datetime) -> Optional[IdempotencyRecord]:
        with self._lock:
            record = self._records.get(key)
            if record is None or record.expires_at <= now:
                return None
            return deepcopy(record)

    def insert_record_if_absent(self, record: IdempotencyRecord) -> bool:
        with self._lock:
            existing = self._records.get(record.key)
            if existing is not None and existing.expires_at > record.created_at:
                return False
            self._records[record.key] = deepcopy(record)
            return True

    def purge_expired(self, *, now: datetime) -> int:
        with self._lock:
            expired = [key for key, record in self._records.items() if record.expires_at <= now]
            for key in expired:
                del self._records[key]
            return len(expired)
