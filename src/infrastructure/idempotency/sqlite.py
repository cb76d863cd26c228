import json
import sqlite3
from contextlib import closing
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Any, Optional

from src.core.idempotency.models import IdempotencyRecord
from src.core.idempotency.repository import IdempotencyRepository


class SqliteIdempotencyRepository(IdempotencyRepository):
    def __init__(self, *, database_path: str) -> None:
        self._lock = Lock()
        self._database_path = database_path
        self._init_db()

    def get_record(self, *, key: str, now: datetime) -> Optional[IdempotencyRecord]:
        query = """
            SELECT
                idempotency_key,
                request_fingerprint,
                method,
                path,
                status_code,
                response_json,
                media_type,
                created_at,
                expires_at
            FROM idempotency_keys
            WHERE idempotency_key = ? AND expires_at > ?
        """
        with closing(self._connect()) as connection:
            row = connection.execute(query, (key, now.isoformat())).fetchone()
        return _to_record(row)

    def insert_record_if_absent(self, record: IdempotencyRecord) -> bool:
        with self._lock, closing(self._connect()) as connection:
            connection.execute(
                "DELETE FROM idempotency_keys WHERE idempotency_key = ? AND expires_at <= ?",
                (record.key, record.created_at.isoformat()),
            )
            cursor = connection.execute(
                """
                INSERT OR IGNORE INTO idempotency_keys (
                    idempotency_key,
                    request_fingerprint,
                    method,
                    path,
                    status_code,
                    response_json,
                    media_type,
                    created_at,
                    expires_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.key,
                    record.request_fingerprint,
                    record.method,
                    record.path,
                    record.status_code,
                    _json_dump(record.response_body),
                    record.media_type,
                    record.created_at.isoformat(),
                    record.expires_at.isoformat(),
                ),
            )
            connection.commit()
            return cursor.rowcount == 1

    def purge_expired(self, *, now: datetime) -> int:
        with self._lock, closing(self._connect()) as connection:
            cursor = connection.execute(
                "DELETE FROM idempotency_keys WHERE expires_at <= ?",
                (now.isoformat(),),
            )
            connection.commit()
            return cursor.rowcount

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(self._database_path)
        connection.row_factory = sqlite3.Row
        return connection

    def _init_db(self) -> None:
        Path(self._database_path).parent.mkdir(parents=True, exist_ok=True)
        with closing(self._connect()) as connection:
            connection.executescript(
                """
                CREATE TABLE IF NOT EXISTS idempotency_keys (
                    idempotency_key TEXT PRIMARY KEY,
                    request_fingerprint TEXT NOT NULL,
                    method TEXT NOT NULL,
                    path TEXT NOT NULL,
                    status_code INTEGER NOT NULL,
                    response_json TEXT NOT NULL,
                    media_type TEXT NOT NULL DEFAULT 'application/json',
                    created_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_idempotency_keys_expires_at
                    ON idempotency_keys (expires_at);
                """
            )
            connection.commit()


def _json_dump(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), sort_keys=True)


def _to_record(row) -> Optional[IdempotencyRecord]:
    if row is None:
        return None
    return IdempotencyRecord(
        key=row["idempotency_key"],
        request_fingerprint=row["request_fingerprint"],
        method=row["method"],
        path=row["path"],
        status_code=row["status_code"],
        response_body=json.loads(row["response_json"]),
        media_type=row["media_type"],
        created_at=datetime.fromisoformat(row["created_at"]),
        expires_at=datetime.fromisoformat(row["expires_at"]),
    )
