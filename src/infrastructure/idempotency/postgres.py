import json
from contextlib import closing
from datetime import datetime
from importlib.util import find_spec
from typing import Any, Optional

from src.core.idempotency.models import IdempotencyRecord


class PostgresIdempotencyRepository:
    def __init__(self, *, dsn: str) -> None:
        if not dsn:
            raise RuntimeError("REBALANCER_POSTGRES_DSN_REQUIRED")
        if find_spec("psycopg") is None:
            raise RuntimeError("REBALANCER_POSTGRES_DRIVER_MISSING")
        self._dsn = dsn
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
            WHERE idempotency_key = %s AND expires_at > %s
        """
        with closing(self._connect()) as connection:
            row = connection.execute(query, (key, now)).fetchone()
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
            created_at=row["created_at"],
            expires_at=row["expires_at"],
        )

    def insert_record_if_absent(self, record: IdempotencyRecord) -> bool:
        with closing(self._connect()) as connection:
            connection.execute(
                "DELETE FROM idempotency_keys WHERE idempotency_key = %s AND expires_at <= %s",
                (record.key, record.created_at),
            )
            cursor = connection.execute(
                """
                INSERT INTO idempotency_keys (
                    idempotency_key,
                    request_fingerprint,
                    method,
                    path,
                    status_code,
                    response_json,
                    media_type,
                    created_at,
                    expires_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (idempotency_key) DO NOTHING
                """,
                (
                    record.key,
                    record.request_fingerprint,
                    record.method,
                    record.path,
                    record.status_code,
                    _json_dump(record.response_body),
                    record.media_type,
                    record.created_at,
                    record.expires_at,
                ),
            )
            connection.commit()
            return cursor.rowcount == 1

    def purge_expired(self, *, now: datetime) -> int:
        with closing(self._connect()) as connection:
            cursor = connection.execute(
                "DELETE FROM idempotency_keys WHERE expires_at <= %s",
                (now,),
            )
            connection.commit()
            return cursor.rowcount

    def _connect(self):
        psycopg, dict_row = _import_psycopg()
        return psycopg.connect(self._dsn, row_factory=dict_row)

    def _init_db(self) -> None:
        with closing(self._connect()) as connection:
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS idempotency_keys (
                    idempotency_key TEXT PRIMARY KEY,
                    request_fingerprint TEXT NOT NULL,
                    method TEXT NOT NULL,
                    path TEXT NOT NULL,
                    status_code INTEGER NOT NULL,
                    response_json TEXT NOT NULL,
                    media_type TEXT NOT NULL DEFAULT 'application/json',
                    created_at TIMESTAMPTZ NOT NULL,
                    expires_at TIMESTAMPTZ NOT NULL
                )
                """
            )
            connection.commit()


def _import_psycopg():
    import psycopg
    from psycopg.rows import dict_row

    return psycopg, dict_row


def _json_dump(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), sort_keys=True)
