import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from src.core.common.canonical import hash_request_fingerprint
from src.core.idempotency.models import IdempotencyRecord, IdempotentResponse
from src.core.idempotency.repository import IdempotencyRepository

logger = logging.getLogger(__name__)

IDEMPOTENCY_KEY_MAX_LENGTH = 255
DEFAULT_IDEMPOTENCY_TTL_SECONDS = 24 * 60 * 60


class IdempotencyKeyValidationError(Exception):
    def __init__(self) -> None:
        super().__init__("IDEMPOTENCY_KEY_INVALID")


class IdempotencyKeyConflictError(Exception):
    def __init__(self, key: str) -> None:
        super().__init__("IDEMPOTENCY_KEY_CONFLICT")
        self.key = key


class IdempotencyGate:
    """Replays stored responses for repeated idempotency keys.

    A key is bound to the fingerprint of the first request that used it. The
    same key with the same fingerprint replays the stored status and body;
    a different fingerprint is a conflict. Records expire after
    ``ttl_seconds`` and expired records are invisible to lookups.
    """

    def __init__(
        self,
        *,
        repository: IdempotencyRepository,
        ttl_seconds: int = DEFAULT_IDEMPOTENCY_TTL_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock or _utc_now

    @staticmethod
    def validate_key(key: Optional[str]) -> str:
        if key is None or not 1 <= len(key) <= IDEMPOTENCY_KEY_MAX_LENGTH:
            raise IdempotencyKeyValidationError()
        return key

    @staticmethod
    def fingerprint(method: str, path: str, body: Any) -> str:
        return hash_request_fingerprint(method=method, path=path, body=body)

    async def lookup(self, key: str, fingerprint: str) -> Optional[IdempotentResponse]:
        record = await asyncio.to_thread(self._repository.get_record, key=key, now=self._clock())
        if record is None:
            return None
        if record.request_fingerprint != fingerprint:
            raise IdempotencyKeyConflictError(key)
        return IdempotentResponse(
            status_code=record.status_code,
            body=record.response_body,
            media_type=record.media_type,
            replayed=True,
        )

    async def store(
        self,
        *,
        key: str,
        fingerprint: str,
        method: str,
        path: str,
        status_code: int,
        body: Any,
        media_type: str = "application/json",
    ) -> None:
        now = self._clock()
        record = IdempotencyRecord(
            key=key,
            request_fingerprint=fingerprint,
            method=method.upper(),
            path=path,
            status_code=status_code,
            response_body=body,
            media_type=media_type,
            created_at=now,
            expires_at=now + self._ttl,
        )
        try:
            await asyncio.to_thread(self._repository.insert_record_if_absent, record)
        except Exception as exc:
            logger.error(
                "idempotency.store.failed",
                extra={"extra_fields": {"idempotency_key": key, "error": str(exc)}},
            )

    async def execute(
        self,
        key: str,
        method: str,
        path: str,
        body: Any,
        handler: Callable[[], Awaitable[IdempotentResponse]],
    ) -> IdempotentResponse:
        self.validate_key(key)
        fingerprint = self.fingerprint(method, path, body)
        replay = await self.lookup(key, fingerprint)
        if replay is not None:
            return replay
        response = await handler()
        await self.store(
            key=key,
            fingerprint=fingerprint,
            method=method,
            path=path,
            status_code=response.status_code,
            body=response.body,
            media_type=response.media_type,
        )
        return response

    async def purge_expired(self) -> int:
        removed = await asyncio.to_thread(self._repository.purge_expired, now=self._clock())
        if removed:
            logger.info("idempotency.purged", extra={"extra_fields": {"removed": removed}})
        return removed


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
