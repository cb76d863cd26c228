import json
import logging
from typing import Any, Awaitable, Callable, Iterable

from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse

from src.core.idempotency import (
    IdempotencyGate,
    IdempotencyKeyConflictError,
    IdempotencyKeyValidationError,
    IdempotentResponse,
)

logger = logging.getLogger(__name__)

IDEMPOTENCY_KEY_HEADER = "Idempotency-Key"
IDEMPOTENCY_REPLAYED_HEADER = "Idempotency-Replayed"


def install_idempotency_middleware(
    app: FastAPI,
    *,
    gate_provider: Callable[[Request], IdempotencyGate],
    methods: Iterable[str],
) -> None:
    """Dedupe keyed mutating requests through the app's ``IdempotencyGate``.

    Requests without an ``Idempotency-Key`` header pass straight through.
    The first keyed request runs the handler and its response is stored
    before it is sent; a retry with the same key and body gets the stored
    response back with ``Idempotency-Replayed: true``.
    """
    guarded_methods = {method.upper() for method in methods}

    @app.middleware("http")
    async def _idempotency_middleware(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        if request.method.upper() not in guarded_methods:
            return await call_next(request)
        key = request.headers.get(IDEMPOTENCY_KEY_HEADER)
        if key is None:
            return await call_next(request)

        gate = gate_provider(request)
        try:
            gate.validate_key(key)
        except IdempotencyKeyValidationError as exc:
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={
                    "detail": str(exc),
                    "message": "Idempotency-Key must be between 1 and 255 characters",
                },
            )

        path = request.url.path
        fingerprint = gate.fingerprint(request.method, path, _decode_body(await request.body()))
        try:
            replay = await gate.lookup(key, fingerprint)
        except IdempotencyKeyConflictError as exc:
            return JSONResponse(
                status_code=status.HTTP_409_CONFLICT,
                content={"detail": str(exc), "idempotency_key": exc.key},
            )
        if replay is not None:
            logger.info(
                "idempotency.replayed",
                extra={"extra_fields": {"idempotency_key": key, "endpoint": path}},
            )
            return _replay_response(replay, key)

        response = await call_next(request)
        raw_body = b"".join([chunk async for chunk in response.body_iterator])
        media_type = response.headers.get("content-type", "application/json")
        await gate.store(
            key=key,
            fingerprint=fingerprint,
            method=request.method,
            path=path,
            status_code=response.status_code,
            body=_decode_response_body(raw_body, media_type),
            media_type=media_type,
        )
        headers = dict(response.headers)
        headers[IDEMPOTENCY_KEY_HEADER] = key
        return Response(
            content=raw_body,
            status_code=response.status_code,
            headers=headers,
            media_type=response.media_type,
        )


def _decode_body(raw: bytes) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError):
        return raw.decode("utf-8", errors="replace")


def _is_json(media_type: str) -> bool:
    return media_type.split(";", 1)[0].strip().lower().endswith("json")


def _decode_response_body(raw: bytes, media_type: str) -> Any:
    if _is_json(media_type):
        return _decode_body(raw)
    return raw.decode("utf-8", errors="replace")


def _replay_response(replay: IdempotentResponse, key: str) -> Response:
    headers = {IDEMPOTENCY_REPLAYED_HEADER: "true", IDEMPOTENCY_KEY_HEADER: key}
    if _is_json(replay.media_type):
        return JSONResponse(
            status_code=replay.status_code,
            content=replay.body,
            headers=headers,
            media_type=replay.media_type,
        )
    return Response(
        content=replay.body,
        status_code=replay.status_code,
        headers=headers,
        media_type=replay.media_type,
    )
