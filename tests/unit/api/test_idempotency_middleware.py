from fastapi import FastAPI
from fastapi.responses import PlainTextResponse
from fastapi.testclient import TestClient

from src.api.idempotency_middleware import install_idempotency_middleware
from src.core.idempotency import IdempotencyGate
from src.infrastructure.idempotency import InMemoryIdempotencyRepository


def _app(calls: list) -> FastAPI:
    app = FastAPI()
    gate = IdempotencyGate(repository=InMemoryIdempotencyRepository())

    @app.post("/text", response_class=PlainTextResponse)
    async def _text() -> str:
        calls.append(1)
        return f"queued {len(calls)}"

    @app.post("/json", status_code=202)
    async def _json() -> dict:
        calls.append(1)
        return {"job_id": f"job-{len(calls)}"}

    install_idempotency_middleware(app, gate_provider=lambda _request: gate, methods={"POST"})
    return app


def test_replayed_text_response_keeps_body_and_content_type():
    calls: list = []
    with TestClient(_app(calls)) as client:
        first = client.post("/text", headers={"Idempotency-Key": "text-1"})
        second = client.post("/text", headers={"Idempotency-Key": "text-1"})

    assert len(calls) == 1
    assert first.text == "queued 1"
    assert second.text == "queued 1"
    assert second.headers["content-type"] == first.headers["content-type"]
    assert second.headers["content-type"].startswith("text/plain")
    assert second.headers["Idempotency-Replayed"] == "true"
    assert "Idempotency-Replayed" not in first.headers


def test_replayed_json_response_keeps_status_and_body():
    calls: list = []
    with TestClient(_app(calls)) as client:
        first = client.post("/json", json={"a": 1}, headers={"Idempotency-Key": "json-1"})
        second = client.post("/json", json={"a": 1}, headers={"Idempotency-Key": "json-1"})

    assert len(calls) == 1
    assert second.status_code == 202
    assert second.json() == first.json() == {"job_id": "job-1"}
    assert second.headers["content-type"] == "application/json"
    assert second.headers["Idempotency-Key"] == "json-1"
