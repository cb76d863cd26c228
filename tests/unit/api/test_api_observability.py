import json
import logging
import re

from fastapi.testclient import TestClient

from src.api.main import create_app
from src.api.observability import JsonFormatter, trace_id_from_traceparent
from src.core.jobs.worker import job_id_var, job_queue_var

UPSTREAM_TRACE_ID = "1234567890abcdef1234567890abcdef"


def test_observability_headers_preserve_inbound_correlation_and_trace_id():
    with TestClient(create_app()) as client:
        response = client.get(
            "/health",
            headers={
                "X-Correlation-Id": "corr-inbound-123",
                "X-Request-Id": "req-inbound-123",
                "traceparent": f"00-{UPSTREAM_TRACE_ID}-0000000000000001-01",
            },
        )

    assert response.status_code == 200
    assert response.headers["X-Correlation-Id"] == "corr-inbound-123"
    assert response.headers["X-Request-Id"] == "req-inbound-123"
    assert response.headers["X-Trace-Id"] == UPSTREAM_TRACE_ID
    assert response.headers["traceparent"] == f"00-{UPSTREAM_TRACE_ID}-0000000000000001-01"


def test_observability_headers_generate_ids_when_missing():
    with TestClient(create_app()) as client:
        response = client.get("/api/v1/queue/metrics")

    assert response.status_code == 200
    assert re.fullmatch(r"corr_[0-9a-f]{12}", response.headers["X-Correlation-Id"])
    assert re.fullmatch(r"req_[0-9a-f]{12}", response.headers["X-Request-Id"])
    assert re.fullmatch(r"[0-9a-f]{32}", response.headers["X-Trace-Id"])


def test_metrics_endpoint_available():
    with TestClient(create_app()) as client:
        client.get("/api/v1/queue/metrics")
        response = client.get("/metrics")

    assert response.status_code == 200
    assert "http_requests_total" in response.text or "http_request_duration" in response.text


def test_unhandled_errors_are_problem_details(monkeypatch):
    app = create_app()

    async def _broken_metrics():
        raise RuntimeError("broker exploded")

    with TestClient(app, raise_server_exceptions=False) as client:
        monkeypatch.setattr(app.state.runtime.orchestrator, "metrics", _broken_metrics)
        response = client.get("/api/v1/queue/metrics")

    assert response.status_code == 500
    assert response.headers["content-type"] == "application/problem+json"
    assert response.json()["instance"] == "/api/v1/queue/metrics"


def test_trace_id_from_traceparent_rejects_malformed_headers():
    assert trace_id_from_traceparent(f"00-{UPSTREAM_TRACE_ID}-0000000000000001-01") == (
        UPSTREAM_TRACE_ID
    )
    assert trace_id_from_traceparent("00-short-01") is None
    assert trace_id_from_traceparent(None) is None


def test_json_formatter_includes_job_context_and_extra_fields():
    record = logging.LogRecord(
        name="src.core.orchestration.rebalance_worker",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="rebalance.job.completed",
        args=(),
        exc_info=None,
    )
    record.extra_fields = {"portfolio_id": "pf_001", "trades": 2}

    job_token = job_id_var.set("rebalance-pf_001-abc")
    queue_token = job_queue_var.set("rebalance")
    try:
        payload = json.loads(JsonFormatter().format(record))
    finally:
        job_id_var.reset(job_token)
        job_queue_var.reset(queue_token)

    assert payload["message"] == "rebalance.job.completed"
    assert payload["job_id"] == "rebalance-pf_001-abc"
    assert payload["queue"] == "rebalance"
    assert payload["portfolio_id"] == "pf_001"
    assert payload["trades"] == 2
    assert "correlation_id" not in payload
