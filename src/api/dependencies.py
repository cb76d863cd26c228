from fastapi import Request

from src.api.runtime_config import RebalancerRuntime
from src.core.idempotency import IdempotencyGate
from src.core.orchestration import RebalanceOrchestrator


def get_runtime(request: Request) -> RebalancerRuntime:
    return request.app.state.runtime


def get_orchestrator(request: Request) -> RebalanceOrchestrator:
    return get_runtime(request).orchestrator


def get_idempotency_gate(request: Request) -> IdempotencyGate:
    return get_runtime(request).idempotency_gate
