"""
FILE: src/api/main.py
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from src.api.dependencies import get_idempotency_gate, get_orchestrator
from src.api.idempotency_middleware import install_idempotency_middleware
from src.api.observability import setup_observability
from src.api.persistence_profile import validate_persistence_profile_guardrails
from src.api.request_models import HealthResponse
from src.api.routers.operations import router as operations_router
from src.api.routers.rebalancing import router as rebalancing_router
from src.api.runtime_config import (
    RebalancerRuntime,
    RuntimeSettings,
    build_runtime,
    load_runtime_settings,
)

logger = logging.getLogger(__name__)


def create_app(
    runtime: Optional[RebalancerRuntime] = None,
    settings: Optional[RuntimeSettings] = None,
) -> FastAPI:
    """Build the HTTP app.

    The runtime (stores, lock service, queues, orchestrator) is created in the
    lifespan unless one is passed in. Workers and schedules start with the app
    and stop when it shuts down.
    """
    resolved_settings = runtime.settings if runtime is not None else settings

    @asynccontextmanager
    async def _app_lifespan(app: FastAPI):
        validate_persistence_profile_guardrails()
        active = runtime or await build_runtime(resolved_settings)
        app.state.runtime = active
        await active.idempotency_gate.purge_expired()
        active.orchestrator.start()
        if active.settings.scheduler_enabled:
            await active.orchestrator.start_schedules()
        try:
            yield
        finally:
            await active.orchestrator.stop()
            await active.close()

    app = FastAPI(
        title="Portfolio Rebalancer API",
        version="0.1.0",
        description=(
            "Rebalance orchestration service.\n\n"
            "Recurring scans queue rebalances for portfolios that drift past their strategy "
            "trigger; manual triggers are idempotent when sent with `Idempotency-Key`."
        ),
        openapi_tags=[
            {
                "name": "Rebalancing",
                "description": "Manual triggers, drift diagnostics and rebalance history.",
            },
            {
                "name": "Operations",
                "description": "Queue metrics and recurring schedule control.",
            },
            {"name": "Health", "description": "Liveness and readiness probes."},
        ],
        lifespan=_app_lifespan,
    )

    app.include_router(rebalancing_router)
    app.include_router(operations_router)

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.get("/health/live", response_model=HealthResponse, tags=["Health"])
    async def health_live() -> HealthResponse:
        return HealthResponse(status="live")

    @app.get(
        "/health/ready",
        response_model=HealthResponse,
        tags=["Health"],
        responses={503: {"description": "Broker or lock backend unreachable."}},
    )
    async def health_ready(request: Request):
        metrics = await get_orchestrator(request).metrics()
        if not metrics.broker_reachable or not metrics.lock_backend_reachable:
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready"},
            )
        return HealthResponse(status="ready")

    @app.exception_handler(Exception)
    async def unhandled_exception_to_problem_details(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.exception("Unhandled exception while serving request", exc_info=exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            media_type="application/problem+json",
            content={
                "type": "about:blank",
                "title": "Internal Server Error",
                "status": 500,
                "detail": "An unexpected error occurred.",
                "instance": str(request.url.path),
            },
        )

    methods = (resolved_settings or load_runtime_settings()).idempotent_methods
    install_idempotency_middleware(app, gate_provider=get_idempotency_gate, methods=methods)
    setup_observability(app)
    return app


app = create_app()
