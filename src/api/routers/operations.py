from typing import Annotated

from fastapi import APIRouter, Depends, status

from src.api.dependencies import get_orchestrator
from src.api.request_models import SchedulerControlResponse
from src.core.orchestration import OrchestratorMetrics, RebalanceOrchestrator

router = APIRouter(prefix="/api/v1", tags=["Operations"])


@router.get(
    "/queue/metrics",
    response_model=OrchestratorMetrics,
    status_code=status.HTTP_200_OK,
    summary="Get Queue Metrics",
    description=(
        "Returns job counts per queue (waiting, active, delayed, completed, failed), "
        "broker and lock backend reachability, and scheduler state."
    ),
)
async def get_queue_metrics(
    orchestrator: Annotated[RebalanceOrchestrator, Depends(get_orchestrator)],
) -> OrchestratorMetrics:
    return await orchestrator.metrics()


@router.post(
    "/scheduler/start",
    response_model=SchedulerControlResponse,
    status_code=status.HTTP_200_OK,
    summary="Start Recurring Schedules",
    description=(
        "Registers the portfolio scan and analytics snapshot schedules and queues one "
        "immediate run of each. Calling it while the scheduler runs changes nothing."
    ),
)
async def start_scheduler(
    orchestrator: Annotated[RebalanceOrchestrator, Depends(get_orchestrator)],
) -> SchedulerControlResponse:
    schedules = await orchestrator.start_schedules()
    return SchedulerControlResponse(status="started", schedules=schedules)


@router.post(
    "/scheduler/stop",
    response_model=SchedulerControlResponse,
    status_code=status.HTTP_200_OK,
    summary="Stop Recurring Schedules",
    description="Removes the recurring schedules. Jobs already queued still run.",
)
async def stop_scheduler(
    orchestrator: Annotated[RebalanceOrchestrator, Depends(get_orchestrator)],
) -> SchedulerControlResponse:
    schedules = orchestrator.stop_schedules()
    return SchedulerControlResponse(status="stopped", schedules=schedules)
