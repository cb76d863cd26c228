import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, status

from src.api.dependencies import get_orchestrator
from src.api.request_models import ManualRebalanceRequest, RebalanceHistoryResponse
from src.core.orchestration import (
    RebalanceBlockedError,
    RebalanceOrchestrator,
    RebalanceStatus,
    RebalanceTriggerResult,
)
from src.core.portfolios import PortfolioNotFoundError

logger = logging.getLogger(__name__)

HTTP_422_UNPROCESSABLE = getattr(
    status,
    "HTTP_422_UNPROCESSABLE_CONTENT",
    status.HTTP_422_UNPROCESSABLE_ENTITY,
)

router = APIRouter(prefix="/api/v1/portfolios", tags=["Rebalancing"])

PortfolioIdPath = Annotated[
    str,
    Path(description="Portfolio identifier.", examples=["pf_001"], min_length=1),
]


@router.post(
    "/{portfolio_id}/rebalance",
    response_model=RebalanceTriggerResult,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Trigger Manual Rebalance",
    description=(
        "Queues a rebalance for one portfolio after market, risk and need checks.\n\n"
        "Optional header: `Idempotency-Key` (1-255 characters). Retrying with the same key "
        "and body replays the original response with `Idempotency-Replayed: true`; the same "
        "key with a different body returns 409."
    ),
    responses={
        400: {"description": "Invalid Idempotency-Key header."},
        404: {"description": "Portfolio not found."},
        409: {"description": "Idempotency-Key reused with a different request."},
        422: {"description": "Rebalance blocked by a safety check (`REBALANCE_BLOCKED:<CODE>`)."},
    },
)
async def trigger_rebalance(
    portfolio_id: PortfolioIdPath,
    orchestrator: Annotated[RebalanceOrchestrator, Depends(get_orchestrator)],
    request: Optional[ManualRebalanceRequest] = None,
    idempotency_key: Annotated[
        Optional[str],
        Header(
            alias="Idempotency-Key",
            description="Optional idempotency key used for dedupe and replay.",
            examples=["rebalance-pf_001-20260301-01"],
        ),
    ] = None,
) -> RebalanceTriggerResult:
    resolved = request or ManualRebalanceRequest()
    try:
        result = await orchestrator.trigger_rebalance(portfolio_id, force=resolved.force)
    except PortfolioNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RebalanceBlockedError as exc:
        logger.info(
            "rebalance.manual.blocked",
            extra={
                "extra_fields": {
                    "portfolio_id": portfolio_id,
                    "reason_code": exc.reason_code,
                    "reason": exc.reason,
                }
            },
        )
        raise HTTPException(status_code=HTTP_422_UNPROCESSABLE, detail=str(exc)) from exc
    if resolved.reason:
        logger.info(
            "rebalance.manual.reason",
            extra={
                "extra_fields": {
                    "portfolio_id": portfolio_id,
                    "job_id": result.job_id,
                    "reason": resolved.reason,
                    "idempotency_key": idempotency_key,
                }
            },
        )
    return result


@router.get(
    "/{portfolio_id}/rebalance-status",
    response_model=RebalanceStatus,
    status_code=status.HTTP_200_OK,
    summary="Get Rebalance Status",
    description=(
        "Returns the current drift analysis and every gate the scanner would apply: "
        "market conditions, cooldown, concentration, risk verdict and lock state."
    ),
)
async def get_rebalance_status(
    portfolio_id: PortfolioIdPath,
    orchestrator: Annotated[RebalanceOrchestrator, Depends(get_orchestrator)],
) -> RebalanceStatus:
    try:
        return await orchestrator.rebalance_status(portfolio_id)
    except PortfolioNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.get(
    "/{portfolio_id}/rebalance-history",
    response_model=RebalanceHistoryResponse,
    status_code=status.HTTP_200_OK,
    summary="Get Rebalance History",
    description="Returns audit events for the portfolio, newest first.",
)
async def get_rebalance_history(
    portfolio_id: PortfolioIdPath,
    orchestrator: Annotated[RebalanceOrchestrator, Depends(get_orchestrator)],
    limit: Annotated[
        int,
        Query(ge=1, le=500, description="Maximum number of events to return.", examples=[50]),
    ] = 50,
) -> RebalanceHistoryResponse:
    try:
        events = await orchestrator.rebalance_history(portfolio_id, limit=limit)
    except PortfolioNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return RebalanceHistoryResponse(portfolio_id=portfolio_id, events=events)
