from typing import List, Optional

from pydantic import BaseModel, Field

from src.core.models import RebalanceAuditEvent


class ManualRebalanceRequest(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"force": False, "reason": "Client requested rebalance after deposit."}
        }
    }

    force: bool = Field(
        default=False,
        description="Skip market, risk and need checks and queue the rebalance directly.",
    )
    reason: Optional[str] = Field(
        default=None,
        max_length=500,
        description="Free-text note recorded in logs for the manual trigger.",
    )


class SchedulerControlResponse(BaseModel):
    status: str = Field(examples=["started"])
    schedules: List[str] = Field(
        default_factory=list,
        examples=[["repeatable-analytics-snapshot", "repeatable-portfolio-check"]],
    )


class RebalanceHistoryResponse(BaseModel):
    portfolio_id: str
    events: List[RebalanceAuditEvent]


class HealthResponse(BaseModel):
    status: str = Field(examples=["ok"])
