from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from src.core.jobs.models import QueueDepth
from src.core.models import RebalanceTrigger, RiskVerdict, SafetyVerdict
from src.core.strategy.evaluator import AssetDrift


class RebalanceTriggerResult(BaseModel):
    portfolio_id: str = Field(examples=["pf_001"])
    job_id: str = Field(examples=["rebalance-pf_001-3f9c2a7b1d04"])
    triggered_by: RebalanceTrigger = Field(examples=["manual"])
    status: str = Field(default="queued", examples=["queued"])
    queued_at: datetime


class OrchestratorMetrics(BaseModel):
    queues: Dict[str, QueueDepth]
    broker_reachable: bool
    lock_backend_reachable: bool
    lock_degraded: bool
    scheduler_running: bool
    schedules: List[str] = Field(default_factory=list)


class RebalanceStatus(BaseModel):
    portfolio_id: str
    needs_rebalance: bool
    strategy: str
    threshold: Decimal
    total_value: Decimal
    max_drift_pct: Decimal
    drift: List[AssetDrift]
    market: SafetyVerdict
    cooldown: SafetyVerdict
    concentration: SafetyVerdict
    risk: RiskVerdict
    locked: bool
    last_rebalance: Optional[datetime] = None
    version: int
    evaluated_at: datetime
