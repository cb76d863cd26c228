"""
FILE: src/core/models.py
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

RebalanceStrategyType = Literal["threshold", "periodic", "volatility", "custom"]
RebalanceTrigger = Literal["scheduler", "manual", "force"]
RebalanceEventStatus = Literal["completed", "failed"]

ALLOCATION_SUM_TARGET = Decimal("100")
ALLOCATION_SUM_EPSILON = Decimal("0.01")


def assume_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive timestamps are read as UTC so they compare with aware clocks."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class StrategyConfig(BaseModel):
    interval_days: Optional[Decimal] = Field(
        default=None,
        ge=0,
        description="Periodic strategy: days between rebalances (default 7).",
        examples=["7"],
    )
    volatility_threshold_pct: Optional[Decimal] = Field(
        default=None,
        ge=0,
        description="Volatility strategy: absolute 24h change that triggers (default 10).",
        examples=["10"],
    )
    min_days_between_rebalance: Optional[Decimal] = Field(
        default=None,
        ge=0,
        description="Custom strategy: minimum days since last rebalance (default 1).",
        examples=["1"],
    )


class Portfolio(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "id": "pf_001",
                "user_address": "GABC...XYZ",
                "allocations": {"XLM": "50", "BTC": "50"},
                "balances": {"XLM": "1000", "BTC": "0.01"},
                "total_value": "850.00",
                "threshold": "5",
                "strategy": "threshold",
                "version": 1,
            }
        }
    }

    id: str = Field(description="Portfolio identifier.", examples=["pf_001"])
    user_address: Optional[str] = Field(
        default=None,
        description="Owner address, used as the notification target.",
        examples=["GABC...XYZ"],
    )
    allocations: Dict[str, Decimal] = Field(
        description="Target allocation percentage per asset symbol; sums to 100.",
        examples=[{"XLM": "50", "BTC": "50"}],
    )
    balances: Dict[str, Decimal] = Field(
        default_factory=dict,
        description="Held quantity per asset symbol.",
        examples=[{"XLM": "1000", "BTC": "0.01"}],
    )
    total_value: Decimal = Field(default=Decimal("0"), description="Last known total value.")
    threshold: Decimal = Field(
        default=Decimal("5"),
        ge=1,
        le=50,
        description="Drift in percentage points that triggers a rebalance.",
    )
    strategy: str = Field(
        default="threshold",
        description="Rebalance strategy: threshold, periodic, volatility or custom.",
        examples=["threshold"],
    )
    strategy_config: StrategyConfig = Field(default_factory=StrategyConfig)
    last_rebalance: Optional[datetime] = Field(
        default=None,
        description="Timestamp of the last successful rebalance (UTC).",
    )
    version: int = Field(default=1, ge=1, description="Optimistic concurrency version.")
    created_at: Optional[datetime] = Field(default=None, description="Creation timestamp (UTC).")

    @field_validator("last_rebalance", "created_at")
    @classmethod
    def validate_timestamps(cls, v: Optional[datetime]) -> Optional[datetime]:
        return assume_utc(v)

    @field_validator("allocations")
    @classmethod
    def validate_allocations(cls, v: Dict[str, Decimal]) -> Dict[str, Decimal]:
        if not v:
            raise ValueError("allocations must not be empty")
        for symbol, percentage in v.items():
            if percentage < 0:
                raise ValueError(f"allocation for {symbol} must not be negative")
        total = sum(v.values(), Decimal("0"))
        if abs(total - ALLOCATION_SUM_TARGET) > ALLOCATION_SUM_EPSILON:
            raise ValueError("allocations must sum to 100 (+/- 0.01)")
        return v


class PriceQuote(BaseModel):
    price: Decimal = Field(ge=0, description="Current price in the quote currency.")
    change: Decimal = Field(default=Decimal("0"), description="24h change in percent.")
    timestamp: Optional[datetime] = Field(
        default=None,
        description="Time the quote was observed (UTC).",
    )

    @field_validator("timestamp")
    @classmethod
    def validate_timestamp(cls, v: Optional[datetime]) -> Optional[datetime]:
        return assume_utc(v)


PriceSnapshot = Dict[str, PriceQuote]


class SafetyVerdict(BaseModel):
    safe: bool
    reason: Optional[str] = None
    reason_code: Optional[str] = None

    @classmethod
    def ok(cls) -> "SafetyVerdict":
        return cls(safe=True)

    @classmethod
    def blocked(cls, reason_code: str, reason: str) -> "SafetyVerdict":
        return cls(safe=False, reason=reason, reason_code=reason_code)


class RiskVerdict(BaseModel):
    allowed: bool
    reason: Optional[str] = None


class RebalanceJobPayload(BaseModel):
    portfolio_id: str = Field(min_length=1)
    triggered_by: RebalanceTrigger = "scheduler"


class LedgerExecutionResult(BaseModel):
    trades: int = Field(default=0, ge=0)
    gas_used: str = Field(default="0 XLM")
    balances: Optional[Dict[str, Decimal]] = None
    total_value: Optional[Decimal] = None


class PortfolioStateUpdate(BaseModel):
    balances: Optional[Dict[str, Decimal]] = None
    total_value: Optional[Decimal] = None
    last_rebalance: Optional[datetime] = None

    @field_validator("last_rebalance")
    @classmethod
    def validate_last_rebalance(cls, v: Optional[datetime]) -> Optional[datetime]:
        return assume_utc(v)

    @model_validator(mode="after")
    def validate_not_empty(self) -> "PortfolioStateUpdate":
        if self.balances is None and self.total_value is None and self.last_rebalance is None:
            raise ValueError("portfolio update must change at least one field")
        return self


class RebalanceAuditEvent(BaseModel):
    event_id: str = Field(examples=["rbe_abc123def456"])
    portfolio_id: str
    trigger: str = Field(examples=["Automatic Rebalancing"])
    triggered_by: RebalanceTrigger
    trades: int = 0
    gas_used: str = "0 XLM"
    status: RebalanceEventStatus
    attempt: int = Field(default=1, ge=1)
    error: Optional[str] = None
    is_automatic: bool
    created_at: datetime


class PortfolioAnalyticsSnapshot(BaseModel):
    portfolio_id: str
    captured_at: datetime
    total_value: Decimal
    allocations: Dict[str, Decimal]
    balances: Dict[str, Decimal]


class RebalanceNotification(BaseModel):
    user_id: Optional[str]
    event_type: Literal["rebalance"] = "rebalance"
    title: str
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
