from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Mapping, Optional

from src.core.jobs.models import QueuedJob
from src.core.models import (
    LedgerExecutionResult,
    Portfolio,
    PriceQuote,
    PriceSnapshot,
    RiskVerdict,
    StrategyConfig,
)

FIXED_NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


def decimals(values: Mapping[str, str]) -> dict[str, Decimal]:
    return {symbol: Decimal(value) for symbol, value in values.items()}


def portfolio(
    portfolio_id: str = "pf_001",
    *,
    allocations: Optional[Mapping[str, str]] = None,
    balances: Optional[Mapping[str, str]] = None,
    threshold: str = "5",
    strategy: str = "threshold",
    strategy_config: Optional[StrategyConfig] = None,
    last_rebalance: Optional[datetime] = None,
    user_address: Optional[str] = "GUSER",
    version: int = 1,
) -> Portfolio:
    return Portfolio(
        id=portfolio_id,
        user_address=user_address,
        allocations=decimals(allocations or {"XLM": "50", "BTC": "50"}),
        balances=decimals(balances or {"XLM": "60", "BTC": "40"}),
        threshold=Decimal(threshold),
        strategy=strategy,
        strategy_config=strategy_config or StrategyConfig(),
        last_rebalance=last_rebalance,
        version=version,
    )


def quote(price: str, change: str = "0", *, age: Optional[timedelta] = None) -> PriceQuote:
    return PriceQuote(
        price=Decimal(price),
        change=Decimal(change),
        timestamp=FIXED_NOW - age if age is not None else FIXED_NOW,
    )


def prices(values: Optional[Mapping[str, str]] = None, **changes: str) -> PriceSnapshot:
    """Unit-price snapshot; XLM/BTC default to 1 so balances read as values."""
    resolved = values or {"XLM": "1", "BTC": "1"}
    return {symbol: quote(price, changes.get(symbol, "0")) for symbol, price in resolved.items()}


def queued_job(
    payload: Mapping,
    *,
    job_id: str = "job-1",
    queue_name: str = "rebalance",
    attempts_made: int = 1,
    max_attempts: int = 5,
) -> QueuedJob:
    return QueuedJob(
        job_id=job_id,
        queue_name=queue_name,
        name=f"{queue_name}-job",
        payload=dict(payload),
        attempts_made=attempts_made,
        max_attempts=max_attempts,
        created_at=FIXED_NOW,
    )


class StaticPriceProvider:
    def __init__(self, snapshot: PriceSnapshot) -> None:
        self.snapshot = snapshot
        self.calls = 0

    async def get_current_prices(self) -> PriceSnapshot:
        self.calls += 1
        return dict(self.snapshot)


class StubRiskModel:
    def __init__(self, *, allowed: bool = True, reason: Optional[str] = None) -> None:
        self.allowed = allowed
        self.reason = reason

    def should_allow_rebalance(self, portfolio: Portfolio, prices: PriceSnapshot) -> RiskVerdict:
        return RiskVerdict(allowed=self.allowed, reason=self.reason)


class RecordingLedger:
    """Ledger double that fails a configurable number of times before succeeding."""

    def __init__(
        self,
        *,
        needed: bool = True,
        failures: int = 0,
        result: Optional[LedgerExecutionResult] = None,
        on_execute=None,
    ) -> None:
        self.needed = needed
        self.failures = failures
        self.result = result or LedgerExecutionResult(
            trades=2,
            gas_used="0.00002 XLM",
            balances=decimals({"XLM": "50", "BTC": "50"}),
            total_value=Decimal("100"),
        )
        self.on_execute = on_execute
        self.executed: list[str] = []

    async def check_rebalance_needed(self, portfolio_id: str) -> bool:
        return self.needed

    async def execute_rebalance(self, portfolio_id: str) -> LedgerExecutionResult:
        self.executed.append(portfolio_id)
        if self.on_execute is not None:
            await self.on_execute(portfolio_id)
        if self.failures > 0:
            self.failures -= 1
            raise RuntimeError("LEDGER_TIMEOUT")
        return self.result


class RecordingNotificationSink:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.sent = []

    async def notify(self, notification) -> None:
        if self.fail:
            raise RuntimeError("NOTIFICATION_CHANNEL_DOWN")
        self.sent.append(notification)
