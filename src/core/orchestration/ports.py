from typing import Protocol

from src.core.models import (
    LedgerExecutionResult,
    Portfolio,
    PriceSnapshot,
    RebalanceNotification,
    RiskVerdict,
)


class PriceProvider(Protocol):
    async def get_current_prices(self) -> PriceSnapshot: ...


class LedgerService(Protocol):
    async def check_rebalance_needed(self, portfolio_id: str) -> bool: ...

    async def execute_rebalance(self, portfolio_id: str) -> LedgerExecutionResult: ...


class RiskModel(Protocol):
    def should_allow_rebalance(
        self, portfolio: Portfolio, prices: PriceSnapshot
    ) -> RiskVerdict: ...


class NotificationSink(Protocol):
    async def notify(self, notification: RebalanceNotification) -> None: ...
