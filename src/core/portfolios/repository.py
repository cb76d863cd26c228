from typing import Optional, Protocol

from src.core.models import (
    Portfolio,
    PortfolioAnalyticsSnapshot,
    PortfolioStateUpdate,
    RebalanceAuditEvent,
)


class PortfolioRepository(Protocol):
    def save_portfolio(self, portfolio: Portfolio) -> Portfolio: ...

    def get_portfolio(self, *, portfolio_id: str) -> Optional[Portfolio]: ...

    def list_portfolios(self) -> list[Portfolio]: ...

    def apply_portfolio_update(
        self,
        *,
        portfolio_id: str,
        expected_version: int,
        update: PortfolioStateUpdate,
    ) -> Portfolio: ...

    def append_audit_event(self, event: RebalanceAuditEvent) -> None: ...

    def list_audit_events(self, *, portfolio_id: str, limit: int) -> list[RebalanceAuditEvent]: ...

    def save_analytics_snapshot(self, snapshot: PortfolioAnalyticsSnapshot) -> None: ...

    def list_analytics_snapshots(
        self, *, portfolio_id: str, limit: int
    ) -> list[PortfolioAnalyticsSnapshot]: ...
