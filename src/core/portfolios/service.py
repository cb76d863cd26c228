import asyncio
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

from src.core.models import (
    LedgerExecutionResult,
    Portfolio,
    PortfolioAnalyticsSnapshot,
    PortfolioStateUpdate,
    RebalanceAuditEvent,
    RebalanceTrigger,
)
from src.core.portfolios.repository import PortfolioRepository


class PortfolioNotFoundError(Exception):
    def __init__(self, portfolio_id: str) -> None:
        super().__init__("PORTFOLIO_NOT_FOUND")
        self.portfolio_id = portfolio_id


class PortfolioVersionConflictError(Exception):
    def __init__(self, portfolio_id: str, *, expected_version: int, current_version: int) -> None:
        super().__init__("PORTFOLIO_VERSION_CONFLICT")
        self.portfolio_id = portfolio_id
        self.expected_version = expected_version
        self.current_version = current_version


def trigger_label(triggered_by: RebalanceTrigger) -> str:
    if triggered_by == "scheduler":
        return "Automatic Rebalancing"
    if triggered_by == "force":
        return "Forced Rebalancing"
    return "Manual Rebalancing"


class PortfolioStateService:
    """Async facade over the versioned portfolio store used by workers."""

    def __init__(
        self,
        *,
        repository: PortfolioRepository,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._clock = clock or _utc_now

    @property
    def repository(self) -> PortfolioRepository:
        return self._repository

    async def save_portfolio(self, portfolio: Portfolio) -> Portfolio:
        return await asyncio.to_thread(self._repository.save_portfolio, portfolio)

    async def list_portfolios(self) -> list[Portfolio]:
        return await asyncio.to_thread(self._repository.list_portfolios)

    async def get_portfolio(self, *, portfolio_id: str) -> Portfolio:
        portfolio = await asyncio.to_thread(
            self._repository.get_portfolio, portfolio_id=portfolio_id
        )
        if portfolio is None:
            raise PortfolioNotFoundError(portfolio_id)
        return portfolio

    async def commit_rebalance(
        self,
        *,
        portfolio: Portfolio,
        result: LedgerExecutionResult,
    ) -> Portfolio:
        update = PortfolioStateUpdate(
            balances=result.balances,
            total_value=result.total_value,
            last_rebalance=self._clock(),
        )
        return await asyncio.to_thread(
            self._repository.apply_portfolio_update,
            portfolio_id=portfolio.id,
            expected_version=portfolio.version,
            update=update,
        )

    async def record_event(
        self,
        *,
        portfolio_id: str,
        triggered_by: RebalanceTrigger,
        status: str,
        attempt: int,
        trades: int = 0,
        gas_used: str = "0 XLM",
        error: Optional[str] = None,
    ) -> RebalanceAuditEvent:
        label = trigger_label(triggered_by)
        if status == "failed":
            label = f"{label} (Failed - attempt {attempt})"
        event = RebalanceAuditEvent(
            event_id=f"rbe_{uuid.uuid4().hex[:12]}",
            portfolio_id=portfolio_id,
            trigger=label,
            triggered_by=triggered_by,
            trades=trades,
            gas_used=gas_used,
            status=status,
            attempt=max(attempt, 1),
            error=error,
            is_automatic=triggered_by == "scheduler",
            created_at=self._clock(),
        )
        await asyncio.to_thread(self._repository.append_audit_event, event)
        return event

    async def list_events(self, *, portfolio_id: str, limit: int = 50) -> list[RebalanceAuditEvent]:
        return await asyncio.to_thread(
            self._repository.list_audit_events, portfolio_id=portfolio_id, limit=limit
        )

    async def latest_snapshot(self, *, portfolio_id: str) -> Optional[PortfolioAnalyticsSnapshot]:
        snapshots = await asyncio.to_thread(
            self._repository.list_analytics_snapshots, portfolio_id=portfolio_id, limit=1
        )
        return snapshots[0] if snapshots else None

    async def save_snapshot(self, snapshot: PortfolioAnalyticsSnapshot) -> None:
        await asyncio.to_thread(self._repository.save_analytics_snapshot, snapshot)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
