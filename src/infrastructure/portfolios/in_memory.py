from copy import deepcopy
from threading import Lock
from typing import Optional

from src.core.models import (
    Portfolio,
    PortfolioAnalyticsSnapshot,
    PortfolioStateUpdate,
    RebalanceAuditEvent,
)
from src.core.portfolios.repository import PortfolioRepository
from src.core.portfolios.service import PortfolioNotFoundError, PortfolioVersionConflictError


class InMemoryPortfolioRepository(PortfolioRepository):
    def __init__(self) -> None:
        self._lock = Lock()
        self._portfolios: dict[str, Portfolio] = {}
        self._audit_events: dict[str, list[RebalanceAuditEvent]] = {}
        self._snapshots: dict[str, list[PortfolioAnalyticsSnapshot]] = {}

    def save_portfolio(self, portfolio: Portfolio) -> Portfolio:
        with self._lock:
            existing = self._portfolios.get(portfolio.id)
            stored = portfolio.model_copy(deep=True)
            if existing is not None:
                stored.version = existing.version + 1
            self._portfolios[portfolio.id] = stored
            return deepcopy(stored)

    def get_portfolio(self, *, portfolio_id: str) -> Optional[Portfolio]:
        with self._lock:
            portfolio = self._portfolios.get(portfolio_id)
            return deepcopy(portfolio) if portfolio is not None else None

    def list_portfolios(self) -> list[Portfolio]:
        with self._lock:
            return [deepcopy(self._portfolios[key]) for key in sorted(self._portfolios)]

    def apply_portfolio_update(
        self,
        *,
        portfolio_id: str,
        expected_version: int,
        update: PortfolioStateUpdate,
    ) -> Portfolio:
        with self._lock:
            current = self._portfolios.get(portfolio_id)
            if current is None:
                raise PortfolioNotFoundError(portfolio_id)
            if current.version != expected_version:
                raise PortfolioVersionConflictError(
                    portfolio_id,
                    expected_version=expected_version,
                    current_version=current.version,
                )
            changes = update.model_dump(exclude_none=True)
            updated = current.model_copy(update=changes, deep=True)
            updated.version = current.version + 1
            self._portfolios[portfolio_id] = updated
            return deepcopy(updated)

    def append_audit_event(self, event: RebalanceAuditEvent) -> None:
        with self._lock:
            self._audit_events.setdefault(event.portfolio_id, []).append(deepcopy(event))

    def list_audit_events(self, *, portfolio_id: str, limit: int) -> list[RebalanceAuditEvent]:
        with self._lock:
            events = self._audit_events.get(portfolio_id, [])
            ordered = sorted(events, key=lambda item: item.created_at, reverse=True)
            return [deepcopy(item) for item in ordered[:limit]]

    def save_analytics_snapshot(self, snapshot: PortfolioAnalyticsSnapshot) -> None:
        with self._lock:
            self._snapshots.setdefault(snapshot.portfolio_id, []).append(deepcopy(snapshot))

    def list_analytics_snapshots(
        self, *, portfolio_id: str, limit: int
    ) -> list[PortfolioAnalyticsSnapshot]:
        with self._lock:
            snapshots = self._snapshots.get(portfolio_id, [])
            ordered = sorted(snapshots, key=lambda item: item.captured_at, reverse=True)
            return [deepcopy(item) for item in ordered[:limit]]
