import json
import sqlite3
from contextlib import closing
from pathlib import Path
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


class SqlitePortfolioRepository(PortfolioRepository):
    def __init__(self, *, database_path: str) -> None:
        self._lock = Lock()
        self._database_path = database_path
        self._init_db()

    def save_portfolio(self, portfolio: Portfolio) -> Portfolio:
        with self._lock, closing(self._connect()) as connection:
            row = connection.execute(
                "SELECT version FROM portfolios WHERE portfolio_id = ?",
                (portfolio.id,),
            ).fetchone()
            stored = portfolio.model_copy(deep=True)
            if row is not None:
                stored.version = row["version"] + 1
            connection.execute(
                """
                INSERT INTO portfolios (portfolio_id, version, portfolio_json)
                VALUES (?, ?, ?)
                ON CONFLICT(portfolio_id) DO UPDATE SET
                    version=excluded.version,
                    portfolio_json=excluded.portfolio_json
                """,
                (stored.id, stored.version, _portfolio_json(stored)),
            )
            connection.commit()
        return stored

    def get_portfolio(self, *, portfolio_id: str) -> Optional[Portfolio]:
        query = """
            SELECT version, portfolio_json
            FROM portfolios
            WHERE portfolio_id = ?
        """
        with closing(self._connect()) as connection:
            row = connection.execute(query, (portfolio_id,)).fetchone()
        return _to_portfolio(row)

    def list_portfolios(self) -> list[Portfolio]:
        query = """
            SELECT version, portfolio_json
            FROM portfolios
            ORDER BY portfolio_id ASC
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(query).fetchall()
        return [_to_portfolio(row) for row in rows]

    def apply_portfolio_update(
        self,
        *,
        portfolio_id: str,
        expected_version: int,
        update: PortfolioStateUpdate,
    ) -> Portfolio:
        with self._lock, closing(self._connect()) as connection:
            row = connection.execute(
                "SELECT version, portfolio_json FROM portfolios WHERE portfolio_id = ?",
                (portfolio_id,),
            ).fetchone()
            current = _to_portfolio(row)
            if current is None:
                raise PortfolioNotFoundError(portfolio_id)
            updated = current.model_copy(update=update.model_dump(exclude_none=True), deep=True)
            updated.version = expected_version + 1
            cursor = connection.execute(
                """
                UPDATE portfolios
                SET version = version + 1, portfolio_json = ?
                WHERE portfolio_id = ? AND version = ?
                """,
                (_portfolio_json(updated), portfolio_id, expected_version),
            )
            if cursor.rowcount == 0:
                connection.rollback()
                raise PortfolioVersionConflictError(
                    portfolio_id,
                    expected_version=expected_version,
                    current_version=current.version,
                )
            connection.commit()
        return updated

    def append_audit_event(self, event: RebalanceAuditEvent) -> None:
        query = """
            INSERT INTO rebalance_audit_events (
                event_id,
                portfolio_id,
                created_at,
                event_json
            ) VALUES (?, ?, ?, ?)
        """
        with self._lock, closing(self._connect()) as connection:
            connection.execute(
                query,
                (
                    event.event_id,
                    event.portfolio_id,
                    event.created_at.isoformat(),
                    event.model_dump_json(),
                ),
            )
            connection.commit()

    def list_audit_events(self, *, portfolio_id: str, limit: int) -> list[RebalanceAuditEvent]:
        query = """
            SELECT event_json
            FROM rebalance_audit_events
            WHERE portfolio_id = ?
            ORDER BY created_at DESC, event_id DESC
            LIMIT ?
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(query, (portfolio_id, limit)).fetchall()
        return [RebalanceAuditEvent.model_validate_json(row["event_json"]) for row in rows]

    def save_analytics_snapshot(self, snapshot: PortfolioAnalyticsSnapshot) -> None:
        query = """
            INSERT INTO portfolio_analytics_snapshots (
                portfolio_id,
                captured_at,
                snapshot_json
            ) VALUES (?, ?, ?)
        """
        with self._lock, closing(self._connect()) as connection:
            connection.execute(
                query,
                (
                    snapshot.portfolio_id,
                    snapshot.captured_at.isoformat(),
                    snapshot.model_dump_json(),
                ),
            )
            connection.commit()

    def list_analytics_snapshots(
        self, *, portfolio_id: str, limit: int
    ) -> list[PortfolioAnalyticsSnapshot]:
        query = """
            SELECT snapshot_json
            FROM portfolio_analytics_snapshots
            WHERE portfolio_id = ?
            ORDER BY captured_at DESC
            LIMIT ?
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(query, (portfolio_id, limit)).fetchall()
        return [
            PortfolioAnalyticsSnapshot.model_validate_json(row["snapshot_json"]) for row in rows
        ]

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(self._database_path)
        connection.row_factory = sqlite3.Row
        return connection

    def _init_db(self) -> None:
        Path(self._database_path).parent.mkdir(parents=True, exist_ok=True)
        with closing(self._connect()) as connection:
            connection.executescript(
                """
                CREATE TABLE IF NOT EXISTS portfolios (
                    portfolio_id TEXT PRIMARY KEY,
                    version INTEGER NOT NULL,
                    portfolio_json TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS rebalance_audit_events (
                    event_id TEXT PRIMARY KEY,
                    portfolio_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    event_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_rebalance_audit_events_portfolio
                    ON rebalance_audit_events (portfolio_id, created_at);

                CREATE TABLE IF NOT EXISTS portfolio_analytics_snapshots (
                    snapshot_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    portfolio_id TEXT NOT NULL,
                    captured_at TEXT NOT NULL,
                    snapshot_json TEXT NOT NULL
                );
                """
            )
            connection.commit()


def _portfolio_json(portfolio: Portfolio) -> str:
    payload = portfolio.model_dump(mode="json", exclude={"version"})
    return json.dumps(payload, separators=(",", ":"), sort_keys=True)


def _to_portfolio(row) -> Optional[Portfolio]:
    if row is None:
        return None
    payload = json.loads(row["portfolio_json"])
    payload["version"] = row["version"]
    return Portfolio.model_validate(payload)
