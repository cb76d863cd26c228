import json
from contextlib import closing
from importlib.util import find_spec
from typing import Optional

from src.core.models import (
    Portfolio,
    PortfolioAnalyticsSnapshot,
    PortfolioStateUpdate,
    RebalanceAuditEvent,
)
from src.core.portfolios.service import PortfolioNotFoundError, PortfolioVersionConflictError


class PostgresPortfolioRepository:
    def __init__(self, *, dsn: str) -> None:
        if not dsn:
            raise RuntimeError("REBALANCER_POSTGRES_DSN_REQUIRED")
        if find_spec("psycopg") is None:
            raise RuntimeError("REBALANCER_POSTGRES_DRIVER_MISSING")
        self._dsn = dsn
        self._init_db()

    def save_portfolio(self, portfolio: Portfolio) -> Portfolio:
        query = """
            INSERT INTO portfolios (portfolio_id, version, portfolio_json)
            VALUES (%s, %s, %s)
            ON CONFLICT (portfolio_id) DO UPDATE SET
                version=portfolios.version + 1,
                portfolio_json=excluded.portfolio_json
            RETURNING version
        """
        with closing(self._connect()) as connection:
            row = connection.execute(
                query,
                (portfolio.id, portfolio.version, _portfolio_json(portfolio)),
            ).fetchone()
            connection.commit()
        stored = portfolio.model_copy(deep=True)
        stored.version = row["version"]
        return stored

    def get_portfolio(self, *, portfolio_id: str) -> Optional[Portfolio]:
        query = """
            SELECT version, portfolio_json
            FROM portfolios
            WHERE portfolio_id = %s
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
        with closing(self._connect()) as connection:
            current = _to_portfolio(
                connection.execute(
                    "SELECT version, portfolio_json FROM portfolios WHERE portfolio_id = %s",
                    (portfolio_id,),
                ).fetchone()
            )
            if current is None:
                raise PortfolioNotFoundError(portfolio_id)
            updated = current.model_copy(update=update.model_dump(exclude_none=True), deep=True)
            updated.version = expected_version + 1
            row = connection.execute(
                """
                UPDATE portfolios
                SET version = version + 1, portfolio_json = %s
                WHERE portfolio_id = %s AND version = %s
                RETURNING version
                """,
                (_portfolio_json(updated), portfolio_id, expected_version),
            ).fetchone()
            if row is None:
                connection.rollback()
                latest = connection.execute(
                    "SELECT version FROM portfolios WHERE portfolio_id = %s",
                    (portfolio_id,),
                ).fetchone()
                if latest is None:
                    raise PortfolioNotFoundError(portfolio_id)
                raise PortfolioVersionConflictError(
                    portfolio_id,
                    expected_version=expected_version,
                    current_version=latest["version"],
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
            ) VALUES (%s, %s, %s, %s)
        """
        with closing(self._connect()) as connection:
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
            WHERE portfolio_id = %s
            ORDER BY created_at DESC, event_id DESC
            LIMIT %s
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
            ) VALUES (%s, %s, %s)
        """
        with closing(self._connect()) as connection:
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
            WHERE portfolio_id = %s
            ORDER BY captured_at DESC
            LIMIT %s
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(query, (portfolio_id, limit)).fetchall()
        return [
            PortfolioAnalyticsSnapshot.model_validate_json(row["snapshot_json"]) for row in rows
        ]

    def _connect(self):
        psycopg, dict_row = _import_psycopg()
        return psycopg.connect(self._dsn, row_factory=dict_row)

    def _init_db(self) -> None:
        with closing(self._connect()) as connection:
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS portfolios (
                    portfolio_id TEXT PRIMARY KEY,
                    version INTEGER NOT NULL,
                    portfolio_json TEXT NOT NULL
                )
                """
            )
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS rebalance_audit_events (
                    event_id TEXT PRIMARY KEY,
                    portfolio_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    event_json TEXT NOT NULL
                )
                """
            )
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS portfolio_analytics_snapshots (
                    snapshot_id BIGSERIAL PRIMARY KEY,
                    portfolio_id TEXT NOT NULL,
                    captured_at TEXT NOT NULL,
                    snapshot_json TEXT NOT NULL
                )
                """
            )
            connection.commit()


def _import_psycopg():
    import psycopg
    from psycopg.rows import dict_row

    return psycopg, dict_row


def _portfolio_json(portfolio: Portfolio) -> str:
    payload = portfolio.model_dump(mode="json", exclude={"version"})
    return json.dumps(payload, separators=(",", ":"), sort_keys=True)


def _to_portfolio(row) -> Optional[Portfolio]:
    if row is None:
        return None
    payload = json.loads(row["portfolio_json"])
    payload["version"] = row["version"]
    return Portfolio.model_validate(payload)
