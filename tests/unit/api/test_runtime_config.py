import asyncio
import json

import pytest

from src.api.runtime_config import (
    RuntimeSettings,
    build_idempotency_repository,
    build_portfolio_repository,
    build_runtime,
    env_csv_set,
    env_flag,
    env_int,
    env_non_negative_int,
    load_runtime_settings,
    store_backend_name,
)
from src.core.locks import InMemoryLockBackend
from src.infrastructure.idempotency import SqliteIdempotencyRepository
from src.infrastructure.portfolios import InMemoryPortfolioRepository, SqlitePortfolioRepository


def test_env_helpers_fall_back_on_missing_or_invalid_values(monkeypatch):
    monkeypatch.setenv("FLAG_ON", "Yes")
    monkeypatch.setenv("INT_BAD", "abc")
    monkeypatch.setenv("INT_ZERO", "0")
    monkeypatch.setenv("METHODS", " post, put ,")
    monkeypatch.delenv("MISSING", raising=False)

    assert env_flag("FLAG_ON", False) is True
    assert env_flag("MISSING", True) is True
    assert env_int("INT_BAD", 7) == 7
    assert env_int("INT_ZERO", 7) == 7
    assert env_non_negative_int("INT_ZERO", 7) == 0
    assert env_csv_set("METHODS", {"POST"}) == {"POST", "PUT"}
    assert env_csv_set("MISSING", {"POST"}) == {"POST"}


def test_store_backend_aliases_and_unknown_value(monkeypatch):
    monkeypatch.setenv("REBALANCER_STORE_BACKEND", "sqlite")
    assert store_backend_name() == "SQL"

    monkeypatch.setenv("REBALANCER_STORE_BACKEND", "mongo")
    with pytest.warns(RuntimeWarning):
        assert store_backend_name() == "IN_MEMORY"


def test_load_runtime_settings_reads_environment(monkeypatch):
    monkeypatch.setenv("REBALANCER_SCAN_INTERVAL_MINUTES", "15")
    monkeypatch.setenv("REBALANCER_REBALANCE_CONCURRENCY", "5")
    monkeypatch.setenv("REBALANCER_JOB_BACKOFF_SECONDS", "0")
    monkeypatch.setenv("REBALANCER_IDEMPOTENT_METHODS", "POST")

    settings = load_runtime_settings()

    assert settings.scan_interval_minutes == 15
    assert settings.analytics_interval_minutes == 60
    assert settings.rebalance_concurrency == 5
    assert settings.job_backoff_seconds == 0
    assert settings.idempotent_methods == {"POST"}
    assert settings.scheduler_enabled is False
    assert settings.lock_ttl_seconds == 300


def test_repository_selection_by_backend(tmp_path):
    sql = RuntimeSettings(store_backend="SQL", sql_path=str(tmp_path / "store.db"))

    assert isinstance(build_portfolio_repository(RuntimeSettings()), InMemoryPortfolioRepository)
    assert isinstance(build_portfolio_repository(sql), SqlitePortfolioRepository)
    assert isinstance(build_idempotency_repository(sql), SqliteIdempotencyRepository)


def test_postgres_backend_requires_dsn():
    with pytest.raises(RuntimeError) as exc:
        build_portfolio_repository(RuntimeSettings(store_backend="POSTGRES"))
    assert str(exc.value) == "REBALANCER_POSTGRES_DSN_REQUIRED"


def test_build_runtime_seeds_valid_portfolios():
    seed = json.dumps(
        [
            {"id": "pf_001", "allocations": {"XLM": "50", "BTC": "50"}},
            {"id": "bad", "allocations": {"XLM": "10"}},
        ]
    )
    settings = RuntimeSettings(seed_portfolios_json=seed, scheduler_enabled=False)

    runtime = asyncio.run(build_runtime(settings))
    portfolios = asyncio.run(runtime.portfolios.list_portfolios())

    assert [portfolio.id for portfolio in portfolios] == ["pf_001"]
    assert isinstance(runtime.lock_backend, InMemoryLockBackend)
    assert runtime.orchestrator.queues[1].name == "rebalance"
