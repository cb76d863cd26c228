"""
FILE: tests/conftest.py
Shared fixtures for orchestration tests.
"""

from pathlib import Path

import pytest

from src.core.portfolios import PortfolioStateService
from src.infrastructure.portfolios import InMemoryPortfolioRepository
from tests.shared.factories import FIXED_NOW


def _has_marker(item: pytest.Item, name: str) -> bool:
    return item.get_closest_marker(name) is not None


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    for item in items:
        if _has_marker(item, "unit") or _has_marker(item, "integration"):
            continue

        path = Path(str(item.fspath)).as_posix().lower()
        if "/tests/integration/" in path or "_integration.py" in path:
            item.add_marker(pytest.mark.integration)
            continue
        item.add_marker(pytest.mark.unit)


@pytest.fixture(autouse=True)
def in_memory_runtime_env(monkeypatch: pytest.MonkeyPatch):
    """Keep every test on in-process stores with the scheduler switched off."""

    monkeypatch.delenv("APP_PERSISTENCE_PROFILE", raising=False)
    monkeypatch.setenv("REBALANCER_STORE_BACKEND", "IN_MEMORY")
    monkeypatch.delenv("REBALANCER_REDIS_URL", raising=False)
    monkeypatch.delenv("REBALANCER_POSTGRES_DSN", raising=False)
    monkeypatch.delenv("REBALANCER_SEED_PORTFOLIOS_JSON", raising=False)
    monkeypatch.delenv("REBALANCER_PRICE_SNAPSHOT_JSON", raising=False)
    monkeypatch.setenv("REBALANCER_SCHEDULER_ENABLED", "false")


@pytest.fixture
def portfolio_repository():
    return InMemoryPortfolioRepository()


@pytest.fixture
def portfolio_service(portfolio_repository):
    return PortfolioStateService(repository=portfolio_repository, clock=lambda: FIXED_NOW)
