from src.infrastructure.portfolios.in_memory import InMemoryPortfolioRepository
from src.infrastructure.portfolios.postgres import PostgresPortfolioRepository
from src.infrastructure.portfolios.sqlite import SqlitePortfolioRepository

__all__ = [
    "InMemoryPortfolioRepository",
    "PostgresPortfolioRepository",
    "SqlitePortfolioRepository",
]
