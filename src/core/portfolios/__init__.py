from src.core.portfolios.repository import PortfolioRepository
from src.core.portfolios.service import (
    PortfolioNotFoundError,
    PortfolioStateService,
    PortfolioVersionConflictError,
    trigger_label,
)

__all__ = [
    "PortfolioNotFoundError",
    "PortfolioRepository",
    "PortfolioStateService",
    "PortfolioVersionConflictError",
    "trigger_label",
]
