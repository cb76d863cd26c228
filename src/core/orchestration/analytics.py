import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from src.core.common.precision import percentage, position_values
from src.core.jobs.models import QueuedJob
from src.core.models import Portfolio, PortfolioAnalyticsSnapshot, PriceSnapshot
from src.core.orchestration.ports import PriceProvider
from src.core.portfolios.service import PortfolioStateService

logger = logging.getLogger(__name__)

MIN_SNAPSHOT_INTERVAL = timedelta(minutes=5)


def build_snapshot(
    portfolio: Portfolio, prices: PriceSnapshot, *, captured_at: datetime
) -> PortfolioAnalyticsSnapshot:
    unit_prices = {symbol: quote.price for symbol, quote in prices.items()}
    values, total_value = position_values(portfolio.balances, unit_prices)
    return PortfolioAnalyticsSnapshot(
        portfolio_id=portfolio.id,
        captured_at=captured_at,
        total_value=total_value,
        allocations={symbol: percentage(value, total_value) for symbol, value in values.items()},
        balances=dict(portfolio.balances),
    )


class AnalyticsSnapshotProcessor:
    """Records a valuation snapshot of every portfolio from one price fetch.

    Read-only with respect to portfolios, so it takes no locks. A portfolio
    snapshotted less than five minutes ago is left alone.
    """

    def __init__(
        self,
        *,
        portfolios: PortfolioStateService,
        price_provider: PriceProvider,
        min_interval: timedelta = MIN_SNAPSHOT_INTERVAL,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._portfolios = portfolios
        self._price_provider = price_provider
        self._min_interval = min_interval
        self._clock = clock or _utc_now

    async def process(self, job: QueuedJob) -> None:
        captured = await self.capture_all()
        logger.info(
            "analytics.snapshot.cycle_completed",
            extra={"extra_fields": {"job_id": job.job_id, "captured": captured}},
        )

    async def capture_all(self) -> int:
        portfolios = await self._portfolios.list_portfolios()
        if not portfolios:
            return 0
        prices = await self._price_provider.get_current_prices()
        captured = 0
        for portfolio in portfolios:
            try:
                snapshot = await self.capture(portfolio, prices)
            except Exception as exc:
                logger.error(
                    "analytics.snapshot.failed",
                    extra={"extra_fields": {"portfolio_id": portfolio.id, "error": str(exc)}},
                )
                continue
            if snapshot is not None:
                captured += 1
        return captured

    async def capture(
        self, portfolio: Portfolio, prices: PriceSnapshot
    ) -> Optional[PortfolioAnalyticsSnapshot]:
        now = self._clock()
        latest = await self._portfolios.latest_snapshot(portfolio_id=portfolio.id)
        if latest is not None and now - latest.captured_at < self._min_interval:
            return None
        snapshot = build_snapshot(portfolio, prices, captured_at=now)
        await self._portfolios.save_snapshot(snapshot)
        return snapshot


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
