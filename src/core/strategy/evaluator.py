from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Optional

from pydantic import BaseModel

from src.core.common.precision import drift, percentage, position_values
from src.core.models import Portfolio, PriceSnapshot, StrategyConfig

DEFAULT_INTERVAL_DAYS = Decimal("7")
DEFAULT_VOLATILITY_THRESHOLD_PCT = Decimal("10")
DEFAULT_MIN_DAYS_BETWEEN_REBALANCE = Decimal("1")
# Drift beyond this is treated as bad or stale input and never auto-triggers.
MAX_PLAUSIBLE_DRIFT_PCT = Decimal("50")


class AssetDrift(BaseModel):
    asset: str
    target_pct: Decimal
    current_pct: Decimal
    drift_pct: Decimal


class PortfolioDrift(BaseModel):
    total_value: Decimal
    assets: list[AssetDrift]

    @property
    def max_drift_pct(self) -> Decimal:
        return max((item.drift_pct for item in self.assets), default=Decimal("0"))


def portfolio_drift(portfolio: Portfolio, prices: PriceSnapshot) -> PortfolioDrift:
    unit_prices = {symbol: quote.price for symbol, quote in prices.items()}
    values, total_value = position_values(portfolio.balances, unit_prices)
    assets = []
    for asset, target_pct in portfolio.allocations.items():
        current_pct = percentage(values.get(asset, Decimal("0")), total_value)
        assets.append(
            AssetDrift(
                asset=asset,
                target_pct=target_pct,
                current_pct=current_pct,
                drift_pct=drift(current_pct, target_pct),
            )
        )
    return PortfolioDrift(total_value=total_value, assets=assets)


def _elapsed_since_last_rebalance(portfolio: Portfolio, now: datetime) -> Optional[timedelta]:
    if portfolio.last_rebalance is None:
        return None
    return now - portfolio.last_rebalance


def _days(value: Decimal) -> timedelta:
    return timedelta(seconds=float(value * Decimal("86400")))


class StrategyEvaluator:
    """Decides whether a portfolio's configured strategy calls for a rebalance.

    ``now`` is injectable so evaluations are deterministic in tests; a
    portfolio that has never been rebalanced satisfies every time gate.
    """

    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or _utc_now

    def should_rebalance(
        self,
        portfolio: Portfolio,
        prices: PriceSnapshot,
        *,
        now: Optional[datetime] = None,
    ) -> bool:
        resolved_now = now or self._clock()
        config = portfolio.strategy_config
        strategy = portfolio.strategy
        if strategy == "periodic":
            return self._periodic(portfolio, config, resolved_now)
        if strategy == "volatility":
            return self._volatility(portfolio, prices, config)
        if strategy == "custom":
            return self._custom(portfolio, prices, config, resolved_now)
        return self._threshold(portfolio, prices)

    def _threshold(self, portfolio: Portfolio, prices: PriceSnapshot) -> bool:
        analysis = portfolio_drift(portfolio, prices)
        if analysis.total_value <= 0:
            return False
        if analysis.max_drift_pct > MAX_PLAUSIBLE_DRIFT_PCT:
            return False
        return any(item.drift_pct > portfolio.threshold for item in analysis.assets)

    def _periodic(
        self, portfolio: Portfolio, config: StrategyConfig, now: datetime
    ) -> bool:
        interval = config.interval_days
        if interval is None:
            interval = DEFAULT_INTERVAL_DAYS
        elapsed = _elapsed_since_last_rebalance(portfolio, now)
        return elapsed is None or elapsed >= _days(interval)

    def _volatility(
        self, portfolio: Portfolio, prices: PriceSnapshot, config: StrategyConfig
    ) -> bool:
        trigger_pct = config.volatility_threshold_pct
        if trigger_pct is None:
            trigger_pct = DEFAULT_VOLATILITY_THRESHOLD_PCT
        max_abs_change = max((abs(quote.change) for quote in prices.values()), default=Decimal("0"))
        if max_abs_change >= trigger_pct:
            return True
        return self._threshold(portfolio, prices)

    def _custom(
        self,
        portfolio: Portfolio,
        prices: PriceSnapshot,
        config: StrategyConfig,
        now: datetime,
    ) -> bool:
        min_days = config.min_days_between_rebalance
        if min_days is None:
            min_days = DEFAULT_MIN_DAYS_BETWEEN_REBALANCE
        elapsed = _elapsed_since_last_rebalance(portfolio, now)
        if elapsed is not None and elapsed < _days(min_days):
            return False
        return self._threshold(portfolio, prices)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
