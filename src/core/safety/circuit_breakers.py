"""Market and portfolio safety gates evaluated before a rebalance is queued.

Every check is pure: it reads its inputs, never mutates them and performs no
I/O. A failing check returns a ``SafetyVerdict`` with a stable ``reason_code``
and a human readable ``reason``.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Mapping, Optional

from pydantic import BaseModel, Field

from src.core.common.precision import format_fixed
from src.core.models import PriceSnapshot, SafetyVerdict

_SECONDS_PER_HOUR = Decimal("3600")


class SafetyLimits(BaseModel):
    volatility_pct: Decimal = Field(default=Decimal("15"), gt=0)
    max_price_age_seconds: int = Field(default=600, gt=0)
    correlated_move_pct: Decimal = Field(default=Decimal("5"), gt=0)
    correlated_move_min_assets: int = Field(default=3, ge=2)
    min_cooldown_hours: Decimal = Field(default=Decimal("1"), ge=0)
    max_single_asset_pct: Decimal = Field(default=Decimal("80"), gt=0, le=100)
    min_meaningful_allocation_pct: Decimal = Field(default=Decimal("1"), ge=0)
    min_diversified_assets: int = Field(default=1, ge=1)
    max_trade_pct: Decimal = Field(default=Decimal("25"), gt=0, le=100)
    min_trade_amount: Decimal = Field(default=Decimal("10"), ge=0)


DEFAULT_LIMITS = SafetyLimits()


def check_volatility(
    prices: PriceSnapshot, *, limits: SafetyLimits = DEFAULT_LIMITS
) -> SafetyVerdict:
    for asset, quote in prices.items():
        if abs(quote.change) > limits.volatility_pct:
            return SafetyVerdict.blocked(
                "HIGH_VOLATILITY",
                f"High volatility detected: {asset} moved {format_fixed(quote.change, 2)}% in 24h",
            )
    return SafetyVerdict.ok()


def check_data_freshness(
    prices: PriceSnapshot, *, now: datetime, limits: SafetyLimits = DEFAULT_LIMITS
) -> SafetyVerdict:
    max_age = timedelta(seconds=limits.max_price_age_seconds)
    for asset, quote in prices.items():
        if quote.timestamp is None:
            continue
        age = now - quote.timestamp
        if age > max_age:
            minutes = int(age.total_seconds() // 60)
            return SafetyVerdict.blocked(
                "STALE_PRICE_DATA",
                f"Stale price data for {asset}: {minutes} minutes old",
            )
    return SafetyVerdict.ok()


def check_correlation(
    prices: PriceSnapshot, *, limits: SafetyLimits = DEFAULT_LIMITS
) -> SafetyVerdict:
    significant = [
        quote.change for quote in prices.values() if abs(quote.change) > limits.correlated_move_pct
    ]
    if len(significant) < limits.correlated_move_min_assets:
        return SafetyVerdict.ok()
    if all(change > 0 for change in significant):
        direction = "up"
    elif all(change < 0 for change in significant):
        direction = "down"
    else:
        return SafetyVerdict.ok()
    return SafetyVerdict.blocked(
        "CORRELATED_MARKET_MOVE",
        f"Extreme market correlation detected: all assets moving {direction} together",
    )


def check_market_conditions(
    prices: PriceSnapshot, *, now: datetime, limits: SafetyLimits = DEFAULT_LIMITS
) -> SafetyVerdict:
    volatility = check_volatility(prices, limits=limits)
    if not volatility.safe:
        return volatility
    freshness = check_data_freshness(prices, now=now, limits=limits)
    if not freshness.safe:
        return freshness
    return check_correlation(prices, limits=limits)


def check_cooldown(
    last_rebalance: Optional[datetime],
    *,
    now: datetime,
    min_cooldown_hours: Optional[Decimal] = None,
    limits: SafetyLimits = DEFAULT_LIMITS,
) -> SafetyVerdict:
    if last_rebalance is None:
        return SafetyVerdict.ok()
    required_hours = (
        limits.min_cooldown_hours if min_cooldown_hours is None else Decimal(min_cooldown_hours)
    )
    elapsed_hours = Decimal(str((now - last_rebalance).total_seconds())) / _SECONDS_PER_HOUR
    if elapsed_hours < required_hours:
        remaining = required_hours - elapsed_hours
        return SafetyVerdict.blocked(
            "COOLDOWN_ACTIVE",
            f"Cooldown active: {format_fixed(remaining, 1)} hours remaining",
        )
    return SafetyVerdict.ok()


def check_concentration_risk(
    allocations: Mapping[str, Decimal], *, limits: SafetyLimits = DEFAULT_LIMITS
) -> SafetyVerdict:
    for asset, pct in allocations.items():
        if pct > limits.max_single_asset_pct:
            return SafetyVerdict.blocked(
                "CONCENTRATION_RISK",
                f"Concentration risk: {asset} represents {format_fixed(pct, 1)}% of portfolio",
            )
    active_assets = sum(
        1 for pct in allocations.values() if pct > limits.min_meaningful_allocation_pct
    )
    if active_assets < limits.min_diversified_assets:
        return SafetyVerdict.blocked(
            "INSUFFICIENT_DIVERSIFICATION",
            f"Insufficient diversification: only {active_assets} assets with meaningful allocation",
        )
    return SafetyVerdict.ok()


def check_trade_size(
    trade_amount: Decimal,
    portfolio_value: Decimal,
    *,
    limits: SafetyLimits = DEFAULT_LIMITS,
) -> SafetyVerdict:
    if portfolio_value <= 0:
        return SafetyVerdict.blocked(
            "INVALID_PORTFOLIO_VALUE",
            "Trade size cannot be assessed: portfolio value must be positive",
        )
    trade_pct = trade_amount / portfolio_value * Decimal("100")
    if trade_pct > limits.max_trade_pct:
        return SafetyVerdict.blocked(
            "TRADE_SIZE_TOO_LARGE",
            f"Trade size too large: {format_fixed(trade_pct, 1)}% of portfolio exceeds "
            f"{format_fixed(limits.max_trade_pct, 0)}% limit",
        )
    if trade_amount < limits.min_trade_amount:
        return SafetyVerdict.blocked(
            "TRADE_SIZE_TOO_SMALL",
            f"Trade size too small: ${format_fixed(trade_amount, 2)} below minimum "
            f"${format_fixed(limits.min_trade_amount, 0)} threshold",
        )
    return SafetyVerdict.ok()


class CircuitBreakerBank:
    def __init__(self, *, limits: Optional[SafetyLimits] = None) -> None:
        self._limits = limits or DEFAULT_LIMITS

    @property
    def limits(self) -> SafetyLimits:
        return self._limits

    def market_conditions(self, prices: PriceSnapshot, *, now: datetime) -> SafetyVerdict:
        return check_market_conditions(prices, now=now, limits=self._limits)

    def cooldown(self, last_rebalance: Optional[datetime], *, now: datetime) -> SafetyVerdict:
        return check_cooldown(last_rebalance, now=now, limits=self._limits)

    def concentration(self, allocations: Mapping[str, Decimal]) -> SafetyVerdict:
        return check_concentration_risk(allocations, limits=self._limits)

    def trade_size(self, trade_amount: Decimal, portfolio_value: Decimal) -> SafetyVerdict:
        return check_trade_size(trade_amount, portfolio_value, limits=self._limits)
