from datetime import timedelta
from decimal import Decimal

from src.core.safety.circuit_breakers import (
    CircuitBreakerBank,
    SafetyLimits,
    check_concentration_risk,
    check_cooldown,
    check_correlation,
    check_data_freshness,
    check_market_conditions,
    check_trade_size,
    check_volatility,
)
from tests.shared.factories import FIXED_NOW, decimals, quote


def test_volatility_blocks_on_move_above_limit_and_reports_two_decimals():
    verdict = check_volatility({"XLM": quote("0.12", "-15.5"), "BTC": quote("65000", "2")})

    assert verdict.safe is False
    assert verdict.reason_code == "HIGH_VOLATILITY"
    assert verdict.reason == "High volatility detected: XLM moved -15.50% in 24h"


def test_volatility_limit_is_exclusive():
    assert check_volatility({"XLM": quote("0.12", "15")}).safe is True


def test_freshness_blocks_quotes_older_than_ten_minutes():
    snapshot = {"BTC": quote("65000", age=timedelta(minutes=11, seconds=30))}

    verdict = check_data_freshness(snapshot, now=FIXED_NOW)

    assert verdict.reason_code == "STALE_PRICE_DATA"
    assert verdict.reason == "Stale price data for BTC: 11 minutes old"


def test_freshness_ignores_quotes_without_timestamp():
    snapshot = {"BTC": quote("65000").model_copy(update={"timestamp": None})}

    assert check_data_freshness(snapshot, now=FIXED_NOW).safe is True


def test_correlation_requires_three_significant_moves_in_one_direction():
    up = {
        "XLM": quote("1", "6"),
        "BTC": quote("1", "7"),
        "ETH": quote("1", "5.5"),
    }
    mixed = {
        "XLM": quote("1", "6"),
        "BTC": quote("1", "-7"),
        "ETH": quote("1", "5.5"),
    }
    two_only = {"XLM": quote("1", "6"), "BTC": quote("1", "7"), "ETH": quote("1", "1")}

    verdict = check_correlation(up)
    assert verdict.reason_code == "CORRELATED_MARKET_MOVE"
    assert verdict.reason == "Extreme market correlation detected: all assets moving up together"
    assert check_correlation(mixed).safe is True
    assert check_correlation(two_only).safe is True


def test_market_conditions_reports_volatility_before_staleness():
    snapshot = {
        "XLM": quote("0.12", "20", age=timedelta(hours=1)),
    }

    verdict = check_market_conditions(snapshot, now=FIXED_NOW)

    assert verdict.reason_code == "HIGH_VOLATILITY"


def test_market_conditions_safe_for_calm_fresh_prices():
    snapshot = {"XLM": quote("0.12", "1"), "BTC": quote("65000", "-2")}

    assert check_market_conditions(snapshot, now=FIXED_NOW).safe is True


def test_cooldown_blocks_inside_window_with_remaining_hours():
    verdict = check_cooldown(FIXED_NOW - timedelta(minutes=30), now=FIXED_NOW)

    assert verdict.safe is False
    assert verdict.reason_code == "COOLDOWN_ACTIVE"
    assert verdict.reason == "Cooldown active: 0.5 hours remaining"


def test_cooldown_passes_for_never_rebalanced_and_elapsed_window():
    assert check_cooldown(None, now=FIXED_NOW).safe is True
    assert check_cooldown(FIXED_NOW - timedelta(hours=1), now=FIXED_NOW).safe is True


def test_cooldown_accepts_explicit_hours():
    verdict = check_cooldown(
        FIXED_NOW - timedelta(hours=2), now=FIXED_NOW, min_cooldown_hours=Decimal("3")
    )

    assert verdict.reason == "Cooldown active: 1.0 hours remaining"


def test_concentration_blocks_single_asset_above_eighty_percent():
    verdict = check_concentration_risk(decimals({"XLM": "85", "BTC": "15"}))

    assert verdict.reason_code == "CONCENTRATION_RISK"
    assert verdict.reason == "Concentration risk: XLM represents 85.0% of portfolio"


def test_concentration_blocks_when_no_asset_is_meaningful():
    verdict = check_concentration_risk(decimals({"XLM": "0.5", "BTC": "0.5"}))

    assert verdict.reason_code == "INSUFFICIENT_DIVERSIFICATION"
    assert verdict.reason == (
        "Insufficient diversification: only 0 assets with meaningful allocation"
    )


def test_concentration_allows_exactly_eighty_percent():
    assert check_concentration_risk(decimals({"XLM": "80", "BTC": "20"})).safe is True


def test_trade_size_bounds():
    too_large = check_trade_size(Decimal("300"), Decimal("1000"))
    too_small = check_trade_size(Decimal("5"), Decimal("1000"))
    invalid = check_trade_size(Decimal("5"), Decimal("0"))

    assert too_large.reason_code == "TRADE_SIZE_TOO_LARGE"
    assert too_large.reason == "Trade size too large: 30.0% of portfolio exceeds 25% limit"
    assert too_small.reason_code == "TRADE_SIZE_TOO_SMALL"
    assert too_small.reason == "Trade size too small: $5.00 below minimum $10 threshold"
    assert invalid.reason_code == "INVALID_PORTFOLIO_VALUE"
    assert check_trade_size(Decimal("100"), Decimal("1000")).safe is True


def test_bank_applies_configured_limits_and_does_not_mutate_inputs():
    bank = CircuitBreakerBank(limits=SafetyLimits(volatility_pct=Decimal("5")))
    snapshot = {"XLM": quote("0.12", "6")}
    allocations = decimals({"XLM": "50", "BTC": "50"})

    assert bank.market_conditions(snapshot, now=FIXED_NOW).reason_code == "HIGH_VOLATILITY"
    assert bank.concentration(allocations).safe is True
    assert snapshot["XLM"].change == Decimal("6")
    assert allocations == decimals({"XLM": "50", "BTC": "50"})
