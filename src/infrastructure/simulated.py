import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

from pydantic import ValidationError

from src.core.common.precision import format_fixed, position_values, round_ledger
from src.core.models import (
    LedgerExecutionResult,
    Portfolio,
    PriceQuote,
    PriceSnapshot,
    RebalanceNotification,
    RiskVerdict,
)
from src.core.portfolios.service import PortfolioStateService
from src.core.strategy.evaluator import StrategyEvaluator

logger = logging.getLogger(__name__)

DEFAULT_PRICES = {
    "XLM": Decimal("0.12"),
    "BTC": Decimal("65000"),
    "ETH": Decimal("3200"),
    "USDC": Decimal("1"),
}
GAS_PER_TRADE_XLM = Decimal("0.00001")


def parse_price_snapshot(snapshot_json: Optional[str]) -> dict[str, PriceQuote]:
    normalized_json = (snapshot_json or "").strip()
    if not normalized_json:
        return {symbol: PriceQuote(price=price) for symbol, price in DEFAULT_PRICES.items()}
    try:
        raw = json.loads(normalized_json)
    except json.JSONDecodeError:
        logger.warning("prices.snapshot.invalid_json")
        return {}
    if not isinstance(raw, dict):
        return {}

    quotes: dict[str, PriceQuote] = {}
    for symbol, definition in raw.items():
        if not isinstance(symbol, str) or not symbol.strip():
            continue
        payload = definition if isinstance(definition, dict) else {"price": definition}
        try:
            quotes[symbol.strip()] = PriceQuote.model_validate(payload)
        except ValidationError:
            continue
    return quotes


def parse_portfolio_seed(seed_json: Optional[str]) -> list[Portfolio]:
    normalized_json = (seed_json or "").strip()
    if not normalized_json:
        return []
    try:
        raw = json.loads(normalized_json)
    except json.JSONDecodeError:
        logger.warning("portfolios.seed.invalid_json")
        return []
    if isinstance(raw, dict):
        raw = [raw]
    if not isinstance(raw, list):
        return []

    portfolios: list[Portfolio] = []
    for definition in raw:
        try:
            portfolios.append(Portfolio.model_validate(definition))
        except ValidationError as exc:
            logger.warning(
                "portfolios.seed.invalid_entry",
                extra={"extra_fields": {"errors": exc.error_count()}},
            )
    return portfolios


class EnvJsonPriceProvider:
    """Serves a static price table, stamping quotes without a timestamp as fresh."""

    def __init__(
        self,
        *,
        snapshot_json: Optional[str],
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._quotes = parse_price_snapshot(snapshot_json)
        self._clock = clock or _utc_now

    async def get_current_prices(self) -> PriceSnapshot:
        now = self._clock()
        return {
            symbol: quote.model_copy(update={"timestamp": quote.timestamp or now})
            for symbol, quote in self._quotes.items()
        }


class SimulatedLedgerService:
    """Rebalances portfolios on paper by moving balances straight to target weights."""

    def __init__(
        self,
        *,
        portfolios: PortfolioStateService,
        price_provider: EnvJsonPriceProvider,
        evaluator: Optional[StrategyEvaluator] = None,
    ) -> None:
        self._portfolios = portfolios
        self._price_provider = price_provider
        self._evaluator = evaluator or StrategyEvaluator()

    async def check_rebalance_needed(self, portfolio_id: str) -> bool:
        portfolio = await self._portfolios.get_portfolio(portfolio_id=portfolio_id)
        prices = await self._price_provider.get_current_prices()
        return self._evaluator.should_rebalance(portfolio, prices)

    async def execute_rebalance(self, portfolio_id: str) -> LedgerExecutionResult:
        portfolio = await self._portfolios.get_portfolio(portfolio_id=portfolio_id)
        prices = await self._price_provider.get_current_prices()
        balances, total_value = _target_balances(portfolio, prices)
        trades = sum(
            1
            for symbol, quantity in balances.items()
            if quantity != portfolio.balances.get(symbol, Decimal("0"))
        )
        gas_used = format_fixed(GAS_PER_TRADE_XLM * trades, 5)
        return LedgerExecutionResult(
            trades=trades,
            gas_used=f"{gas_used} XLM",
            balances=balances,
            total_value=total_value,
        )


class LoggingNotificationSink:
    async def notify(self, notification: RebalanceNotification) -> None:
        logger.info(
            "notification.sent",
            extra={
                "extra_fields": {
                    "user_id": notification.user_id,
                    "event_type": notification.event_type,
                    "title": notification.title,
                    "portfolio_id": notification.data.get("portfolio_id"),
                }
            },
        )


class PermissiveRiskModel:
    def should_allow_rebalance(self, portfolio: Portfolio, prices: PriceSnapshot) -> RiskVerdict:
        missing = sorted(symbol for symbol in portfolio.allocations if symbol not in prices)
        if missing:
            return RiskVerdict(allowed=False, reason=f"Missing prices for {', '.join(missing)}")
        return RiskVerdict(allowed=True)


def _target_balances(
    portfolio: Portfolio, prices: PriceSnapshot
) -> tuple[dict[str, Decimal], Decimal]:
    unit_prices = {symbol: quote.price for symbol, quote in prices.items()}
    _, total_value = position_values(portfolio.balances, unit_prices)
    balances: dict[str, Decimal] = {}
    for symbol, target_pct in portfolio.allocations.items():
        price = unit_prices.get(symbol, Decimal("0"))
        if price <= 0:
            balances[symbol] = portfolio.balances.get(symbol, Decimal("0"))
            continue
        balances[symbol] = round_ledger(total_value * target_pct / Decimal("100") / price)
    return balances, total_value


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
