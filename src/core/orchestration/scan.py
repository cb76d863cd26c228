import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

from pydantic import BaseModel

from src.core.jobs.models import QueuedJob
from src.core.jobs.queue import JobQueue
from src.core.locks.service import PortfolioLockService
from src.core.models import Portfolio, PriceSnapshot, RebalanceJobPayload
from src.core.orchestration.ports import PriceProvider, RiskModel
from src.core.portfolios.service import PortfolioStateService
from src.core.safety.circuit_breakers import CircuitBreakerBank
from src.core.strategy.evaluator import StrategyEvaluator

logger = logging.getLogger(__name__)

DEMO_PORTFOLIO_ID = "demo"
REBALANCE_JOB_NAME = "rebalance"


class ScanCycleSummary(BaseModel):
    checked: int = 0
    queued: int = 0
    skipped: int = 0
    aborted_reason: Optional[str] = None


def rebalance_job_id(portfolio_id: str) -> str:
    return f"rebalance-{portfolio_id}-{uuid.uuid4().hex[:12]}"


class PortfolioScanner:
    """One pass over every stored portfolio, enqueueing rebalances that pass all gates.

    The market-wide breaker is evaluated once per cycle against a single price
    snapshot; an unsafe market aborts the cycle before any portfolio is read.
    Per portfolio the gates run in order: strategy, cooldown, risk model,
    concentration, in-flight lock.
    """

    def __init__(
        self,
        *,
        portfolios: PortfolioStateService,
        price_provider: PriceProvider,
        risk_model: RiskModel,
        rebalance_queue: JobQueue,
        locks: Optional[PortfolioLockService] = None,
        evaluator: Optional[StrategyEvaluator] = None,
        breakers: Optional[CircuitBreakerBank] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._portfolios = portfolios
        self._price_provider = price_provider
        self._risk_model = risk_model
        self._rebalance_queue = rebalance_queue
        self._locks = locks
        self._evaluator = evaluator or StrategyEvaluator()
        self._breakers = breakers or CircuitBreakerBank()
        self._clock = clock or _utc_now

    async def run_cycle(self) -> ScanCycleSummary:
        summary = ScanCycleSummary()
        portfolios = await self._portfolios.list_portfolios()
        if not portfolios:
            logger.info("scan.cycle.empty")
            return summary

        now = self._clock()
        prices = await self._price_provider.get_current_prices()
        market = self._breakers.market_conditions(prices, now=now)
        if not market.safe:
            logger.warning(
                "scan.cycle.aborted",
                extra={
                    "extra_fields": {
                        "reason_code": market.reason_code,
                        "reason": market.reason,
                        "portfolio_count": len(portfolios),
                    }
                },
            )
            summary.aborted_reason = market.reason_code
            return summary

        for portfolio in portfolios:
            summary.checked += 1
            try:
                skip_reason = await self._skip_reason(portfolio, prices, now)
                if skip_reason is not None:
                    summary.skipped += 1
                    logger.info(
                        "scan.portfolio.skipped",
                        extra={
                            "extra_fields": {
                                "portfolio_id": portfolio.id,
                                "reason_code": skip_reason,
                            }
                        },
                    )
                    continue
                job = await self._enqueue(portfolio.id)
            except Exception as exc:
                summary.skipped += 1
                logger.error(
                    "scan.portfolio.failed",
                    extra={"extra_fields": {"portfolio_id": portfolio.id, "error": str(exc)}},
                )
                continue
            summary.queued += 1
            logger.info(
                "scan.portfolio.queued",
                extra={"extra_fields": {"portfolio_id": portfolio.id, "job_id": job.job_id}},
            )

        logger.info("scan.cycle.completed", extra={"extra_fields": summary.model_dump()})
        return summary

    async def _skip_reason(
        self, portfolio: Portfolio, prices: PriceSnapshot, now: datetime
    ) -> Optional[str]:
        if portfolio.id == DEMO_PORTFOLIO_ID:
            return "DEMO_PORTFOLIO"
        if not self._evaluator.should_rebalance(portfolio, prices, now=now):
            return "REBALANCE_NOT_NEEDED"
        cooldown = self._breakers.cooldown(portfolio.last_rebalance, now=now)
        if not cooldown.safe:
            return cooldown.reason_code
        risk = self._risk_model.should_allow_rebalance(portfolio, prices)
        if not risk.allowed:
            logger.warning(
                "scan.portfolio.risk_blocked",
                extra={"extra_fields": {"portfolio_id": portfolio.id, "reason": risk.reason}},
            )
            return "RISK_BLOCKED"
        concentration = self._breakers.concentration(portfolio.allocations)
        if not concentration.safe:
            return concentration.reason_code
        if self._locks is not None and await self._locks.is_locked(portfolio.id):
            return "REBALANCE_IN_PROGRESS"
        return None

    async def _enqueue(self, portfolio_id: str) -> QueuedJob:
        payload = RebalanceJobPayload(portfolio_id=portfolio_id, triggered_by="scheduler")
        return await self._rebalance_queue.add(
            f"{REBALANCE_JOB_NAME}-{portfolio_id}",
            payload.model_dump(),
            job_id=rebalance_job_id(portfolio_id),
        )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
