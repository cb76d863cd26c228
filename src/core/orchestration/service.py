import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from src.core.jobs.models import QueuedJob
from src.core.jobs.queue import JobQueue
from src.core.jobs.scheduler import RecurringJobScheduler
from src.core.jobs.worker import QueueWorker
from src.core.locks.service import PortfolioLockService
from src.core.models import RebalanceAuditEvent, RebalanceJobPayload, RebalanceTrigger
from src.core.orchestration.analytics import AnalyticsSnapshotProcessor
from src.core.orchestration.models import (
    OrchestratorMetrics,
    RebalanceStatus,
    RebalanceTriggerResult,
)
from src.core.orchestration.ports import LedgerService, NotificationSink, PriceProvider, RiskModel
from src.core.orchestration.rebalance_worker import RebalanceJobProcessor
from src.core.orchestration.scan import (
    REBALANCE_JOB_NAME,
    PortfolioScanner,
    ScanCycleSummary,
    rebalance_job_id,
)
from src.core.portfolios.service import PortfolioStateService
from src.core.safety.circuit_breakers import CircuitBreakerBank
from src.core.strategy.evaluator import StrategyEvaluator, portfolio_drift

logger = logging.getLogger(__name__)

PORTFOLIO_CHECK_QUEUE = "portfolio-check"
REBALANCE_QUEUE = "rebalance"
ANALYTICS_SNAPSHOT_QUEUE = "analytics-snapshot"

PORTFOLIO_CHECK_SCHEDULE_ID = "repeatable-portfolio-check"
ANALYTICS_SNAPSHOT_SCHEDULE_ID = "repeatable-analytics-snapshot"
STARTUP_JOB_PRIORITY = 1

DEFAULT_SCAN_INTERVAL_SECONDS = 30 * 60
DEFAULT_ANALYTICS_INTERVAL_SECONDS = 60 * 60
DEFAULT_REBALANCE_CONCURRENCY = 3


class RebalanceBlockedError(Exception):
    def __init__(self, reason_code: str, reason: Optional[str] = None) -> None:
        super().__init__(f"REBALANCE_BLOCKED:{reason_code}")
        self.reason_code = reason_code
        self.reason = reason


class RebalanceOrchestrator:
    """Wires the scan, rebalance and analytics queues to their worker pools.

    Nothing here is a module-level singleton: the API and the CLI each build
    one orchestrator from configuration and own its lifecycle.
    """

    def __init__(
        self,
        *,
        portfolios: PortfolioStateService,
        price_provider: PriceProvider,
        ledger: LedgerService,
        risk_model: RiskModel,
        notifications: NotificationSink,
        locks: PortfolioLockService,
        check_queue: JobQueue,
        rebalance_queue: JobQueue,
        analytics_queue: JobQueue,
        scheduler: Optional[RecurringJobScheduler] = None,
        breakers: Optional[CircuitBreakerBank] = None,
        evaluator: Optional[StrategyEvaluator] = None,
        rebalance_concurrency: int = DEFAULT_REBALANCE_CONCURRENCY,
        scan_interval_seconds: float = DEFAULT_SCAN_INTERVAL_SECONDS,
        analytics_interval_seconds: float = DEFAULT_ANALYTICS_INTERVAL_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._portfolios = portfolios
        self._price_provider = price_provider
        self._ledger = ledger
        self._risk_model = risk_model
        self._locks = locks
        self._check_queue = check_queue
        self._rebalance_queue = rebalance_queue
        self._analytics_queue = analytics_queue
        self._scheduler = scheduler or RecurringJobScheduler()
        self._breakers = breakers or CircuitBreakerBank()
        self._evaluator = evaluator or StrategyEvaluator()
        self._scan_interval_seconds = scan_interval_seconds
        self._analytics_interval_seconds = analytics_interval_seconds
        self._clock = clock or _utc_now

        self.scanner = PortfolioScanner(
            portfolios=portfolios,
            price_provider=price_provider,
            risk_model=risk_model,
            rebalance_queue=rebalance_queue,
            locks=locks,
            evaluator=self._evaluator,
            breakers=self._breakers,
            clock=self._clock,
        )
        self.rebalance_processor = RebalanceJobProcessor(
            portfolios=portfolios,
            ledger=ledger,
            locks=locks,
            notifications=notifications,
            clock=self._clock,
        )
        self.analytics_processor = AnalyticsSnapshotProcessor(
            portfolios=portfolios,
            price_provider=price_provider,
            clock=self._clock,
        )
        self._workers = [
            QueueWorker(check_queue, self._process_check, concurrency=1),
            QueueWorker(
                rebalance_queue,
                self.rebalance_processor.process,
                concurrency=rebalance_concurrency,
            ),
            QueueWorker(analytics_queue, self.analytics_processor.process, concurrency=1),
        ]

    @property
    def queues(self) -> list[JobQueue]:
        return [self._check_queue, self._rebalance_queue, self._analytics_queue]

    @property
    def scheduler(self) -> RecurringJobScheduler:
        return self._scheduler

    def start(self) -> None:
        for worker in self._workers:
            worker.start()
        logger.info(
            "orchestrator.started",
            extra={
                "extra_fields": {
                    "queues": [queue.name for queue in self.queues],
                    "rebalance_concurrency": self._workers[1].concurrency,
                }
            },
        )

    async def stop(self) -> None:
        self.stop_schedules()
        for queue in self.queues:
            await queue.close()
        for worker in self._workers:
            await worker.stop()
        logger.info("orchestrator.stopped")

    async def start_schedules(self) -> list[str]:
        if self._scheduler.running:
            return self._scheduler.registered_schedule_ids()
        self._scheduler.register_repeating(
            PORTFOLIO_CHECK_SCHEDULE_ID,
            self._check_queue,
            "portfolio-check",
            {"triggered_by": "scheduler"},
            interval_seconds=self._scan_interval_seconds,
        )
        self._scheduler.register_repeating(
            ANALYTICS_SNAPSHOT_SCHEDULE_ID,
            self._analytics_queue,
            "analytics-snapshot",
            {"triggered_by": "scheduler"},
            interval_seconds=self._analytics_interval_seconds,
        )
        self._scheduler.start()
        await self._scheduler.enqueue_once(
            self._check_queue,
            "portfolio-check-startup",
            {"triggered_by": "startup"},
            priority=STARTUP_JOB_PRIORITY,
        )
        await self._scheduler.enqueue_once(
            self._analytics_queue,
            "analytics-snapshot-startup",
            {"triggered_by": "startup"},
            priority=STARTUP_JOB_PRIORITY,
        )
        schedule_ids = self._scheduler.registered_schedule_ids()
        logger.info("scheduler.started", extra={"extra_fields": {"schedules": schedule_ids}})
        return schedule_ids

    def stop_schedules(self) -> list[str]:
        removed = self._scheduler.registered_schedule_ids()
        self._scheduler.stop()
        for schedule_id in removed:
            self._scheduler.unregister(schedule_id)
        if removed:
            logger.info("scheduler.stopped", extra={"extra_fields": {"schedules": removed}})
        return removed

    async def run_scan_cycle(self) -> ScanCycleSummary:
        return await self.scanner.run_cycle()

    async def trigger_rebalance(
        self, portfolio_id: str, *, force: bool = False
    ) -> RebalanceTriggerResult:
        portfolio = await self._portfolios.get_portfolio(portfolio_id=portfolio_id)
        triggered_by: RebalanceTrigger = "force" if force else "manual"
        if not force:
            prices = await self._price_provider.get_current_prices()
            market = self._breakers.market_conditions(prices, now=self._clock())
            if not market.safe:
                raise RebalanceBlockedError(market.reason_code, market.reason)
            risk = self._risk_model.should_allow_rebalance(portfolio, prices)
            if not risk.allowed:
                raise RebalanceBlockedError("RISK_BLOCKED", risk.reason)
            if not await self._ledger.check_rebalance_needed(portfolio_id):
                raise RebalanceBlockedError("REBALANCE_NOT_NEEDED")
        payload = RebalanceJobPayload(portfolio_id=portfolio.id, triggered_by=triggered_by)
        job = await self._rebalance_queue.add(
            f"{REBALANCE_JOB_NAME}-{portfolio.id}",
            payload.model_dump(),
            job_id=rebalance_job_id(portfolio.id),
        )
        logger.info(
            "rebalance.manual.queued",
            extra={
                "extra_fields": {
                    "portfolio_id": portfolio.id,
                    "job_id": job.job_id,
                    "triggered_by": triggered_by,
                }
            },
        )
        return RebalanceTriggerResult(
            portfolio_id=portfolio.id,
            job_id=job.job_id,
            triggered_by=triggered_by,
            queued_at=job.created_at,
        )

    async def rebalance_status(self, portfolio_id: str) -> RebalanceStatus:
        portfolio = await self._portfolios.get_portfolio(portfolio_id=portfolio_id)
        prices = await self._price_provider.get_current_prices()
        now = self._clock()
        analysis = portfolio_drift(portfolio, prices)
        return RebalanceStatus(
            portfolio_id=portfolio.id,
            needs_rebalance=self._evaluator.should_rebalance(portfolio, prices, now=now),
            strategy=portfolio.strategy,
            threshold=portfolio.threshold,
            total_value=analysis.total_value,
            max_drift_pct=analysis.max_drift_pct,
            drift=analysis.assets,
            market=self._breakers.market_conditions(prices, now=now),
            cooldown=self._breakers.cooldown(portfolio.last_rebalance, now=now),
            concentration=self._breakers.concentration(portfolio.allocations),
            risk=self._risk_model.should_allow_rebalance(portfolio, prices),
            locked=await self._locks.is_locked(portfolio.id),
            last_rebalance=portfolio.last_rebalance,
            version=portfolio.version,
            evaluated_at=now,
        )

    async def rebalance_history(
        self, portfolio_id: str, *, limit: int = 50
    ) -> list[RebalanceAuditEvent]:
        await self._portfolios.get_portfolio(portfolio_id=portfolio_id)
        return await self._portfolios.list_events(portfolio_id=portfolio_id, limit=limit)

    async def metrics(self) -> OrchestratorMetrics:
        queues = {queue.name: await queue.counts() for queue in self.queues}
        broker_reachable = True
        for queue in self.queues:
            broker_reachable = broker_reachable and await queue.ping()
        return OrchestratorMetrics(
            queues=queues,
            broker_reachable=broker_reachable,
            lock_backend_reachable=await self._locks.ping(),
            lock_degraded=self._locks.degraded,
            scheduler_running=self._scheduler.running,
            schedules=self._scheduler.registered_schedule_ids(),
        )

    async def _process_check(self, job: QueuedJob) -> None:
        summary = await self.scanner.run_cycle()
        logger.info(
            "scan.job.completed",
            extra={"extra_fields": {"job_id": job.job_id, **summary.model_dump()}},
        )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
