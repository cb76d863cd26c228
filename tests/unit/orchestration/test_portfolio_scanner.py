import asyncio
from datetime import timedelta

from src.core.jobs import JobQueueOptions, QueueWorker
from src.core.locks import InMemoryLockBackend, PortfolioLockService
from src.core.orchestration import PortfolioScanner, RebalanceJobProcessor
from src.core.strategy.evaluator import StrategyEvaluator
from src.infrastructure.jobs import InMemoryJobQueue
from tests.shared.factories import (
    FIXED_NOW,
    RecordingLedger,
    RecordingNotificationSink,
    StaticPriceProvider,
    StubRiskModel,
    portfolio,
    prices,
)


def _scanner(portfolio_service, *, snapshot=None, risk=None, locks=None):
    queue = InMemoryJobQueue("rebalance", options=JobQueueOptions(backoff_seconds=0))
    scanner = PortfolioScanner(
        portfolios=portfolio_service,
        price_provider=StaticPriceProvider(snapshot or prices()),
        risk_model=risk or StubRiskModel(),
        rebalance_queue=queue,
        locks=locks,
        evaluator=StrategyEvaluator(clock=lambda: FIXED_NOW),
        clock=lambda: FIXED_NOW,
    )
    return scanner, queue


def test_drifted_portfolio_is_queued_exactly_once(portfolio_repository, portfolio_service):
    portfolio_repository.save_portfolio(portfolio())
    scanner, queue = _scanner(portfolio_service)

    async def _scenario():
        summary = await scanner.run_cycle()
        job = await queue.claim()
        return summary, job, await queue.counts()

    summary, job, counts = asyncio.run(_scenario())

    assert summary.model_dump() == {
        "checked": 1,
        "queued": 1,
        "skipped": 0,
        "aborted_reason": None,
    }
    assert job.payload == {"portfolio_id": "pf_001", "triggered_by": "scheduler"}
    assert job.name == "rebalance-pf_001"
    assert job.job_id.startswith("rebalance-pf_001-")
    assert counts.waiting == 0


def test_scan_and_worker_execute_ledger_once_and_release_lock(
    portfolio_repository, portfolio_service
):
    portfolio_repository.save_portfolio(portfolio())
    locks = PortfolioLockService(backend=InMemoryLockBackend())
    scanner, queue = _scanner(portfolio_service, locks=locks)
    ledger = RecordingLedger()
    processor = RebalanceJobProcessor(
        portfolios=portfolio_service,
        ledger=ledger,
        locks=locks,
        notifications=RecordingNotificationSink(),
        clock=lambda: FIXED_NOW,
    )

    async def _scenario():
        worker = QueueWorker(queue, processor.process, concurrency=3)
        worker.start()
        summary = await scanner.run_cycle()
        await queue.wait_until_idle()
        locked = await locks.is_locked("pf_001")
        await queue.close()
        await worker.stop()
        return summary, locked

    summary, locked = asyncio.run(_scenario())

    assert summary.queued == 1
    assert ledger.executed == ["pf_001"]
    assert locked is False
    assert portfolio_repository.get_portfolio(portfolio_id="pf_001").version == 2


def test_second_cycle_skips_portfolio_whose_rebalance_is_in_flight(
    portfolio_repository, portfolio_service
):
    portfolio_repository.save_portfolio(portfolio())
    locks = PortfolioLockService(backend=InMemoryLockBackend())
    scanner, _ = _scanner(portfolio_service, locks=locks)

    async def _scenario():
        first = await scanner.run_cycle()
        await locks.acquire("pf_001")
        second = await scanner.run_cycle()
        return first, second

    first, second = asyncio.run(_scenario())

    assert first.queued == 1
    assert second.queued == 0
    assert second.skipped == 1


def test_unsafe_market_aborts_cycle_before_any_portfolio(portfolio_repository, portfolio_service):
    portfolio_repository.save_portfolio(portfolio())
    scanner, queue = _scanner(portfolio_service, snapshot=prices(BTC="-20"))

    async def _scenario():
        return await scanner.run_cycle(), await queue.counts()

    summary, counts = asyncio.run(_scenario())

    assert summary.aborted_reason == "HIGH_VOLATILITY"
    assert summary.checked == 0
    assert summary.queued == 0
    assert counts.waiting == 0


def test_empty_store_returns_empty_summary_without_fetching_prices(portfolio_service):
    scanner, _ = _scanner(portfolio_service)

    summary = asyncio.run(scanner.run_cycle())

    assert summary.checked == 0
    assert scanner._price_provider.calls == 0


def test_each_gate_skips_with_its_own_reason(portfolio_repository, portfolio_service, caplog):
    portfolio_repository.save_portfolio(portfolio("demo"))
    portfolio_repository.save_portfolio(
        portfolio("pf_balanced", balances={"XLM": "50", "BTC": "50"})
    )
    portfolio_repository.save_portfolio(
        portfolio("pf_cooling", last_rebalance=FIXED_NOW - timedelta(minutes=20))
    )
    portfolio_repository.save_portfolio(
        portfolio(
            "pf_concentrated",
            allocations={"XLM": "85", "BTC": "15"},
            balances={"XLM": "75", "BTC": "25"},
        )
    )
    scanner, queue = _scanner(portfolio_service)

    with caplog.at_level("INFO"):
        summary = asyncio.run(scanner.run_cycle())

    assert summary.model_dump() == {
        "checked": 4,
        "queued": 0,
        "skipped": 4,
        "aborted_reason": None,
    }
    reasons = {
        record.extra_fields["portfolio_id"]: record.extra_fields["reason_code"]
        for record in caplog.records
        if record.getMessage() == "scan.portfolio.skipped"
    }
    assert reasons == {
        "demo": "DEMO_PORTFOLIO",
        "pf_balanced": "REBALANCE_NOT_NEEDED",
        "pf_cooling": "COOLDOWN_ACTIVE",
        "pf_concentrated": "CONCENTRATION_RISK",
    }


def test_risk_model_veto_skips_portfolio(portfolio_repository, portfolio_service):
    portfolio_repository.save_portfolio(portfolio())
    scanner, _ = _scanner(
        portfolio_service, risk=StubRiskModel(allowed=False, reason="Exposure limit")
    )

    summary = asyncio.run(scanner.run_cycle())

    assert summary.skipped == 1
    assert summary.queued == 0


def test_failure_on_one_portfolio_does_not_stop_the_cycle(
    portfolio_repository, portfolio_service
):
    portfolio_repository.save_portfolio(portfolio("pf_a"))
    portfolio_repository.save_portfolio(portfolio("pf_b"))

    class _FlakyRisk(StubRiskModel):
        def should_allow_rebalance(self, subject, snapshot):
            if subject.id == "pf_a":
                raise RuntimeError("risk service unavailable")
            return super().should_allow_rebalance(subject, snapshot)

    scanner, _ = _scanner(portfolio_service, risk=_FlakyRisk())

    summary = asyncio.run(scanner.run_cycle())

    assert summary.model_dump() == {
        "checked": 2,
        "queued": 1,
        "skipped": 1,
        "aborted_reason": None,
    }
