import asyncio

import pytest

from src.core.jobs import UnrecoverableJobError
from src.core.locks import InMemoryLockBackend, PortfolioLockService
from src.core.models import PortfolioStateUpdate
from src.core.orchestration import RebalanceJobProcessor
from src.core.portfolios import PortfolioStateService, PortfolioVersionConflictError
from src.infrastructure.portfolios import InMemoryPortfolioRepository
from tests.shared.factories import (
    FIXED_NOW,
    RecordingLedger,
    RecordingNotificationSink,
    decimals,
    portfolio,
    queued_job,
)


def _processor(repository, *, ledger=None, notifications=None, locks=None):
    service = PortfolioStateService(repository=repository, clock=lambda: FIXED_NOW)
    return RebalanceJobProcessor(
        portfolios=service,
        ledger=ledger or RecordingLedger(),
        locks=locks or PortfolioLockService(backend=InMemoryLockBackend()),
        notifications=notifications or RecordingNotificationSink(),
        clock=lambda: FIXED_NOW,
    )


def _events(repository, portfolio_id="pf_001"):
    return repository.list_audit_events(portfolio_id=portfolio_id, limit=10)


def test_successful_rebalance_commits_audits_and_notifies(portfolio_repository):
    portfolio_repository.save_portfolio(portfolio())
    notifications = RecordingNotificationSink()
    locks = PortfolioLockService(backend=InMemoryLockBackend())
    processor = _processor(portfolio_repository, notifications=notifications, locks=locks)

    asyncio.run(processor.process(queued_job({"portfolio_id": "pf_001"})))

    stored = portfolio_repository.get_portfolio(portfolio_id="pf_001")
    assert stored.version == 2
    assert stored.balances == decimals({"XLM": "50", "BTC": "50"})
    assert stored.last_rebalance == FIXED_NOW
    [event] = _events(portfolio_repository)
    assert event.status == "completed"
    assert event.trigger == "Automatic Rebalancing"
    assert event.trades == 2
    [notification] = notifications.sent
    assert notification.user_id == "GUSER"
    assert notification.title == "Portfolio Rebalanced"
    assert notification.message == (
        "Your portfolio has been automatically rebalanced. "
        "2 trades executed with 0.00002 XLM gas used."
    )
    assert asyncio.run(locks.is_locked("pf_001")) is False


def test_manual_trigger_is_described_as_manual(portfolio_repository):
    portfolio_repository.save_portfolio(portfolio())
    notifications = RecordingNotificationSink()
    processor = _processor(portfolio_repository, notifications=notifications)

    asyncio.run(
        processor.process(queued_job({"portfolio_id": "pf_001", "triggered_by": "manual"}))
    )

    assert notifications.sent[0].message.startswith("Your portfolio has been manually rebalanced.")
    assert _events(portfolio_repository)[0].is_automatic is False


def test_ledger_failure_is_audited_with_attempt_and_reraised(portfolio_repository):
    portfolio_repository.save_portfolio(portfolio())
    locks = PortfolioLockService(backend=InMemoryLockBackend())
    processor = _processor(portfolio_repository, ledger=RecordingLedger(failures=1), locks=locks)

    with pytest.raises(RuntimeError, match="LEDGER_TIMEOUT"):
        asyncio.run(processor.process(queued_job({"portfolio_id": "pf_001"}, attempts_made=2)))

    [event] = _events(portfolio_repository)
    assert event.status == "failed"
    assert event.trigger == "Automatic Rebalancing (Failed - attempt 2)"
    assert event.error == "LEDGER_TIMEOUT"
    assert portfolio_repository.get_portfolio(portfolio_id="pf_001").version == 1
    assert asyncio.run(locks.is_locked("pf_001")) is False


def test_notification_failure_does_not_fail_the_job(portfolio_repository, caplog):
    portfolio_repository.save_portfolio(portfolio())
    processor = _processor(
        portfolio_repository, notifications=RecordingNotificationSink(fail=True)
    )

    with caplog.at_level("ERROR"):
        asyncio.run(processor.process(queued_job({"portfolio_id": "pf_001"})))

    assert _events(portfolio_repository)[0].status == "completed"
    assert "rebalance.notification.failed" in caplog.messages


def test_lock_contention_completes_without_touching_the_ledger(portfolio_repository):
    portfolio_repository.save_portfolio(portfolio())
    ledger = RecordingLedger()
    locks = PortfolioLockService(backend=InMemoryLockBackend())
    processor = _processor(portfolio_repository, ledger=ledger, locks=locks)

    async def _scenario():
        await locks.acquire("pf_001")
        await processor.process(queued_job({"portfolio_id": "pf_001"}))
        return await locks.is_locked("pf_001")

    assert asyncio.run(_scenario()) is True
    assert ledger.executed == []
    assert _events(portfolio_repository) == []


def test_invalid_payload_is_unrecoverable(portfolio_repository):
    processor = _processor(portfolio_repository)

    with pytest.raises(UnrecoverableJobError) as exc:
        asyncio.run(processor.process(queued_job({"triggered_by": "scheduler"})))

    assert exc.value.reason == "INVALID_REBALANCE_JOB_PAYLOAD"


def test_missing_portfolio_is_unrecoverable_and_audited(portfolio_repository):
    processor = _processor(portfolio_repository)

    with pytest.raises(UnrecoverableJobError) as exc:
        asyncio.run(processor.process(queued_job({"portfolio_id": "pf_404"})))

    assert exc.value.reason == "PORTFOLIO_NOT_FOUND"
    assert _events(portfolio_repository, "pf_404")[0].error == "PORTFOLIO_NOT_FOUND"


def test_concurrent_write_surfaces_version_conflict(portfolio_repository):
    portfolio_repository.save_portfolio(portfolio())

    async def _concurrent_writer(portfolio_id):
        portfolio_repository.apply_portfolio_update(
            portfolio_id=portfolio_id,
            expected_version=1,
            update=PortfolioStateUpdate(balances=decimals({"XLM": "10", "BTC": "90"})),
        )

    processor = _processor(
        portfolio_repository, ledger=RecordingLedger(on_execute=_concurrent_writer)
    )

    with pytest.raises(PortfolioVersionConflictError) as exc:
        asyncio.run(processor.process(queued_job({"portfolio_id": "pf_001"})))

    assert exc.value.current_version == 2
    stored = portfolio_repository.get_portfolio(portfolio_id="pf_001")
    assert stored.balances == decimals({"XLM": "10", "BTC": "90"})
    assert _events(portfolio_repository)[0].error == "PORTFOLIO_VERSION_CONFLICT"


def test_audit_write_failure_does_not_mask_original_error(caplog):
    class _BrokenAuditRepository(InMemoryPortfolioRepository):
        def append_audit_event(self, event):
            raise OSError("disk full")

    repository = _BrokenAuditRepository()
    repository.save_portfolio(portfolio())
    processor = _processor(repository, ledger=RecordingLedger(failures=1))

    with caplog.at_level("ERROR"):
        with pytest.raises(RuntimeError, match="LEDGER_TIMEOUT"):
            asyncio.run(processor.process(queued_job({"portfolio_id": "pf_001"})))

    assert "rebalance.audit.write_failed" in caplog.messages
