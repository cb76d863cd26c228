import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from pydantic import ValidationError

from src.core.jobs.models import QueuedJob
from src.core.jobs.queue import UnrecoverableJobError
from src.core.locks.service import PortfolioLockService
from src.core.models import (
    LedgerExecutionResult,
    Portfolio,
    RebalanceJobPayload,
    RebalanceNotification,
)
from src.core.orchestration.ports import LedgerService, NotificationSink
from src.core.portfolios.service import PortfolioNotFoundError, PortfolioStateService

logger = logging.getLogger(__name__)


class RebalanceJobProcessor:
    """Executes one queued rebalance under the portfolio lock.

    Lock contention means another worker already owns the portfolio, so the
    job completes without doing anything. Any other failure is written to the
    audit trail and re-raised so the queue can retry it.
    """

    def __init__(
        self,
        *,
        portfolios: PortfolioStateService,
        ledger: LedgerService,
        locks: PortfolioLockService,
        notifications: NotificationSink,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._portfolios = portfolios
        self._ledger = ledger
        self._locks = locks
        self._notifications = notifications
        self._clock = clock or _utc_now

    async def process(self, job: QueuedJob) -> None:
        try:
            payload = RebalanceJobPayload.model_validate(job.payload)
        except ValidationError as exc:
            raise UnrecoverableJobError("INVALID_REBALANCE_JOB_PAYLOAD") from exc

        async with self._locks.hold(payload.portfolio_id) as acquired:
            if not acquired:
                logger.info(
                    "rebalance.job.lock_contended",
                    extra={
                        "extra_fields": {
                            "job_id": job.job_id,
                            "portfolio_id": payload.portfolio_id,
                        }
                    },
                )
                return
            try:
                portfolio, result = await self._execute(payload, attempt=job.attempts_made)
            except PortfolioNotFoundError as exc:
                await self._record_failure(payload, job, exc)
                raise UnrecoverableJobError("PORTFOLIO_NOT_FOUND") from exc
            except Exception as exc:
                await self._record_failure(payload, job, exc)
                raise
            await self._notify(portfolio, payload, result)

    async def _execute(
        self, payload: RebalanceJobPayload, *, attempt: int
    ) -> tuple[Portfolio, LedgerExecutionResult]:
        portfolio = await self._portfolios.get_portfolio(portfolio_id=payload.portfolio_id)
        result = await self._ledger.execute_rebalance(payload.portfolio_id)
        committed = await self._portfolios.commit_rebalance(portfolio=portfolio, result=result)
        await self._portfolios.record_event(
            portfolio_id=payload.portfolio_id,
            triggered_by=payload.triggered_by,
            status="completed",
            attempt=attempt,
            trades=result.trades,
            gas_used=result.gas_used,
        )
        logger.info(
            "rebalance.job.completed",
            extra={
                "extra_fields": {
                    "portfolio_id": payload.portfolio_id,
                    "trades": result.trades,
                    "version": committed.version,
                }
            },
        )
        return committed, result

    async def _record_failure(
        self, payload: RebalanceJobPayload, job: QueuedJob, exc: Exception
    ) -> None:
        error = str(exc) or exc.__class__.__name__
        logger.error(
            "rebalance.job.failed",
            extra={
                "extra_fields": {
                    "job_id": job.job_id,
                    "portfolio_id": payload.portfolio_id,
                    "attempt": job.attempts_made,
                    "error": error,
                }
            },
        )
        try:
            await self._portfolios.record_event(
                portfolio_id=payload.portfolio_id,
                triggered_by=payload.triggered_by,
                status="failed",
                attempt=job.attempts_made,
                error=error,
            )
        except Exception as audit_exc:
            logger.error(
                "rebalance.audit.write_failed",
                extra={
                    "extra_fields": {
                        "portfolio_id": payload.portfolio_id,
                        "error": str(audit_exc),
                    }
                },
            )

    async def _notify(
        self,
        portfolio: Portfolio,
        payload: RebalanceJobPayload,
        result: LedgerExecutionResult,
    ) -> None:
        mode = "automatically" if payload.triggered_by == "scheduler" else "manually"
        notification = RebalanceNotification(
            user_id=portfolio.user_address,
            title="Portfolio Rebalanced",
            message=(
                f"Your portfolio has been {mode} rebalanced. {result.trades} trades "
                f"executed with {result.gas_used} gas used."
            ),
            data={
                "portfolio_id": portfolio.id,
                "trades": result.trades,
                "gas_used": result.gas_used,
                "trigger": payload.triggered_by,
            },
            timestamp=self._clock(),
        )
        try:
            await self._notifications.notify(notification)
        except Exception as exc:
            logger.error(
                "rebalance.notification.failed",
                extra={"extra_fields": {"portfolio_id": portfolio.id, "error": str(exc)}},
            )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
