from src.core.orchestration.analytics import AnalyticsSnapshotProcessor, build_snapshot
from src.core.orchestration.models import (
    OrchestratorMetrics,
    RebalanceStatus,
    RebalanceTriggerResult,
)
from src.core.orchestration.ports import LedgerService, NotificationSink, PriceProvider, RiskModel
from src.core.orchestration.rebalance_worker import RebalanceJobProcessor
from src.core.orchestration.scan import DEMO_PORTFOLIO_ID, PortfolioScanner, ScanCycleSummary
from src.core.orchestration.service import (
    ANALYTICS_SNAPSHOT_QUEUE,
    ANALYTICS_SNAPSHOT_SCHEDULE_ID,
    PORTFOLIO_CHECK_QUEUE,
    PORTFOLIO_CHECK_SCHEDULE_ID,
    REBALANCE_QUEUE,
    RebalanceBlockedError,
    RebalanceOrchestrator,
)

__all__ = [
    "ANALYTICS_SNAPSHOT_QUEUE",
    "ANALYTICS_SNAPSHOT_SCHEDULE_ID",
    "AnalyticsSnapshotProcessor",
    "DEMO_PORTFOLIO_ID",
    "LedgerService",
    "NotificationSink",
    "OrchestratorMetrics",
    "PORTFOLIO_CHECK_QUEUE",
    "PORTFOLIO_CHECK_SCHEDULE_ID",
    "PortfolioScanner",
    "PriceProvider",
    "REBALANCE_QUEUE",
    "RebalanceBlockedError",
    "RebalanceJobProcessor",
    "RebalanceOrchestrator",
    "RebalanceStatus",
    "RebalanceTriggerResult",
    "RiskModel",
    "ScanCycleSummary",
    "build_snapshot",
]
