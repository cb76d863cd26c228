import os
import warnings
from typing import Optional

from pydantic import BaseModel

from src.core.idempotency import DEFAULT_IDEMPOTENCY_TTL_SECONDS, IdempotencyGate
from src.core.jobs import JobQueueOptions, RecurringJobScheduler
from src.core.locks import LockBackend, PortfolioLockService
from src.core.orchestration import (
    ANALYTICS_SNAPSHOT_QUEUE,
    PORTFOLIO_CHECK_QUEUE,
    REBALANCE_QUEUE,
    LedgerService,
    NotificationSink,
    PriceProvider,
    RebalanceOrchestrator,
    RiskModel,
)
from src.core.portfolios import PortfolioStateService
from src.core.safety.circuit_breakers import CircuitBreakerBank, SafetyLimits
from src.infrastructure.idempotency import (
    InMemoryIdempotencyRepository,
    PostgresIdempotencyRepository,
    SqliteIdempotencyRepository,
)
from src.infrastructure.jobs import InMemoryJobQueue
from src.infrastructure.locks import select_lock_backend
from src.infrastructure.portfolios import (
    InMemoryPortfolioRepository,
    PostgresPortfolioRepository,
    SqlitePortfolioRepository,
)
from src.infrastructure.simulated import (
    EnvJsonPriceProvider,
    LoggingNotificationSink,
    PermissiveRiskModel,
    SimulatedLedgerService,
    parse_portfolio_seed,
)

DEFAULT_IDEMPOTENT_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


def env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        parsed = int(value)
    except ValueError:
        return default
    return parsed if parsed >= 1 else default


def env_non_negative_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        parsed = int(value)
    except ValueError:
        return default
    return parsed if parsed >= 0 else default


def env_csv_set(name: str, default: set[str]) -> set[str]:
    value = os.getenv(name)
    if value is None:
        return set(default)
    parsed = {item.strip().upper() for item in value.split(",") if item.strip()}
    return parsed or set(default)


def store_backend_name() -> str:
    backend = os.getenv("REBALANCER_STORE_BACKEND", "IN_MEMORY").strip().upper()
    if backend == "POSTGRES":
        return "POSTGRES"
    if backend in {"SQL", "SQLITE"}:
        return "SQL"
    if backend != "IN_MEMORY":
        warnings.warn(
            f"REBALANCER_STORE_BACKEND={backend} is not recognised; using IN_MEMORY.",
            RuntimeWarning,
            stacklevel=2,
        )
    return "IN_MEMORY"


def store_sql_path() -> str:
    return os.getenv("REBALANCER_SQL_PATH", ".data/rebalancer.db")


def store_postgres_dsn() -> str:
    return os.getenv("REBALANCER_POSTGRES_DSN", "").strip()


def redis_url() -> str:
    return os.getenv("REBALANCER_REDIS_URL", "").strip()


class RuntimeSettings(BaseModel):
    store_backend: str = "IN_MEMORY"
    sql_path: str = ".data/rebalancer.db"
    postgres_dsn: str = ""
    redis_url: str = ""
    scan_interval_minutes: int = 30
    analytics_interval_minutes: int = 60
    rebalance_concurrency: int = 3
    lock_ttl_seconds: int = 300
    job_attempts: int = 5
    job_backoff_seconds: int = 5
    idempotency_ttl_seconds: int = DEFAULT_IDEMPOTENCY_TTL_SECONDS
    idempotent_methods: set[str] = DEFAULT_IDEMPOTENT_METHODS
    cooldown_hours: int = 1
    scheduler_enabled: bool = True
    price_snapshot_json: Optional[str] = None
    seed_portfolios_json: Optional[str] = None


def load_runtime_settings() -> RuntimeSettings:
    return RuntimeSettings(
        store_backend=store_backend_name(),
        sql_path=store_sql_path(),
        postgres_dsn=store_postgres_dsn(),
        redis_url=redis_url(),
        scan_interval_minutes=env_int("REBALANCER_SCAN_INTERVAL_MINUTES", 30),
        analytics_interval_minutes=env_int("REBALANCER_ANALYTICS_INTERVAL_MINUTES", 60),
        rebalance_concurrency=env_int("REBALANCER_REBALANCE_CONCURRENCY", 3),
        lock_ttl_seconds=env_int("REBALANCER_LOCK_TTL_SECONDS", 300),
        job_attempts=env_int("REBALANCER_JOB_ATTEMPTS", 5),
        job_backoff_seconds=env_non_negative_int("REBALANCER_JOB_BACKOFF_SECONDS", 5),
        idempotency_ttl_seconds=env_int(
            "REBALANCER_IDEMPOTENCY_TTL_SECONDS", DEFAULT_IDEMPOTENCY_TTL_SECONDS
        ),
        idempotent_methods=env_csv_set(
            "REBALANCER_IDEMPOTENT_METHODS", DEFAULT_IDEMPOTENT_METHODS
        ),
        cooldown_hours=env_non_negative_int("REBALANCER_COOLDOWN_HOURS", 1),
        scheduler_enabled=env_flag("REBALANCER_SCHEDULER_ENABLED", True),
        price_snapshot_json=os.getenv("REBALANCER_PRICE_SNAPSHOT_JSON"),
        seed_portfolios_json=os.getenv("REBALANCER_SEED_PORTFOLIOS_JSON"),
    )


def build_portfolio_repository(settings: RuntimeSettings):
    if settings.store_backend == "SQL":
        return SqlitePortfolioRepository(database_path=settings.sql_path)
    if settings.store_backend == "POSTGRES":
        if not settings.postgres_dsn:
            raise RuntimeError("REBALANCER_POSTGRES_DSN_REQUIRED")
        try:
            return PostgresPortfolioRepository(dsn=settings.postgres_dsn)
        except RuntimeError:
            raise
        except Exception as exc:
            raise RuntimeError("REBALANCER_POSTGRES_CONNECTION_FAILED") from exc
    return InMemoryPortfolioRepository()


def build_idempotency_repository(settings: RuntimeSettings):
    if settings.store_backend == "SQL":
        return SqliteIdempotencyRepository(database_path=settings.sql_path)
    if settings.store_backend == "POSTGRES":
        if not settings.postgres_dsn:
            raise RuntimeError("REBALANCER_POSTGRES_DSN_REQUIRED")
        try:
            return PostgresIdempotencyRepository(dsn=settings.postgres_dsn)
        except RuntimeError:
            raise
        except Exception as exc:
            raise RuntimeError("REBALANCER_POSTGRES_CONNECTION_FAILED") from exc
    return InMemoryIdempotencyRepository()


class RebalancerRuntime:
    """Everything the HTTP app and the CLI need, built once per process."""

    def __init__(
        self,
        *,
        settings: RuntimeSettings,
        portfolios: PortfolioStateService,
        orchestrator: RebalanceOrchestrator,
        idempotency_gate: IdempotencyGate,
        lock_backend: LockBackend,
    ) -> None:
        self.settings = settings
        self.portfolios = portfolios
        self.orchestrator = orchestrator
        self.idempotency_gate = idempotency_gate
        self.lock_backend = lock_backend

    async def close(self) -> None:
        close = getattr(self.lock_backend, "close", None)
        if close is not None:
            await close()


def build_orchestrator(
    settings: RuntimeSettings,
    *,
    portfolios: PortfolioStateService,
    lock_backend: LockBackend,
    price_provider: PriceProvider,
    ledger: LedgerService,
    risk_model: RiskModel,
    notifications: NotificationSink,
) -> RebalanceOrchestrator:
    options = JobQueueOptions(
        attempts=settings.job_attempts,
        backoff_seconds=settings.job_backoff_seconds,
    )
    limits = SafetyLimits(min_cooldown_hours=settings.cooldown_hours)
    return RebalanceOrchestrator(
        portfolios=portfolios,
        price_provider=price_provider,
        ledger=ledger,
        risk_model=risk_model,
        notifications=notifications,
        locks=PortfolioLockService(
            backend=lock_backend,
            default_ttl_seconds=settings.lock_ttl_seconds,
        ),
        check_queue=InMemoryJobQueue(PORTFOLIO_CHECK_QUEUE, options=options),
        rebalance_queue=InMemoryJobQueue(REBALANCE_QUEUE, options=options),
        analytics_queue=InMemoryJobQueue(ANALYTICS_SNAPSHOT_QUEUE, options=options),
        scheduler=RecurringJobScheduler(),
        breakers=CircuitBreakerBank(limits=limits),
        rebalance_concurrency=settings.rebalance_concurrency,
        scan_interval_seconds=settings.scan_interval_minutes * 60,
        analytics_interval_seconds=settings.analytics_interval_minutes * 60,
    )


async def seed_portfolios(portfolios: PortfolioStateService, seed_json: Optional[str]) -> int:
    """Store seed portfolios that are not already present; returns how many were added."""
    existing = {portfolio.id for portfolio in await portfolios.list_portfolios()}
    added = 0
    for portfolio in parse_portfolio_seed(seed_json):
        if portfolio.id in existing:
            continue
        await portfolios.save_portfolio(portfolio)
        existing.add(portfolio.id)
        added += 1
    return added


async def build_runtime(settings: Optional[RuntimeSettings] = None) -> RebalancerRuntime:
    resolved = settings or load_runtime_settings()
    portfolios = PortfolioStateService(repository=build_portfolio_repository(resolved))
    await seed_portfolios(portfolios, resolved.seed_portfolios_json)
    lock_backend = await select_lock_backend(resolved.redis_url)
    price_provider = EnvJsonPriceProvider(snapshot_json=resolved.price_snapshot_json)
    orchestrator = build_orchestrator(
        resolved,
        portfolios=portfolios,
        lock_backend=lock_backend,
        price_provider=price_provider,
        ledger=SimulatedLedgerService(portfolios=portfolios, price_provider=price_provider),
        risk_model=PermissiveRiskModel(),
        notifications=LoggingNotificationSink(),
    )
    gate = IdempotencyGate(
        repository=build_idempotency_repository(resolved),
        ttl_seconds=resolved.idempotency_ttl_seconds,
    )
    return RebalancerRuntime(
        settings=resolved,
        portfolios=portfolios,
        orchestrator=orchestrator,
        idempotency_gate=gate,
        lock_backend=lock_backend,
    )
