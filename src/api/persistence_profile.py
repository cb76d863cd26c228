import os

from src.api.runtime_config import redis_url, store_backend_name, store_postgres_dsn

_PRODUCTION_PROFILE = "PRODUCTION"
_LOCAL_PROFILE = "LOCAL"


def app_persistence_profile_name() -> str:
    profile = os.getenv("APP_PERSISTENCE_PROFILE", _LOCAL_PROFILE).strip().upper()
    return _PRODUCTION_PROFILE if profile == _PRODUCTION_PROFILE else _LOCAL_PROFILE


def validate_persistence_profile_guardrails() -> None:
    if app_persistence_profile_name() != _PRODUCTION_PROFILE:
        return
    if store_backend_name() != "POSTGRES":
        raise RuntimeError("PERSISTENCE_PROFILE_REQUIRES_POSTGRES")
    if not store_postgres_dsn():
        raise RuntimeError("PERSISTENCE_PROFILE_REQUIRES_POSTGRES_DSN")
    if not redis_url():
        raise RuntimeError("PERSISTENCE_PROFILE_REQUIRES_REDIS_LOCKS")
