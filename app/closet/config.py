import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    notifications_database_url: str
    log_level: str

    moderation_tx_timeout_seconds: float

    fanout_batch_size: int
    fanout_batch_timeout_seconds: float
    fanout_max_attempts: int
    fanout_retry_base_delay: float
    fanout_retry_max_delay: float
    fanout_workers: int

    retention_days: int


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getint(name: str, default: int, minimum: int = 1) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    value = int(raw)
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum} (got {value})")
    return value


def _getfloat(name: str, default: float) -> float:
    raw = _getenv(name)
    if not raw:
        return default
    value = float(raw)
    if value < 0:
        raise ValueError(f"{name} must not be negative (got {value})")
    return value


def load_settings() -> Settings:
    database_url = _getenv("DATABASE_URL", "sqlite:///closet.db")
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=database_url,
        # Notifications may live in their own database; defaults to the listing store.
        notifications_database_url=_getenv("NOTIFICATIONS_DATABASE_URL", database_url),
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
        moderation_tx_timeout_seconds=_getfloat("MODERATION_TX_TIMEOUT_SECONDS", 10.0),
        fanout_batch_size=_getint("FANOUT_BATCH_SIZE", 500),
        fanout_batch_timeout_seconds=_getfloat("FANOUT_BATCH_TIMEOUT_SECONDS", 15.0),
        fanout_max_attempts=_getint("FANOUT_MAX_ATTEMPTS", 4),
        fanout_retry_base_delay=_getfloat("FANOUT_RETRY_BASE_DELAY", 0.5),
        fanout_retry_max_delay=_getfloat("FANOUT_RETRY_MAX_DELAY", 30.0),
        fanout_workers=_getint("FANOUT_WORKERS", 4),
        retention_days=_getint("RETENTION_DAYS", 30),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "NOTIFICATIONS_DATABASE_URL": s.notifications_database_url,
        "LOG_LEVEL": s.log_level,
        "MODERATION_TX_TIMEOUT_SECONDS": s.moderation_tx_timeout_seconds,
        "FANOUT_BATCH_SIZE": s.fanout_batch_size,
        "FANOUT_BATCH_TIMEOUT_SECONDS": s.fanout_batch_timeout_seconds,
        "FANOUT_MAX_ATTEMPTS": s.fanout_max_attempts,
        "FANOUT_RETRY_BASE_DELAY": s.fanout_retry_base_delay,
        "FANOUT_RETRY_MAX_DELAY": s.fanout_retry_max_delay,
        "FANOUT_WORKERS": s.fanout_workers,
        "RETENTION_DAYS": s.retention_days,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        "JSON_SORT_KEYS": False,
    }
