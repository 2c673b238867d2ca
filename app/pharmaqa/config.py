import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    log_level: str

    storage_backend: str
    storage_root: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str

    ledger_backend: str
    ledger_url: str
    ledger_api_key: str
    ledger_timeout_seconds: float
    ledger_max_attempts: int
    ledger_retry_backoff_seconds: float

    review_deadline_seconds: float


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_float(name: str, default: float) -> float:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be a number (got {raw!r}).")


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer (got {raw!r}).")


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///pharmaqa.db"),
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        storage_root=_getenv("STORAGE_ROOT", ""),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "nyc3"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        ledger_backend=_getenv("LEDGER_BACKEND", "local").lower(),
        ledger_url=_getenv("LEDGER_URL", ""),
        ledger_api_key=_getenv("LEDGER_API_KEY", ""),
        ledger_timeout_seconds=_getenv_float("LEDGER_TIMEOUT_SECONDS", 10.0),
        ledger_max_attempts=max(1, _getenv_int("LEDGER_MAX_ATTEMPTS", 3)),
        ledger_retry_backoff_seconds=_getenv_float("LEDGER_RETRY_BACKOFF_SECONDS", 0.5),
        review_deadline_seconds=_getenv_float("REVIEW_DEADLINE_SECONDS", 30.0),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "LOG_LEVEL": s.log_level,
        "STORAGE_BACKEND": s.storage_backend,
        "STORAGE_ROOT": s.storage_root,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        # ledger anchoring
        "LEDGER_BACKEND": s.ledger_backend,
        "LEDGER_URL": s.ledger_url,
        "LEDGER_API_KEY": s.ledger_api_key,
        "LEDGER_TIMEOUT_SECONDS": s.ledger_timeout_seconds,
        "LEDGER_MAX_ATTEMPTS": s.ledger_max_attempts,
        "LEDGER_RETRY_BACKOFF_SECONDS": s.ledger_retry_backoff_seconds,
        # an approval not committed within this window is abandoned
        "REVIEW_DEADLINE_SECONDS": s.review_deadline_seconds,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        "JSON_SORT_KEYS": False,
    }
