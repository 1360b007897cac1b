import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    log_level: str

    notify_backend: str
    notify_webhook_url: str
    notify_timeout_seconds: int


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise RuntimeError(f"{name} must be an integer (got {raw!r}).") from e


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///docflow.db"),
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
        notify_backend=_getenv("NOTIFY_BACKEND", "log").lower(),
        notify_webhook_url=_getenv("NOTIFY_WEBHOOK_URL", ""),
        notify_timeout_seconds=_getenv_int("NOTIFY_TIMEOUT_SECONDS", 10),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "LOG_LEVEL": s.log_level,
        "NOTIFY_BACKEND": s.notify_backend,
        "NOTIFY_WEBHOOK_URL": s.notify_webhook_url,
        "NOTIFY_TIMEOUT_SECONDS": s.notify_timeout_seconds,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,
        # version payloads are JSON documents, not uploads (2MB)
        "MAX_CONTENT_LENGTH": 2 * 1024 * 1024,
    }
