from __future__ import annotations

import os
from dataclasses import dataclass


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class Settings:
    app_env: str
    persistence_enabled: bool
    persistence_db_path: str
    database_url: str
    auth_enabled: bool
    jwt_secret: str
    jwt_algorithm: str
    email_enabled: bool
    email_api_key: str
    email_api_url: str
    email_from: str
    app_url: str
    notification_max_attempts: int
    notification_retry_backoff_seconds: int
    document_max_bytes: int
    change_feed_secret: str


def load_settings() -> Settings:
    persistence_db_path = os.getenv(
        "PERSISTENCE_DB_PATH", "data/recruitment_pipeline.sqlite3"
    ).strip()
    database_url = os.getenv("DATABASE_URL", "").strip()
    if not database_url:
        database_url = f"sqlite:///{persistence_db_path.replace(chr(92), '/')}"
    email_api_key = os.getenv("RESEND_API_KEY", "").strip()
    return Settings(
        app_env=os.getenv("APP_ENV", "development"),
        persistence_enabled=_bool_env("PERSISTENCE_ENABLED", True),
        persistence_db_path=persistence_db_path,
        database_url=database_url,
        auth_enabled=_bool_env("AUTH_ENABLED", False),
        jwt_secret=os.getenv("JWT_SECRET", "dev-only-secret-change-in-prod").strip(),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256").strip(),
        email_enabled=_bool_env("EMAIL_ENABLED", bool(email_api_key)),
        email_api_key=email_api_key,
        email_api_url=os.getenv("EMAIL_API_URL", "https://api.resend.com/emails").strip(),
        email_from=os.getenv("RESEND_FROM_EMAIL", "notificaciones@agendapro.com").strip(),
        app_url=os.getenv("APP_URL", "https://recruitment.agendapro.com").strip(),
        notification_max_attempts=max(1, _int_env("NOTIFICATION_MAX_ATTEMPTS", 3)),
        notification_retry_backoff_seconds=max(
            1, _int_env("NOTIFICATION_RETRY_BACKOFF_SECONDS", 60)
        ),
        document_max_bytes=max(1024, _int_env("DOCUMENT_MAX_BYTES", 10 * 1024 * 1024)),
        change_feed_secret=os.getenv("CHANGE_FEED_SECRET", "").strip(),
    )
