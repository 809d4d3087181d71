import json
import os
import threading
from urllib.parse import urlparse

from dotenv import load_dotenv
from pydantic import BaseModel, Field


load_dotenv()

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}
_LIMITER_BACKENDS = {"memory", "redis"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, str(default)).strip().lower()
    if raw in _TRUE_VALUES:
        return True
    if raw in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean value")


def _parse_allowed_origins(raw_allowed_origins: str) -> list[str]:
    # Support both CSV format and JSON array format
    allowed_origins: list[str] = []
    if raw_allowed_origins.startswith("["):
        try:
            parsed_list = json.loads(raw_allowed_origins)
        except json.JSONDecodeError as exc:
            raise ValueError(f"ALLOWED_ORIGINS JSON is malformed: {exc}") from exc
        if not isinstance(parsed_list, list):
            raise ValueError("ALLOWED_ORIGINS JSON must be an array")
        allowed_origins = [
            origin.strip() for origin in parsed_list if isinstance(origin, str) and origin.strip()
        ]
    else:
        allowed_origins = [
            origin.strip() for origin in raw_allowed_origins.split(",") if origin.strip()
        ]

    if not allowed_origins:
        raise ValueError("ALLOWED_ORIGINS must contain at least one origin")

    if "*" in allowed_origins:
        raise ValueError(
            "ALLOWED_ORIGINS cannot contain '*' when credentialed requests are used"
        )

    for origin in allowed_origins:
        parsed = urlparse(origin)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(
                "ALLOWED_ORIGINS must contain valid http/https origins with host"
            )
    return allowed_origins


class Settings(BaseModel):
    app_name: str = Field(default="Academia Backend")
    debug: bool = Field(default=False)
    database_url: str = Field(default="")
    redis_url: str = Field(default="redis://localhost:6379/0")
    allowed_origins: list[str] = Field(default_factory=list)
    db_pool_size: int = Field(default=5)
    db_max_overflow: int = Field(default=10)
    db_pool_recycle: int = Field(default=1800)
    db_pool_pre_ping: bool = Field(default=True)
    secret_key: str | None = Field(default=None)
    algorithm: str = Field(default="HS256")

    # External identity provider (password grant)
    auth_service_url: str = Field(default="")
    auth_service_api_key: str | None = Field(default=None)

    # Concurrency/anomaly policy
    tracking_max_concurrent_sessions: int = Field(default=2)
    tracking_warn_concurrent_sessions: int = Field(default=1)
    tracking_stale_session_seconds: int = Field(default=120)
    tracking_recent_window_hours: int = Field(default=24)
    tracking_max_distinct_ips: int = Field(default=5)
    tracking_max_distinct_devices: int = Field(default=3)
    tracking_sweep_interval_seconds: int = Field(default=60)

    # Login attempt limiter
    login_max_attempts: int = Field(default=5)
    login_cooldown_seconds: float = Field(default=300.0)
    login_min_interval_seconds: float = Field(default=2.0)
    login_limiter_backend: str = Field(default="memory")

    @classmethod
    def from_env(cls) -> "Settings":
        secret_key = os.getenv("SECRET_KEY", "").strip()
        if not secret_key:
            raise ValueError("SECRET_KEY environment variable must be set")

        raw_allowed_origins = os.getenv("ALLOWED_ORIGINS", "").strip()
        if not raw_allowed_origins:
            raise ValueError("ALLOWED_ORIGINS environment variable must be set")
        allowed_origins = _parse_allowed_origins(raw_allowed_origins)

        database_url = os.getenv("DATABASE_URL", "").strip()
        if not database_url:
            raise ValueError("DATABASE_URL environment variable must be set")

        parsed_db = urlparse(database_url)
        if parsed_db.scheme != "postgresql+asyncpg":
            raise ValueError("DATABASE_URL must start with 'postgresql+asyncpg://'")
        if not parsed_db.hostname:
            raise ValueError("DATABASE_URL must include hostname")

        fields = cls.model_fields

        db_pool_size = _env_int("DB_POOL_SIZE", fields["db_pool_size"].default)
        if db_pool_size <= 0:
            raise ValueError("DB_POOL_SIZE must be greater than 0")

        db_max_overflow = _env_int("DB_MAX_OVERFLOW", fields["db_max_overflow"].default)
        if db_max_overflow < 0:
            raise ValueError("DB_MAX_OVERFLOW must be greater than or equal to 0")

        db_pool_recycle = _env_int("DB_POOL_RECYCLE", fields["db_pool_recycle"].default)
        if db_pool_recycle <= 0:
            raise ValueError("DB_POOL_RECYCLE must be greater than 0")

        max_sessions = _env_int(
            "TRACKING_MAX_CONCURRENT_SESSIONS",
            fields["tracking_max_concurrent_sessions"].default,
        )
        if max_sessions <= 0:
            raise ValueError("TRACKING_MAX_CONCURRENT_SESSIONS must be greater than 0")

        warn_sessions = _env_int(
            "TRACKING_WARN_CONCURRENT_SESSIONS",
            fields["tracking_warn_concurrent_sessions"].default,
        )
        if warn_sessions < 0 or warn_sessions >= max_sessions:
            raise ValueError(
                "TRACKING_WARN_CONCURRENT_SESSIONS must be between 0 and "
                "TRACKING_MAX_CONCURRENT_SESSIONS - 1"
            )

        stale_seconds = _env_int(
            "TRACKING_STALE_SESSION_SECONDS",
            fields["tracking_stale_session_seconds"].default,
        )
        if stale_seconds <= 0:
            raise ValueError("TRACKING_STALE_SESSION_SECONDS must be greater than 0")

        sweep_interval = _env_int(
            "TRACKING_SWEEP_INTERVAL_SECONDS",
            fields["tracking_sweep_interval_seconds"].default,
        )
        if sweep_interval <= 0:
            raise ValueError("TRACKING_SWEEP_INTERVAL_SECONDS must be greater than 0")

        login_max_attempts = _env_int(
            "LOGIN_MAX_ATTEMPTS", fields["login_max_attempts"].default
        )
        if login_max_attempts <= 0:
            raise ValueError("LOGIN_MAX_ATTEMPTS must be greater than 0")

        login_limiter_backend = os.getenv(
            "LOGIN_LIMITER_BACKEND", fields["login_limiter_backend"].default
        ).strip().lower()
        if login_limiter_backend not in _LIMITER_BACKENDS:
            raise ValueError("LOGIN_LIMITER_BACKEND must be 'memory' or 'redis'")

        redis_url = os.getenv("REDIS_URL", fields["redis_url"].default).strip()
        auth_service_api_key = os.getenv("AUTH_SERVICE_API_KEY", "").strip() or None

        return cls(
            app_name=os.getenv("APP_NAME", fields["app_name"].default),
            debug=os.getenv("DEBUG", "false").lower() == "true",
            database_url=database_url,
            redis_url=redis_url,
            allowed_origins=allowed_origins,
            secret_key=secret_key,
            algorithm=os.getenv("ALGORITHM", fields["algorithm"].default),
            auth_service_url=os.getenv("AUTH_SERVICE_URL", "").strip().rstrip("/"),
            auth_service_api_key=auth_service_api_key,
            db_pool_size=db_pool_size,
            db_max_overflow=db_max_overflow,
            db_pool_recycle=db_pool_recycle,
            db_pool_pre_ping=_env_bool(
                "DB_POOL_PRE_PING", fields["db_pool_pre_ping"].default
            ),
            tracking_max_concurrent_sessions=max_sessions,
            tracking_warn_concurrent_sessions=warn_sessions,
            tracking_stale_session_seconds=stale_seconds,
            tracking_recent_window_hours=_env_int(
                "TRACKING_RECENT_WINDOW_HOURS",
                fields["tracking_recent_window_hours"].default,
            ),
            tracking_max_distinct_ips=_env_int(
                "TRACKING_MAX_DISTINCT_IPS", fields["tracking_max_distinct_ips"].default
            ),
            tracking_max_distinct_devices=_env_int(
                "TRACKING_MAX_DISTINCT_DEVICES",
                fields["tracking_max_distinct_devices"].default,
            ),
            tracking_sweep_interval_seconds=sweep_interval,
            login_max_attempts=login_max_attempts,
            login_cooldown_seconds=_env_float(
                "LOGIN_COOLDOWN_SECONDS", fields["login_cooldown_seconds"].default
            ),
            login_min_interval_seconds=_env_float(
                "LOGIN_MIN_INTERVAL_SECONDS",
                fields["login_min_interval_seconds"].default,
            ),
            login_limiter_backend=login_limiter_backend,
        )


# Settings are validated on first access, not at import time.
_settings_instance: Settings | None = None
_settings_lock = threading.Lock()


def get_settings() -> Settings:
    """Get settings instance, creating it on first access.

    Uses double-checked locking so concurrent first accesses build the
    settings exactly once.

    Raises:
        ValueError: If required environment variables are missing or invalid
    """
    global _settings_instance

    if _settings_instance is not None:
        return _settings_instance

    with _settings_lock:
        if _settings_instance is None:
            _settings_instance = Settings.from_env()

    return _settings_instance


class _SettingsProxy:
    """Proxy to defer settings creation until first attribute access."""

    def __getattr__(self, name: str):
        return getattr(get_settings(), name)


settings = _SettingsProxy()  # type: ignore[assignment]
