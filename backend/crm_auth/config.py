import json
import os
import re
import threading
from datetime import timedelta
from urllib.parse import urlparse

from dotenv import load_dotenv
from pydantic import BaseModel, Field


load_dotenv()

_DURATION_RE = re.compile(r"^(\d+)([dhms])$")
_DURATION_UNITS = {
    "d": timedelta(days=1),
    "h": timedelta(hours=1),
    "m": timedelta(minutes=1),
    "s": timedelta(seconds=1),
}
SUPPORTED_DATABASE_SCHEMES = {"postgresql+asyncpg", "sqlite+aiosqlite"}


def parse_duration(value: str | None, default: timedelta) -> timedelta:
    """Parse ``<n>[dhms]`` strings such as ``15m`` or ``30d``.

    Anything that does not match falls back to ``default``.
    """
    match = _DURATION_RE.match((value or "").strip())
    if match is None:
        return default
    return int(match.group(1)) * _DURATION_UNITS[match.group(2)]


def _parse_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"{name} must be a boolean value")


def _parse_allowed_origins(raw_allowed_origins: str) -> list[str]:
    # Support both CSV format and JSON array format
    if raw_allowed_origins.startswith("["):
        try:
            parsed_list = json.loads(raw_allowed_origins)
        except json.JSONDecodeError as exc:
            raise ValueError(f"ALLOWED_ORIGINS JSON is malformed: {exc}") from exc
        if not isinstance(parsed_list, list):
            raise ValueError("ALLOWED_ORIGINS JSON must be an array")
        allowed_origins = [
            origin.strip()
            for origin in parsed_list
            if isinstance(origin, str) and origin.strip()
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
    app_name: str = Field(default="CRM Auth Backend")
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    database_url: str = Field(default="")
    redis_url: str = Field(default="redis://localhost:6379/0")
    allowed_origins: list[str] = Field(default_factory=list)
    db_pool_size: int = Field(default=5)
    db_max_overflow: int = Field(default=10)
    db_pool_recycle: int = Field(default=1800)
    db_pool_pre_ping: bool = Field(default=True)
    jwt_access_secret: str = Field(default="")
    jwt_refresh_secret: str = Field(default="")
    jwt_algorithm: str = Field(default="HS256")
    access_token_ttl: timedelta = Field(default=timedelta(minutes=15))
    refresh_token_ttl: timedelta = Field(default=timedelta(days=30))
    refresh_cookie_name: str = Field(default="refreshToken")
    refresh_cookie_path: str = Field(default="/api/auth/refresh")
    token_cleanup_interval_minutes: int = Field(default=60)

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @classmethod
    def from_env(cls) -> "Settings":
        fields = cls.model_fields

        jwt_access_secret = os.getenv("JWT_ACCESS_SECRET", "").strip()
        if not jwt_access_secret:
            raise ValueError("JWT_ACCESS_SECRET environment variable must be set")
        jwt_refresh_secret = os.getenv("JWT_REFRESH_SECRET", "").strip()
        if not jwt_refresh_secret:
            raise ValueError("JWT_REFRESH_SECRET environment variable must be set")
        if jwt_access_secret == jwt_refresh_secret:
            raise ValueError("JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must differ")

        raw_allowed_origins = os.getenv("ALLOWED_ORIGINS", "").strip()
        if not raw_allowed_origins:
            raise ValueError("ALLOWED_ORIGINS environment variable must be set")
        allowed_origins = _parse_allowed_origins(raw_allowed_origins)

        database_url = os.getenv("DATABASE_URL", "").strip()
        if not database_url:
            raise ValueError("DATABASE_URL environment variable must be set")
        parsed_db = urlparse(database_url)
        if parsed_db.scheme not in SUPPORTED_DATABASE_SCHEMES:
            raise ValueError(
                "DATABASE_URL must start with 'postgresql+asyncpg://' or 'sqlite+aiosqlite://'"
            )
        if parsed_db.scheme == "postgresql+asyncpg" and not parsed_db.hostname:
            raise ValueError("DATABASE_URL must include hostname")

        db_pool_size = int(os.getenv("DB_POOL_SIZE", fields["db_pool_size"].default))
        if db_pool_size <= 0:
            raise ValueError("DB_POOL_SIZE must be greater than 0")

        db_max_overflow = int(
            os.getenv("DB_MAX_OVERFLOW", fields["db_max_overflow"].default)
        )
        if db_max_overflow < 0:
            raise ValueError("DB_MAX_OVERFLOW must be greater than or equal to 0")

        db_pool_recycle = int(
            os.getenv("DB_POOL_RECYCLE", fields["db_pool_recycle"].default)
        )
        if db_pool_recycle <= 0:
            raise ValueError("DB_POOL_RECYCLE must be greater than 0")

        db_pool_pre_ping = _parse_bool(
            "DB_POOL_PRE_PING",
            os.getenv("DB_POOL_PRE_PING", str(fields["db_pool_pre_ping"].default)),
        )

        cleanup_interval = int(
            os.getenv(
                "TOKEN_CLEANUP_INTERVAL_MINUTES",
                fields["token_cleanup_interval_minutes"].default,
            )
        )
        if cleanup_interval <= 0:
            raise ValueError("TOKEN_CLEANUP_INTERVAL_MINUTES must be greater than 0")

        refresh_cookie_path = os.getenv(
            "REFRESH_COOKIE_PATH", fields["refresh_cookie_path"].default
        ).strip()
        if not refresh_cookie_path.startswith("/"):
            raise ValueError("REFRESH_COOKIE_PATH must be an absolute path")

        return cls(
            app_name=os.getenv("APP_NAME", fields["app_name"].default),
            environment=os.getenv("ENVIRONMENT", fields["environment"].default)
            .strip()
            .lower(),
            debug=os.getenv("DEBUG", "false").lower() == "true",
            database_url=database_url,
            redis_url=os.getenv("REDIS_URL", fields["redis_url"].default).strip(),
            allowed_origins=allowed_origins,
            jwt_access_secret=jwt_access_secret,
            jwt_refresh_secret=jwt_refresh_secret,
            jwt_algorithm=os.getenv("JWT_ALGORITHM", fields["jwt_algorithm"].default),
            access_token_ttl=parse_duration(
                os.getenv("JWT_ACCESS_EXPIRES_IN"), fields["access_token_ttl"].default
            ),
            refresh_token_ttl=parse_duration(
                os.getenv("JWT_REFRESH_EXPIRES_IN"), fields["refresh_token_ttl"].default
            ),
            refresh_cookie_path=refresh_cookie_path,
            token_cleanup_interval_minutes=cleanup_interval,
            db_pool_size=db_pool_size,
            db_max_overflow=db_max_overflow,
            db_pool_recycle=db_pool_recycle,
            db_pool_pre_ping=db_pool_pre_ping,
        )


_settings_instance: Settings | None = None
_settings_lock = threading.Lock()


def get_settings() -> Settings:
    """Get settings instance, creating it on first access.

    Validation is deferred to first access so modules can be imported
    without a complete environment. Double-checked locking keeps concurrent
    first accesses from building two instances.

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
