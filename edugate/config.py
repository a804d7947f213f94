from __future__ import annotations

import os
import secrets
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from edugate.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(name: str) -> str:
    """Return the signing secret stored at ``SHARED_FS_ROOT/.<name>``.

    The first process to start writes a fresh secret with an exclusive
    create; every later process (and restart) reads that same file, so
    tokens stay valid across workers and restarts.
    """
    secret_path = Path(os.getenv("SHARED_FS_ROOT", "/srv/edugate")) / f".{name}"
    try:
        secret_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    except OSError as exc:
        logger.warning("secret_dir_setup_failed", path=str(secret_path.parent), error=str(exc))

    candidate = secrets.token_urlsafe(64)
    try:
        fd = os.open(secret_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL | os.O_NOFOLLOW, 0o600)
    except FileExistsError:
        pass
    except OSError as exc:
        logger.error("secret_persist_failed", path=str(secret_path), error=str(exc))
        raise RuntimeError(
            f"cannot store {name}: set it in the environment or make SHARED_FS_ROOT writable"
        ) from exc
    else:
        with os.fdopen(fd, "w") as handle:
            handle.write(candidate)
        logger.info("secret_generated", secret_name=name)
        return candidate

    if secret_path.is_symlink():
        raise RuntimeError(f"refusing to read {name} through a symlink")
    stored = secret_path.read_text().strip()
    if len(stored) < 32:
        raise RuntimeError(f"stored {name} is too short; delete {secret_path} to regenerate")
    return stored


class Settings(BaseModel):
    """Runtime settings for the session and access-control service."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")
    app_version: str = env_field("1.0.0", "APP_VERSION")
    database_url: str = env_field(
        "postgresql://localhost:5432/edugate", "DATABASE_URL"
    )
    redis_url: Optional[str] = env_field(
        None,
        "REDIS_URL",
        description="Optional Redis for rate limits shared across workers",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/edugate", "SHARED_FS_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (no background maintenance loop).",
    )
    access_token_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    refresh_token_secret: str = env_field(None, "JWT_REFRESH_SECRET", validate_default=True)
    jwt_issuer: str = env_field("edugate", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(
        60, "ACCESS_TOKEN_TTL_MINUTES", description="Access token lifetime in minutes"
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Refresh token and session lifetime in minutes",
    )
    activity_log_retention_days: int = env_field(
        30,
        "ACTIVITY_LOG_RETENTION_DAYS",
        description="Activity log entries older than this are purged by the maintenance loop",
    )
    cleanup_interval_seconds: int = env_field(86400, "CLEANUP_INTERVAL_SECONDS")
    health_check_interval_seconds: int = env_field(300, "HEALTH_CHECK_INTERVAL_SECONDS")
    api_prefix: str = env_field("/api", "API_PREFIX")
    cors_allow_origins: str = env_field("http://localhost:5173", "CORS_ALLOW_ORIGINS")
    rate_limit_requests: int = env_field(
        100, "RATE_LIMIT_REQUESTS", description="Requests per window per client IP"
    )
    rate_limit_window_seconds: int = env_field(15 * 60, "RATE_LIMIT_WINDOW_SECONDS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("access_token_secret", mode="before")
    @classmethod
    def _ensure_access_secret(cls, value: str | None) -> str:
        return value or _load_or_create_secret("jwt_secret")

    @field_validator("refresh_token_secret", mode="before")
    @classmethod
    def _ensure_refresh_secret(cls, value: str | None) -> str:
        return value or _load_or_create_secret("jwt_refresh_secret")

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "activity_log_retention_days",
        "cleanup_interval_seconds",
        "health_check_interval_seconds",
        "rate_limit_requests",
        "rate_limit_window_seconds",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("api_prefix")
    @classmethod
    def _normalize_prefix(cls, value: str) -> str:
        value = "/" + value.strip().strip("/")
        return "" if value == "/" else value

    @model_validator(mode="after")
    def _distinct_secrets(self) -> "Settings":
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
