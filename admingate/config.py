from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from admingate.logging import get_logger

logger = get_logger(__name__)

DEFAULT_FINGERPRINT_SIGNALS = (
    "user-agent",
    "accept-language",
    "accept-encoding",
    "accept",
    "sec-ch-ua",
    "sec-ch-ua-platform",
    "sec-ch-ua-mobile",
    "dnt",
    "sec-fetch-site",
    "sec-fetch-mode",
    "upgrade-insecure-requests",
)

_MIN_SECRET_LENGTH = 32


class Environment(str, Enum):
    """Deployment environments; cookies are marked secure only in production."""

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_generate_secret(filename: str) -> str:
    """Return a persisted signing secret from SHARED_FS_ROOT, generating it if absent.

    Written atomically (temp file then rename) with 0600 permissions so tokens
    stay verifiable across restarts and across processes sharing the root.
    """
    fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/admingate"))
    secret_path = fs_root / filename

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass
    except OSError as exc:
        logger.warning(
            "secret_dir_setup_failed",
            error=str(exc),
            path=str(fs_root),
        )

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= _MIN_SECRET_LENGTH:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(
            dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp"
        )
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist signing secret {filename}; set it via env var or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings for the admin session engine."""

    database_url: str = env_field(
        "postgresql://localhost:5432/admingate", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/admingate", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (in-process fallbacks, runtime resets).",
    )
    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")

    access_token_secret: str | None = env_field(None, "ADMIN_ACCESS_TOKEN_SECRET")
    refresh_token_secret: str | None = env_field(None, "ADMIN_REFRESH_TOKEN_SECRET")
    token_issuer: str = env_field("admingate", "ADMIN_TOKEN_ISSUER")
    access_token_ttl_minutes: int = env_field(
        12 * 60,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Session and access token lifetime in minutes",
    )
    refresh_token_ttl_days: int = env_field(30, "REFRESH_TOKEN_TTL_DAYS")
    refresh_threshold_minutes: int = env_field(
        30,
        "REFRESH_THRESHOLD_MINUTES",
        description="Sliding refresh kicks in when less than this much lifetime remains",
    )

    heartbeat_interval_seconds: int = env_field(300, "HEARTBEAT_INTERVAL_SECONDS")
    sweep_interval_seconds: int = env_field(300, "SWEEP_INTERVAL_SECONDS")
    sweeper_enabled: bool = env_field(True, "SESSION_SWEEPER_ENABLED")
    suspicious_marker_ttl_seconds: int = env_field(3600, "SUSPICIOUS_MARKER_TTL_SECONDS")
    max_concurrent_sessions: int = env_field(3, "MAX_CONCURRENT_SESSIONS")
    session_cache_max_size: int = env_field(10000, "SESSION_CACHE_MAX_SIZE")

    cookie_domain: str | None = env_field(None, "COOKIE_DOMAIN")
    cookie_path: str = env_field("/admin", "COOKIE_PATH")
    fingerprint_cookie_max_age_seconds: int = env_field(3600, "FINGERPRINT_COOKIE_MAX_AGE")

    fingerprint_signals: tuple[str, ...] = env_field(
        DEFAULT_FINGERPRINT_SIGNALS,
        "FINGERPRINT_SIGNALS",
        description="Comma-separated request headers hashed into the device fingerprint",
    )
    fingerprint_bind_origin: bool = env_field(
        False,
        "FINGERPRINT_BIND_ORIGIN",
        description="Include the resolved network origin in the fingerprint hash",
    )
    required_role: str = env_field("admin", "ADMIN_REQUIRED_ROLE")

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

    @field_validator("environment", mode="before")
    @classmethod
    def _validate_environment(cls, value: Any) -> Environment:
        if isinstance(value, str):
            return Environment(value.strip().lower())
        return Environment(value)

    @field_validator("fingerprint_signals", mode="before")
    @classmethod
    def _split_signals(cls, value: Any) -> tuple[str, ...]:
        if isinstance(value, str):
            items = [part.strip().lower() for part in value.split(",")]
        else:
            items = [str(part).strip().lower() for part in value]
        signals = tuple(item for item in items if item)
        if not signals:
            raise ValueError("fingerprint_signals must name at least one header")
        return signals

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_days",
        "heartbeat_interval_seconds",
        "sweep_interval_seconds",
        "suspicious_marker_ttl_seconds",
        "max_concurrent_sessions",
        "session_cache_max_size",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @model_validator(mode="after")
    def _ensure_token_secrets(self) -> "Settings":
        if self.environment == Environment.PRODUCTION and not (
            self.access_token_secret and self.refresh_token_secret
        ):
            raise ValueError(
                "ADMIN_ACCESS_TOKEN_SECRET and ADMIN_REFRESH_TOKEN_SECRET are required in production"
            )
        if not self.access_token_secret:
            self.access_token_secret = _load_or_generate_secret(".admin_access_secret")
        if not self.refresh_token_secret:
            self.refresh_token_secret = _load_or_generate_secret(".admin_refresh_secret")
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("access and refresh token secrets must differ")
        if self.refresh_threshold_minutes >= self.access_token_ttl_minutes:
            raise ValueError("refresh_threshold_minutes must be shorter than the session lifetime")
        return self

    @property
    def secure_cookies(self) -> bool:
        return self.environment == Environment.PRODUCTION


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
