from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional, Union
from urllib.parse import urlparse, urlunparse

from admingate.api.boundary import AuthenticationBoundary
from admingate.config import get_settings, reset_settings_cache
from admingate.logging import get_logger
from admingate.service.audit import AuditTrail, InProcessMarkerStore
from admingate.service.fingerprint import FingerprintEngine
from admingate.service.heartbeat import HeartbeatMonitor, SessionSweeper
from admingate.service.session_store import SessionStore
from admingate.service.sessions import SessionService
from admingate.service.tokens import TokenCodec
from admingate.storage.memory import MemoryStore
from admingate.storage.models import utcnow
from admingate.storage.postgres import PostgresStore
from admingate.storage.redis_cache import RedisCache
from admingate.storage.session_cache import SessionCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, *, clock: Callable[[], datetime] = utcnow):
        self.settings = get_settings()
        self.clock = clock
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            environment=self.settings.environment.value,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if (
                not self.settings.test_mode
                and not self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is required for cross-process suspicious-activity markers; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; suspicious-activity "
                    "markers are per-process only."
                ),
                mode=fallback_mode,
            )

        self.markers = self.cache if self.cache is not None else InProcessMarkerStore(clock=clock)
        self.session_cache = SessionCache(max_size=self.settings.session_cache_max_size)
        self.session_store = SessionStore(
            self.store,
            self.session_cache,
            session_ttl=timedelta(minutes=self.settings.access_token_ttl_minutes),
            required_role=self.settings.required_role,
            clock=clock,
        )
        self.codec = TokenCodec(self.settings, clock=clock)
        self.fingerprints = FingerprintEngine(
            self.settings.fingerprint_signals,
            bind_origin=self.settings.fingerprint_bind_origin,
        )
        self.audit = AuditTrail(
            self.store,
            self.markers,
            marker_ttl_seconds=self.settings.suspicious_marker_ttl_seconds,
            clock=clock,
        )
        self.heartbeat = HeartbeatMonitor(
            self.session_store,
            self.audit,
            interval_seconds=self.settings.heartbeat_interval_seconds,
            clock=clock,
        )
        self.sessions = SessionService(
            self.settings,
            self.session_store,
            self.codec,
            self.fingerprints,
            self.audit,
            self.heartbeat,
            clock=clock,
        )
        self.boundary = AuthenticationBoundary(self.sessions, self.settings)
        self.sweeper = SessionSweeper(
            self.sessions.cleanup_expired_sessions,
            interval_seconds=self.settings.sweep_interval_seconds,
        )
        logger.info("runtime_init_complete", redis_enabled=self.cache is not None)

    async def close(self) -> None:
        await self.sweeper.stop()
        self.session_cache.clear()
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.pool.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(*, clock: Optional[Callable[[], datetime]] = None) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.session_cache.clear()
            if runtime.cache is not None:
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(runtime.cache.close())
                except RuntimeError:
                    asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(clock=clock or utcnow)
        return runtime
