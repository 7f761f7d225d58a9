"""Session liveness: per-session heartbeat tasks and the global expiry sweep."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from admingate.logging import get_logger
from admingate.service.audit import AuditTrail
from admingate.service.session_store import SessionStore
from admingate.storage.models import utcnow

logger = get_logger(__name__)

DEFAULT_HEARTBEAT_INTERVAL_SECONDS = 300
DEFAULT_SWEEP_INTERVAL_SECONDS = 300


class HeartbeatHandle:
    """Cancellable handle for one session's heartbeat task."""

    def __init__(self, session_id: str, task: "asyncio.Task[None]") -> None:
        self.session_id = session_id
        self.task = task

    def cancel(self) -> None:
        if not self.task.done():
            self.task.cancel()

    def done(self) -> bool:
        return self.task.done()


class HeartbeatMonitor:
    """Periodically confirms each cached session is still alive.

    The handle lives in the session cache next to its session, so removing
    the session (invalidate, expiry, eviction) cancels the timer with it.
    """

    def __init__(
        self,
        store: SessionStore,
        audit: AuditTrail,
        *,
        interval_seconds: float = DEFAULT_HEARTBEAT_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.audit = audit
        self.interval_seconds = interval_seconds
        self._clock = clock
        self.total_ticks = 0

    def start(self, session_id: str) -> Optional[HeartbeatHandle]:
        """Attach a heartbeat to a cached session; no-op outside an event loop."""
        existing = self.store.cache.heartbeat(session_id)
        if isinstance(existing, HeartbeatHandle) and not existing.done():
            return existing
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("heartbeat_skipped_no_loop", session_id=session_id)
            return None
        task = loop.create_task(self._run(session_id), name=f"heartbeat:{session_id[:8]}")
        handle = HeartbeatHandle(session_id, task)
        if not self.store.cache.attach_heartbeat(session_id, handle):
            return None
        return handle

    async def _run(self, session_id: str) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                alive = await self.tick(session_id)
            except Exception as exc:
                logger.error(
                    "heartbeat_tick_failed",
                    session_id=session_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                continue
            if not alive:
                return

    async def tick(self, session_id: str) -> bool:
        """Run one heartbeat; returns False once the session is gone."""
        self.total_ticks += 1
        now = self._clock()
        session = self.store.cache.get(session_id)
        reason = "expired"
        if session is not None and session.is_valid and not session.is_expired(now):
            if self.store.update_activity(session_id, now):
                logger.debug("session_heartbeat", session_id=session_id, user_id=session.user_id)
                return True
            reason = "revoked"
        # Detach first so invalidation does not cancel the task running this tick
        self.store.cache.detach_heartbeat(session_id)
        self.store.invalidate(session_id)
        await self.audit.record(
            "SESSION_HEARTBEAT_EXPIRED",
            user_id=session.user_id if session else None,
            success=False,
            session_id=session_id,
            metadata={"cached": session is not None, "reason": reason},
        )
        return False

    def cancel(self, session_id: str) -> None:
        handle = self.store.cache.detach_heartbeat(session_id)
        if handle is not None:
            handle.cancel()


class SessionSweeper:
    """Background loop that expires stale sessions across all layers."""

    def __init__(
        self,
        sweep: Callable[[], Awaitable[Dict[str, Any]]],
        *,
        interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
    ) -> None:
        self.sweep = sweep
        self.interval_seconds = interval_seconds
        self._running = False
        self._task: Optional["asyncio.Task[None]"] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("session_sweeper_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("session_sweeper_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("session_sweeper_stopped")

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                await self.sweep()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "session_sweeper_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                if consecutive_errors > 3:
                    backoff = min(
                        3600, self.interval_seconds * (2 ** (consecutive_errors - 3))
                    )
                    logger.warning(
                        "session_sweeper_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)
                    continue

            await asyncio.sleep(self.interval_seconds)
