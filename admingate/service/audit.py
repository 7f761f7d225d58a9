from __future__ import annotations

import threading
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple, TypeVar

from redis.exceptions import RedisError

from admingate.logging import get_logger, log_session_event
from admingate.storage.errors import StorageUnavailable
from admingate.storage.models import AuditEvent, SuspiciousActivityMarker, utcnow

logger = get_logger(__name__)

T = TypeVar("T")

SYSTEM_ACTOR = "system"
AUDIT_METHOD = "admin_session"


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class AuditSink(Protocol):
    def append_audit_event(self, event: AuditEvent) -> AuditEvent: ...

    def list_audit_events(
        self,
        *,
        actor: Optional[str] = None,
        action: Optional[str] = None,
        success: Optional[bool] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[AuditEvent]: ...


class MarkerStore(Protocol):
    async def claim_suspicious_marker(
        self, user_id: str, kind: str, now: datetime, ttl_seconds: int
    ) -> Optional[SuspiciousActivityMarker]: ...

    async def count_suspicious_markers(self) -> int: ...


class InProcessMarkerStore:
    """Suspicious-activity markers for a single process (no Redis)."""

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._markers: Dict[Tuple[str, str], SuspiciousActivityMarker] = {}
        self._lock = threading.Lock()

    async def claim_suspicious_marker(
        self, user_id: str, kind: str, now: datetime, ttl_seconds: int
    ) -> Optional[SuspiciousActivityMarker]:
        key = (user_id, kind)
        with self._lock:
            existing = self._markers.get(key)
            if existing is not None and existing.is_active(now):
                return existing
            self._markers[key] = SuspiciousActivityMarker(
                user_id=user_id,
                kind=kind,
                timestamp=now,
                expires_at=now + timedelta(seconds=ttl_seconds),
            )
            return None

    async def count_suspicious_markers(self) -> int:
        now = self._clock()
        with self._lock:
            return sum(1 for marker in self._markers.values() if marker.is_active(now))

    def prune(self, now: datetime) -> int:
        with self._lock:
            stale = [key for key, marker in self._markers.items() if not marker.is_active(now)]
            for key in stale:
                del self._markers[key]
        return len(stale)


class AuditTrail:
    """Append-only audit of session lifecycle and suspicious activity.

    Every event is logged through :func:`log_session_event` and appended to the
    durable audit sink. A sink outage is logged and swallowed: auditing never
    decides whether a request is authorized.
    """

    def __init__(
        self,
        sink: AuditSink,
        markers: MarkerStore,
        *,
        marker_ttl_seconds: int = 3600,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.sink = sink
        self.markers = markers
        self.marker_ttl_seconds = marker_ttl_seconds
        self._clock = clock

    async def record(
        self,
        action: str,
        *,
        user_id: Optional[str] = None,
        success: bool = True,
        severity: Severity = Severity.LOW,
        session_id: Optional[str] = None,
        network_origin: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        now = self._clock()
        severity_value = Severity(severity).value
        context = dict(metadata or {})
        log_session_event(
            action,
            user_id=user_id,
            session_id=session_id,
            success=success,
            severity=severity_value,
            network_origin=network_origin,
            context=context,
        )
        event = AuditEvent(
            actor=user_id or SYSTEM_ACTOR,
            action=action,
            method=AUDIT_METHOD,
            network_origin=network_origin,
            user_agent=user_agent,
            success=success,
            severity=severity_value,
            metadata={
                **context,
                "user_id": user_id,
                "session_id": session_id,
                "severity": severity_value,
                "investigated": False,
                "timestamp": now.isoformat(),
            },
            timestamp=now,
        )
        try:
            self.sink.append_audit_event(event)
        except StorageUnavailable as exc:
            logger.warning("audit_sink_unavailable", action=action, error=exc.message)
        return event

    async def log_suspicious(
        self,
        kind: str,
        user_id: str,
        *,
        session_id: Optional[str] = None,
        network_origin: Optional[str] = None,
        user_agent: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditEvent]:
        """Record ``SUSPICIOUS_<kind>`` unless the same kind fired for this user recently."""
        kind = kind.upper()
        now = self._clock()
        try:
            existing = await self.markers.claim_suspicious_marker(
                user_id, kind, now, self.marker_ttl_seconds
            )
        except RedisError as exc:
            # Marker store only de-duplicates; write the event anyway
            logger.warning("suspicious_marker_unavailable", kind=kind, error=str(exc))
            existing = None
        if existing is not None:
            logger.info(
                "suspicious_activity_suppressed",
                kind=kind,
                user_id=user_id,
                session_id=session_id,
                first_seen=existing.timestamp.isoformat(),
            )
            return None
        return await self.record(
            f"SUSPICIOUS_{kind}",
            user_id=user_id,
            success=False,
            severity=Severity.HIGH,
            session_id=session_id,
            network_origin=network_origin,
            user_agent=user_agent,
            metadata=context,
        )

    async def wrap(
        self,
        action: str,
        operation: Callable[[], Awaitable[T]],
        *,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        network_origin: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> T:
        """Run ``operation`` and audit its outcome as ``action`` or ``<action>_FAILED``.

        Failures are recorded with the exception type and re-raised unchanged.
        """
        try:
            result = await operation()
        except Exception as exc:
            await self.record(
                f"{action}_FAILED",
                user_id=user_id,
                success=False,
                severity=Severity.MEDIUM,
                session_id=session_id,
                network_origin=network_origin,
                user_agent=user_agent,
                metadata={**(metadata or {}), "error": type(exc).__name__},
            )
            raise
        await self.record(
            action,
            user_id=user_id,
            session_id=session_id,
            network_origin=network_origin,
            user_agent=user_agent,
            metadata=metadata,
        )
        return result

    def list_events(
        self,
        *,
        actor: Optional[str] = None,
        action: Optional[str] = None,
        success: Optional[bool] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[AuditEvent]:
        return self.sink.list_audit_events(
            actor=actor, action=action, success=success, limit=limit, offset=offset
        )

    async def suspicious_marker_count(self) -> int:
        try:
            return await self.markers.count_suspicious_markers()
        except RedisError as exc:
            logger.warning("suspicious_marker_count_failed", error=str(exc))
            return 0
