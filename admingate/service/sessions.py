from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from admingate.config import Settings
from admingate.logging import get_logger
from admingate.service.audit import AuditTrail, InProcessMarkerStore, Severity
from admingate.service.errors import CreationFailed, PersistenceDegraded, UserInvalid
from admingate.service.fingerprint import FingerprintEngine, RequestMetadata, device_class
from admingate.service.heartbeat import HeartbeatMonitor
from admingate.service.pipeline import ValidationPipeline, ValidationResult, Valid
from admingate.service.session_store import Criticality, SessionStore
from admingate.service.tokens import TokenCodec
from admingate.storage.models import AdminIdentity, AuditEvent, Session, SessionMetadata, utcnow

logger = get_logger(__name__)


class SessionService:
    """Admin session lifecycle: create, validate, invalidate, and housekeeping."""

    def __init__(
        self,
        settings: Settings,
        store: SessionStore,
        codec: TokenCodec,
        fingerprints: FingerprintEngine,
        audit: AuditTrail,
        heartbeat: HeartbeatMonitor,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.store = store
        self.codec = codec
        self.fingerprints = fingerprints
        self.audit = audit
        self.heartbeat = heartbeat
        self._clock = clock
        self.session_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.pipeline = ValidationPipeline(
            codec,
            store,
            fingerprints,
            audit,
            refresh_threshold=timedelta(minutes=settings.refresh_threshold_minutes),
            session_ttl=self.session_ttl,
            required_role=settings.required_role,
            clock=clock,
        )

    async def create_session(
        self, identity: AdminIdentity, metadata: RequestMetadata
    ) -> Session:
        """Mint a session for an identity whose credentials were already verified.

        The durable write is critical: if it fails the login fails with
        CreationFailed and nothing is cached.
        """
        if not identity.is_eligible(self.settings.required_role):
            logger.warning("session_create_rejected", user_id=identity.id, role=identity.role)
            raise UserInvalid(stage="create")

        now = self._clock()
        origin = self.fingerprints.origin(metadata)
        session_id = Session.new_id()
        pair = self.codec.issue_pair(identity, session_id, now)
        session = Session(
            id=session_id,
            user_id=identity.id,
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_at=now + self.session_ttl,
            metadata=SessionMetadata(
                user_agent=metadata.user_agent or None,
                network_origin=origin,
                fingerprint_hash=self.fingerprints.compute(metadata),
                created_at=now,
                last_activity_at=now,
                device_class=device_class(metadata.user_agent),
            ),
        )

        async def _persist() -> Session:
            try:
                return self.store.persist(session, Criticality.CRITICAL)
            except PersistenceDegraded as exc:
                raise CreationFailed(detail={"session_id": session_id}) from exc

        stored = await self.audit.wrap(
            "SESSION_CREATED",
            _persist,
            user_id=identity.id,
            session_id=session_id,
            network_origin=origin,
            user_agent=metadata.user_agent or None,
            metadata={"device_class": session.metadata.device_class},
        )
        await self._enforce_session_limit(identity.id, keep=session_id)
        self.heartbeat.start(session_id)
        return stored

    async def _enforce_session_limit(self, user_id: str, *, keep: str) -> None:
        limit = self.settings.max_concurrent_sessions
        active = [s for s in self.store.list_user_sessions(user_id) if s.id != keep]
        overflow = len(active) + 1 - limit
        if overflow <= 0:
            return
        for stale in active[:overflow]:
            self.store.invalidate(stale.id)
            await self.audit.record(
                "SESSION_LIMIT_EVICTED",
                user_id=user_id,
                session_id=stale.id,
                metadata={"limit": limit},
            )

    async def validate(self, token: str, metadata: RequestMetadata) -> ValidationResult:
        try:
            result = await self.pipeline.validate(token, metadata)
        except PersistenceDegraded:
            raise
        except Exception as exc:
            await self.audit.record(
                "SESSION_VALIDATION_ERROR",
                success=False,
                severity=Severity.HIGH,
                user_agent=metadata.user_agent or None,
                metadata={"error": type(exc).__name__},
            )
            raise
        if isinstance(result, Valid):
            self.heartbeat.start(result.session.id)
        return result

    async def invalidate(
        self, session_id: str, *, reason: str = "logout", user_id: Optional[str] = None
    ) -> bool:
        removed = self.store.invalidate(session_id)
        await self.audit.record(
            "SESSION_INVALIDATED",
            user_id=user_id or (removed.user_id if removed else None),
            session_id=session_id,
            metadata={"reason": reason},
        )
        return removed is not None

    async def invalidate_all_user_sessions(
        self,
        user_id: str,
        *,
        except_session_id: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> List[str]:
        async def _revoke() -> List[str]:
            return self.store.invalidate_user(user_id, except_session_id=except_session_id)

        return await self.audit.wrap(
            "ALL_SESSIONS_INVALIDATED",
            _revoke,
            user_id=actor_id or user_id,
            session_id=except_session_id,
            metadata={"target_user_id": user_id},
        )

    def list_user_sessions(self, user_id: str) -> List[Session]:
        return self.store.list_user_sessions(user_id)

    async def cleanup_expired_sessions(self) -> Dict[str, int]:
        evicted, deactivated = self.store.expire()
        pruned = 0
        if isinstance(self.audit.markers, InProcessMarkerStore):
            pruned = self.audit.markers.prune(self._clock())
        if evicted or deactivated:
            logger.info(
                "expired_sessions_cleaned",
                cache_evicted=len(evicted),
                durable_deactivated=deactivated,
                markers_pruned=pruned,
            )
        return {
            "cache_evicted": len(evicted),
            "durable_deactivated": deactivated,
            "markers_pruned": pruned,
        }

    async def metrics(self) -> Dict[str, Any]:
        return {
            "active_sessions": len(self.store.cache),
            "live_heartbeats": self.store.cache.heartbeat_count(),
            "total_heartbeats": self.heartbeat.total_ticks,
            "suspicious_activities": await self.audit.suspicious_marker_count(),
        }

    def list_audit_events(
        self,
        *,
        actor: Optional[str] = None,
        action: Optional[str] = None,
        success: Optional[bool] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[AuditEvent]:
        return self.audit.list_events(
            actor=actor, action=action, success=success, limit=limit, offset=offset
        )
