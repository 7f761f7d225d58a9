from __future__ import annotations

import hmac
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Optional, Type, Union

from admingate.logging import get_logger, log_session_event
from admingate.service.audit import AuditTrail, Severity
from admingate.service.errors import (
    SessionIntegrityViolation,
    SessionNotFound,
    SessionRejected,
    TokenExpired,
    TokenInvalid,
    UserInvalid,
)
from admingate.service.fingerprint import FingerprintEngine, RequestMetadata
from admingate.service.session_store import Criticality, SessionStore
from admingate.service.tokens import TokenClass, TokenCodec
from admingate.storage.models import AdminIdentity, Session, utcnow

logger = get_logger(__name__)


class Stage(str, Enum):
    TOKEN_DECODE = "token_decode"
    SESSION_LOOKUP = "session_lookup"
    INTEGRITY_CHECK = "integrity_check"
    USER_STATUS_CHECK = "user_status_check"
    REFRESH_IF_NEAR_EXPIRY = "refresh_if_near_expiry"
    ACTIVITY_UPDATE = "activity_update"


class InvalidReason(str, Enum):
    TOKEN_INVALID = "token-invalid"
    TOKEN_EXPIRED = "token-expired"
    SESSION_NOT_FOUND = "session-not-found"
    SESSION_MISMATCH = "session-mismatch"
    SESSION_REVOKED = "session-revoked"
    SESSION_EXPIRED = "session-expired"
    FINGERPRINT_MISMATCH = "fingerprint-mismatch"
    USER_INVALID = "user-invalid"


_ERROR_FOR_REASON: Dict[InvalidReason, Type[SessionRejected]] = {
    InvalidReason.TOKEN_INVALID: TokenInvalid,
    InvalidReason.TOKEN_EXPIRED: TokenExpired,
    InvalidReason.SESSION_NOT_FOUND: SessionNotFound,
    InvalidReason.SESSION_MISMATCH: SessionNotFound,
    InvalidReason.SESSION_REVOKED: SessionIntegrityViolation,
    InvalidReason.SESSION_EXPIRED: SessionIntegrityViolation,
    InvalidReason.FINGERPRINT_MISMATCH: SessionIntegrityViolation,
    InvalidReason.USER_INVALID: UserInvalid,
}


@dataclass(frozen=True)
class Valid:
    identity: AdminIdentity
    session: Session
    refreshed: bool = False


@dataclass(frozen=True)
class Invalid:
    reason: InvalidReason
    stage: Stage

    def to_error(self) -> SessionRejected:
        error_cls = _ERROR_FOR_REASON[self.reason]
        return error_cls(reason=self.reason.value, stage=self.stage.value)


ValidationResult = Union[Valid, Invalid]


class ValidationPipeline:
    """Runs one access token through the validation stages.

    decode -> lookup -> integrity -> user status -> refresh -> activity.
    Each stage may short-circuit with :class:`Invalid`; integrity and user
    failures also invalidate the session. Reasons are logged, never exposed.
    """

    def __init__(
        self,
        codec: TokenCodec,
        store: SessionStore,
        fingerprints: FingerprintEngine,
        audit: AuditTrail,
        *,
        refresh_threshold: timedelta = timedelta(minutes=30),
        session_ttl: timedelta = timedelta(hours=12),
        required_role: str = "admin",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.codec = codec
        self.store = store
        self.fingerprints = fingerprints
        self.audit = audit
        self.refresh_threshold = refresh_threshold
        self.session_ttl = session_ttl
        self.required_role = required_role
        self._clock = clock

    def _reject(
        self,
        reason: InvalidReason,
        stage: Stage,
        *,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        network_origin: Optional[str] = None,
    ) -> Invalid:
        log_session_event(
            "SESSION_VALIDATION_FAILED",
            user_id=user_id,
            session_id=session_id,
            success=False,
            severity=Severity.MEDIUM.value,
            network_origin=network_origin,
            context={"reason": reason.value, "stage": stage.value},
        )
        return Invalid(reason=reason, stage=stage)

    async def validate(self, token: str, metadata: RequestMetadata) -> ValidationResult:
        now = self._clock()
        origin = self.fingerprints.origin(metadata)

        # token decode
        try:
            claims = self.codec.verify(token, TokenClass.ACCESS)
        except TokenExpired as exc:
            return self._reject(
                InvalidReason.TOKEN_EXPIRED,
                Stage.TOKEN_DECODE,
                session_id=exc.detail.get("session_id"),
                network_origin=origin,
            )
        except TokenInvalid:
            return self._reject(
                InvalidReason.TOKEN_INVALID, Stage.TOKEN_DECODE, network_origin=origin
            )

        # session lookup
        session = self.store.lookup(claims.session_id)
        if session is None:
            return self._reject(
                InvalidReason.SESSION_NOT_FOUND,
                Stage.SESSION_LOOKUP,
                user_id=claims.user_id,
                session_id=claims.session_id,
                network_origin=origin,
            )
        if session.user_id != claims.user_id:
            return self._reject(
                InvalidReason.SESSION_MISMATCH,
                Stage.SESSION_LOOKUP,
                user_id=claims.user_id,
                session_id=session.id,
                network_origin=origin,
            )

        # integrity
        integrity = await self._check_integrity(session, metadata, origin, now)
        if integrity is not None:
            return integrity

        # user status
        identity = self.store.lookup_identity(session.user_id)
        if identity is None or not identity.is_eligible(self.required_role):
            self.store.invalidate(session.id)
            return self._reject(
                InvalidReason.USER_INVALID,
                Stage.USER_STATUS_CHECK,
                user_id=session.user_id,
                session_id=session.id,
                network_origin=origin,
            )

        # sliding refresh
        refreshed = False
        if session.remaining(now) < self.refresh_threshold:
            session = self._refresh(session, identity, now)
            if not session.is_valid:
                return self._reject(
                    InvalidReason.SESSION_REVOKED,
                    Stage.REFRESH_IF_NEAR_EXPIRY,
                    user_id=identity.id,
                    session_id=session.id,
                    network_origin=origin,
                )
            refreshed = True
            await self.audit.record(
                "SESSION_REFRESHED",
                user_id=identity.id,
                session_id=session.id,
                network_origin=origin,
                user_agent=metadata.user_agent,
                metadata={"expires_at": session.expires_at.isoformat()},
            )

        # activity; an inactive durable record means another process revoked it
        if not self.store.update_activity(session.id, now, origin):
            self.store.invalidate(session.id)
            return self._reject(
                InvalidReason.SESSION_REVOKED,
                Stage.ACTIVITY_UPDATE,
                user_id=identity.id,
                session_id=session.id,
                network_origin=origin,
            )
        session.metadata.last_activity_at = now
        session.metadata.network_origin = origin
        return Valid(identity=identity, session=session, refreshed=refreshed)

    async def _check_integrity(
        self,
        session: Session,
        metadata: RequestMetadata,
        origin: str,
        now: datetime,
    ) -> Optional[Invalid]:
        if not session.is_valid:
            return self._reject(
                InvalidReason.SESSION_REVOKED,
                Stage.INTEGRITY_CHECK,
                user_id=session.user_id,
                session_id=session.id,
                network_origin=origin,
            )
        if session.is_expired(now):
            self.store.invalidate(session.id)
            return self._reject(
                InvalidReason.SESSION_EXPIRED,
                Stage.INTEGRITY_CHECK,
                user_id=session.user_id,
                session_id=session.id,
                network_origin=origin,
            )

        fingerprint = self.fingerprints.compute(metadata)
        expected = session.metadata.fingerprint_hash
        if not hmac.compare_digest(fingerprint, expected):
            self.store.invalidate(session.id)
            await self.audit.log_suspicious(
                "FINGERPRINT_MISMATCH",
                session.user_id,
                session_id=session.id,
                network_origin=origin,
                user_agent=metadata.user_agent,
                context={"expected": expected[:8], "received": fingerprint[:8]},
            )
            return self._reject(
                InvalidReason.FINGERPRINT_MISMATCH,
                Stage.INTEGRITY_CHECK,
                user_id=session.user_id,
                session_id=session.id,
                network_origin=origin,
            )

        if origin != session.metadata.network_origin:
            # Drift alone is not a failure unless the origin is bound into the fingerprint
            await self.audit.record(
                "NETWORK_ORIGIN_CHANGED",
                user_id=session.user_id,
                severity=Severity.MEDIUM,
                session_id=session.id,
                network_origin=origin,
                user_agent=metadata.user_agent,
                metadata={"previous": session.metadata.network_origin, "current": origin},
            )
        return None

    def _refresh(self, session: Session, identity: AdminIdentity, now: datetime) -> Session:
        pair = self.codec.issue_pair(identity, session.id, now)
        updated = session.copy()
        updated.access_token = pair.access_token
        updated.refresh_token = pair.refresh_token
        updated.expires_at = max(session.expires_at, now + self.session_ttl)
        return self.store.persist(updated, Criticality.BEST_EFFORT)
