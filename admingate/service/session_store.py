from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, List, Optional, Protocol, Tuple

from admingate.logging import get_logger
from admingate.service.errors import PersistenceDegraded
from admingate.storage.errors import StorageUnavailable
from admingate.storage.models import AdminIdentity, Session, utcnow
from admingate.storage.session_cache import SessionCache

logger = get_logger(__name__)


class Criticality(str, Enum):
    """How a durable write failure is handled.

    CRITICAL writes propagate PersistenceDegraded; BEST_EFFORT writes are
    logged and the process continues on its cached state.
    """

    CRITICAL = "critical"
    BEST_EFFORT = "best_effort"


class DurableStore(Protocol):
    def upsert_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def touch_session(
        self, session_id: str, last_activity_at: datetime, network_origin: Optional[str] = None
    ) -> bool: ...

    def deactivate_session(self, session_id: str, at: datetime) -> bool: ...

    def deactivate_user_sessions(
        self, user_id: str, at: datetime, except_session_id: Optional[str] = None
    ) -> List[str]: ...

    def expire_sessions(self, now: datetime) -> int: ...

    def list_user_sessions(self, user_id: str, now: datetime) -> List[Session]: ...

    def lookup_user(self, user_id: str) -> Optional[AdminIdentity]: ...


class SessionStore:
    """Coordinates the in-process cache with the durable record store.

    The durable layer is the cross-process source of truth; the cache is a
    per-process accelerator that is re-hydrated on first touch via
    :meth:`recover`.
    """

    def __init__(
        self,
        durable: DurableStore,
        cache: SessionCache,
        *,
        session_ttl: timedelta = timedelta(hours=12),
        required_role: str = "admin",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.durable = durable
        self.cache = cache
        self.session_ttl = session_ttl
        self.required_role = required_role
        self._clock = clock

    def _degraded(self, operation: str, session_id: Optional[str], exc: StorageUnavailable) -> None:
        logger.warning(
            "persistence_degraded",
            operation=operation,
            session_id=session_id,
            error=exc.message,
        )

    def persist(self, session: Session, criticality: Criticality) -> Session:
        """Upsert the durable record, then the cache.

        Returns the merged view. If the id was revoked in this process while
        the write was in flight the result comes back with ``is_valid`` False.
        """
        try:
            merged = self.durable.upsert_session(session)
        except StorageUnavailable as exc:
            if criticality is Criticality.CRITICAL:
                logger.error("session_persist_failed", session_id=session.id, error=exc.message)
                raise PersistenceDegraded(
                    "session store unavailable", detail={"operation": "persist"}
                ) from exc
            self._degraded("persist", session.id, exc)
            merged = session.copy()
        stored = self.cache.put(merged)
        if stored is None:
            merged.is_valid = False
            return merged
        return stored

    def lookup(self, session_id: str) -> Optional[Session]:
        cached = self.cache.get(session_id)
        if cached is not None:
            return cached
        return self.recover(session_id)

    def recover(self, session_id: str) -> Optional[Session]:
        """Re-hydrate a session from the durable layer on cache miss.

        Only active, unexpired records whose owner is still an eligible admin
        come back; an ineligible owner gets the record deactivated.
        """
        if self.cache.is_tombstoned(session_id):
            return None
        try:
            record = self.durable.get_session(session_id)
        except StorageUnavailable as exc:
            raise PersistenceDegraded(
                "session store unavailable", detail={"operation": "recover"}
            ) from exc
        now = self._clock()
        if record is None or not record.is_valid or record.is_expired(now):
            return None

        identity = self.lookup_identity(record.user_id)
        if identity is None or not identity.is_eligible(self.required_role):
            logger.warning(
                "session_recovery_purged",
                session_id=session_id,
                user_id=record.user_id,
            )
            self.cache.tombstone(session_id, record.expires_at)
            self._deactivate(session_id, now)
            return None

        stored = self.cache.put(record)
        if stored is not None:
            logger.info("session_recovered", session_id=session_id, user_id=record.user_id)
        return stored

    def lookup_identity(self, user_id: str) -> Optional[AdminIdentity]:
        try:
            return self.durable.lookup_user(user_id)
        except StorageUnavailable as exc:
            raise PersistenceDegraded(
                "identity directory unavailable", detail={"operation": "lookup_user"}
            ) from exc

    def invalidate(self, session_id: str) -> Optional[Session]:
        """Flag the session invalid everywhere this process can reach.

        The cache entry is tombstoned and its heartbeat cancelled before the
        durable write, which is best-effort.
        """
        now = self._clock()
        removed = self.cache.remove(session_id, tombstone_until=now + self.session_ttl)
        self._deactivate(session_id, now)
        if removed is not None:
            removed.is_valid = False
        return removed

    def invalidate_user(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> List[str]:
        now = self._clock()
        revoked = set()
        for session in self.cache.sessions_for_user(user_id):
            if session.id == except_session_id:
                continue
            self.cache.remove(session.id, tombstone_until=now + self.session_ttl)
            revoked.add(session.id)
        try:
            durable_ids = self.durable.deactivate_user_sessions(
                user_id, now, except_session_id=except_session_id
            )
        except StorageUnavailable as exc:
            raise PersistenceDegraded(
                "session store unavailable", detail={"operation": "invalidate_user"}
            ) from exc
        for sid in durable_ids:
            if sid not in revoked:
                self.cache.tombstone(sid, now + self.session_ttl)
                revoked.add(sid)
        return sorted(revoked)

    def update_activity(
        self, session_id: str, timestamp: datetime, network_origin: Optional[str] = None
    ) -> bool:
        """Record activity in both layers.

        Returns False when the durable record is missing or inactive, which is
        how a revocation made by another process reaches this one. An
        unreachable durable layer counts as active.
        """
        self.cache.touch(session_id, timestamp, network_origin)
        try:
            active = self.durable.touch_session(session_id, timestamp, network_origin)
        except StorageUnavailable as exc:
            self._degraded("update_activity", session_id, exc)
            return True
        if not active:
            logger.warning("session_inactive_in_durable_store", session_id=session_id)
        return active

    def list_user_sessions(self, user_id: str) -> List[Session]:
        now = self._clock()
        try:
            sessions = self.durable.list_user_sessions(user_id, now)
        except StorageUnavailable as exc:
            self._degraded("list_user_sessions", None, exc)
            sessions = [
                s for s in self.cache.sessions_for_user(user_id) if s.expires_at >= now
            ]
            sessions.sort(key=lambda s: s.metadata.created_at)
        return [s for s in sessions if not self.cache.is_tombstoned(s.id)]

    def expire(self) -> Tuple[List[str], int]:
        """Drop expired sessions from the cache and bulk-deactivate durable rows."""
        now = self._clock()
        evicted = self.cache.evict_expired(now)
        try:
            deactivated = self.durable.expire_sessions(now)
        except StorageUnavailable as exc:
            self._degraded("expire_sessions", None, exc)
            deactivated = 0
        self.cache.prune_tombstones(now)
        return evicted, deactivated

    def _deactivate(self, session_id: str, at: datetime) -> None:
        try:
            self.durable.deactivate_session(session_id, at)
        except StorageUnavailable as exc:
            self._degraded("deactivate", session_id, exc)
