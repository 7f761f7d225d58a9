from __future__ import annotations

import threading
from datetime import datetime
from typing import Dict, List, Optional, Protocol

from admingate.logging import get_logger
from admingate.storage.models import Session

DEFAULT_MAX_SIZE = 10000

logger = get_logger(__name__)


class Cancellable(Protocol):
    def cancel(self) -> None: ...


class SessionCache:
    """Per-process session registry (layer 1).

    Each entry may carry a heartbeat handle; removing the entry cancels the
    handle. Revoked ids are tombstoned until their natural expiry so a stale
    durable read cannot bring them back in this process.

    Writes merge with the cached copy: ``expires_at`` keeps the maximum and
    ``is_valid`` never flips back to True.
    """

    def __init__(self, max_size: int = DEFAULT_MAX_SIZE) -> None:
        self.max_size = max_size
        self._sessions: Dict[str, Session] = {}
        self._heartbeats: Dict[str, Cancellable] = {}
        self._tombstones: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            session = self._sessions.get(session_id)
            return session.copy() if session else None

    def put(self, session: Session) -> Optional[Session]:
        """Insert or merge ``session``; returns the stored copy, or None if tombstoned."""
        with self._lock:
            if session.id in self._tombstones:
                return None
            if not session.is_valid:
                self._tombstones[session.id] = session.expires_at
                self._drop_locked(session.id)
                return None
            if session.id not in self._sessions and len(self._sessions) >= self.max_size:
                self._evict_locked()
            current = self._sessions.get(session.id)
            merged = session.copy()
            if current is not None:
                if current.expires_at > session.expires_at:
                    # Stale writer: keep the tokens that belong to the later expiry
                    merged.expires_at = current.expires_at
                    merged.access_token = current.access_token
                    merged.refresh_token = current.refresh_token
                merged.is_valid = current.is_valid and session.is_valid
                if current.metadata.last_activity_at > merged.metadata.last_activity_at:
                    merged.metadata.last_activity_at = current.metadata.last_activity_at
            self._sessions[session.id] = merged
            return merged.copy()

    def touch(
        self, session_id: str, at: datetime, network_origin: Optional[str] = None
    ) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            if at > session.metadata.last_activity_at:
                session.metadata.last_activity_at = at
            if network_origin:
                session.metadata.network_origin = network_origin
            return True

    def remove(
        self, session_id: str, *, tombstone_until: Optional[datetime] = None
    ) -> Optional[Session]:
        """Drop an entry and cancel its heartbeat, optionally tombstoning the id."""
        with self._lock:
            session = self._sessions.get(session_id)
            if tombstone_until is not None:
                until = tombstone_until
                if session is not None and session.expires_at > until:
                    until = session.expires_at
                self._tombstones[session_id] = until
            self._drop_locked(session_id)
            return session

    def tombstone(self, session_id: str, until: datetime) -> None:
        with self._lock:
            self._tombstones[session_id] = until

    def is_tombstoned(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._tombstones

    def attach_heartbeat(self, session_id: str, handle: Cancellable) -> bool:
        """Store ``handle`` next to its session; cancels it if the session is gone."""
        with self._lock:
            if session_id not in self._sessions:
                handle.cancel()
                return False
            previous = self._heartbeats.pop(session_id, None)
            self._heartbeats[session_id] = handle
        if previous is not None and previous is not handle:
            previous.cancel()
        return True

    def heartbeat(self, session_id: str) -> Optional[Cancellable]:
        with self._lock:
            return self._heartbeats.get(session_id)

    def detach_heartbeat(self, session_id: str) -> Optional[Cancellable]:
        """Remove the handle without cancelling it (used by the handle's own task)."""
        with self._lock:
            return self._heartbeats.pop(session_id, None)

    def heartbeat_count(self) -> int:
        with self._lock:
            return len(self._heartbeats)

    def values(self) -> List[Session]:
        with self._lock:
            return [s.copy() for s in self._sessions.values()]

    def sessions_for_user(self, user_id: str) -> List[Session]:
        with self._lock:
            return [s.copy() for s in self._sessions.values() if s.user_id == user_id]

    def evict_expired(self, now: datetime) -> List[str]:
        with self._lock:
            expired = [sid for sid, s in self._sessions.items() if s.expires_at <= now]
            for sid in expired:
                self._drop_locked(sid)
        return expired

    def prune_tombstones(self, now: datetime) -> int:
        with self._lock:
            stale = [sid for sid, until in self._tombstones.items() if until <= now]
            for sid in stale:
                del self._tombstones[sid]
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            handles = list(self._heartbeats.values())
            self._sessions.clear()
            self._heartbeats.clear()
            self._tombstones.clear()
        for handle in handles:
            handle.cancel()

    def _drop_locked(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        handle = self._heartbeats.pop(session_id, None)
        if handle is not None:
            handle.cancel()

    def _evict_locked(self) -> None:
        # Remove ~10% of entries closest to expiration
        ordered = sorted(self._sessions.values(), key=lambda s: s.expires_at)
        evict_count = max(1, self.max_size // 10)
        for old in ordered[:evict_count]:
            self._drop_locked(old.id)
        logger.info("session_cache_evicted", count=min(evict_count, len(ordered)))
