from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from admingate.logging import get_logger
from admingate.storage.errors import StorageUnavailable
from admingate.storage.models import AdminIdentity, AuditEvent, Session, SessionMetadata


class MemoryStore:
    """In-memory durable layer for development and tests.

    Holds admin session records, the audit log and the identity directory.
    State is mirrored to ``<fs_root>/state/admin_store.json`` after every
    write so a restarted process can recover sessions the same way it would
    from Postgres.
    """

    def __init__(self, fs_root: str = "/tmp/admingate") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, AdminIdentity] = {}
        self.sessions: Dict[str, Session] = {}
        self.audit_events: List[AuditEvent] = []
        # RLock so helpers can nest acquisitions within the same thread
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "admin_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    # identity directory
    def lookup_user(self, user_id: str) -> Optional[AdminIdentity]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[AdminIdentity]:
        with self._data_lock:
            for user in self.users.values():
                if user.email.lower() == email.lower():
                    return replace(user)
            return None

    def upsert_user(self, identity: AdminIdentity) -> AdminIdentity:
        with self._data_lock:
            users = {**self.users, identity.id: replace(identity)}
            self._persist_state(users=users)
            self.users = users
            return replace(identity)

    # admin sessions
    def upsert_session(self, session: Session) -> Session:
        """Idempotent write keyed on ``session.id``.

        ``expires_at`` keeps the larger value and an inactive record is never
        reactivated, so concurrent writers converge. Nothing changes in memory
        unless the state file was written.
        """
        with self._data_lock:
            incoming = session.copy()
            current = self.sessions.get(session.id)
            if current is not None:
                if current.expires_at > incoming.expires_at:
                    incoming.expires_at = current.expires_at
                    incoming.access_token = current.access_token
                    incoming.refresh_token = current.refresh_token
                incoming.is_valid = current.is_valid and incoming.is_valid
                incoming.metadata.created_at = current.metadata.created_at
            self._commit_sessions({session.id: incoming})
            return incoming.copy()

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            return session.copy() if session else None

    def touch_session(
        self,
        session_id: str,
        last_activity_at: datetime,
        network_origin: Optional[str] = None,
    ) -> bool:
        """Record activity; False when the record is missing or inactive."""
        with self._data_lock:
            current = self.sessions.get(session_id)
            if current is None or not current.is_valid:
                return False
            updated = current.copy()
            if last_activity_at > updated.metadata.last_activity_at:
                updated.metadata.last_activity_at = last_activity_at
            if network_origin:
                updated.metadata.network_origin = network_origin
            self._commit_sessions({session_id: updated})
            return True

    def deactivate_session(self, session_id: str, at: datetime) -> bool:
        with self._data_lock:
            current = self.sessions.get(session_id)
            if current is None:
                return False
            self._commit_sessions({session_id: self._deactivated(current, at)})
            return current.is_valid

    def deactivate_user_sessions(
        self, user_id: str, at: datetime, except_session_id: Optional[str] = None
    ) -> List[str]:
        with self._data_lock:
            changes = {
                sid: self._deactivated(session, at)
                for sid, session in self.sessions.items()
                if session.user_id == user_id
                and sid != except_session_id
                and session.is_valid
            }
            if changes:
                self._commit_sessions(changes)
            return list(changes)

    def expire_sessions(self, now: datetime) -> int:
        with self._data_lock:
            changes = {}
            for sid, session in self.sessions.items():
                if session.is_valid and session.expires_at < now:
                    expired = session.copy()
                    expired.is_valid = False
                    changes[sid] = expired
            if changes:
                self._commit_sessions(changes)
            return len(changes)

    def list_user_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._data_lock:
            active = [
                s.copy()
                for s in self.sessions.values()
                if s.user_id == user_id and s.is_valid and s.expires_at >= now
            ]
        active.sort(key=lambda s: s.metadata.created_at)
        return active

    @staticmethod
    def _deactivated(session: Session, at: datetime) -> Session:
        updated = session.copy()
        updated.is_valid = False
        updated.metadata.last_activity_at = max(updated.metadata.last_activity_at, at)
        return updated

    def _commit_sessions(self, changes: Dict[str, Session]) -> None:
        sessions = {**self.sessions, **changes}
        self._persist_state(sessions=sessions)
        self.sessions = sessions

    # audit log
    def append_audit_event(self, event: AuditEvent) -> AuditEvent:
        with self._data_lock:
            events = self.audit_events + [event]
            self._persist_state(audit_events=events)
            self.audit_events = events
            return event

    def list_audit_events(
        self,
        *,
        actor: Optional[str] = None,
        action: Optional[str] = None,
        success: Optional[bool] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[AuditEvent]:
        with self._data_lock:
            events = [
                e
                for e in self.audit_events
                if (actor is None or e.actor == actor)
                and (action is None or e.action == action)
                and (success is None or e.success == success)
            ]
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events[offset : offset + limit]

    # persistence
    def _persist_state(
        self,
        *,
        users: Optional[Dict[str, AdminIdentity]] = None,
        sessions: Optional[Dict[str, Session]] = None,
        audit_events: Optional[List[AuditEvent]] = None,
    ) -> None:
        """Write the full state, with pending changes applied, to the state file."""
        users = self.users if users is None else users
        sessions = self.sessions if sessions is None else sessions
        audit_events = self.audit_events if audit_events is None else audit_events
        state = {
            "users": [self._serialize_user(u) for u in users.values()],
            "sessions": [self._serialize_session(s) for s in sessions.values()],
            "audit_events": [self._serialize_audit_event(e) for e in audit_events],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2, default=str))
        except OSError as exc:
            raise StorageUnavailable(
                "failed to persist admin store state", {"error": str(exc)}
            ) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, ValueError) as exc:
            self.logger.error("admin_store_load_failed", path=str(path), error=str(exc))
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.audit_events = [
            self._deserialize_audit_event(e) for e in data.get("audit_events", [])
        ]
        return True

    def _serialize_user(self, user: AdminIdentity) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "role": user.role,
            "is_active": user.is_active,
            "is_banned": user.is_banned,
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> AdminIdentity:
        return AdminIdentity(
            id=data["id"],
            email=data["email"],
            role=data.get("role", "admin"),
            is_active=data.get("is_active", True),
            is_banned=data.get("is_banned", False),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_session(self, session: Session) -> dict:
        meta = session.metadata
        return {
            "id": session.id,
            "user_id": session.user_id,
            "access_token": session.access_token,
            "refresh_token": session.refresh_token,
            "expires_at": self._serialize_datetime(session.expires_at),
            "is_valid": session.is_valid,
            "metadata": {
                "user_agent": meta.user_agent,
                "network_origin": meta.network_origin,
                "fingerprint_hash": meta.fingerprint_hash,
                "created_at": self._serialize_datetime(meta.created_at),
                "last_activity_at": self._serialize_datetime(meta.last_activity_at),
                "device_class": meta.device_class,
            },
        }

    def _deserialize_session(self, data: dict) -> Session:
        meta = data.get("metadata") or {}
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            access_token=data.get("access_token", ""),
            refresh_token=data.get("refresh_token", ""),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            is_valid=data.get("is_valid", True),
            metadata=SessionMetadata(
                user_agent=meta.get("user_agent"),
                network_origin=meta.get("network_origin", "unknown"),
                fingerprint_hash=meta.get("fingerprint_hash", ""),
                created_at=self._deserialize_datetime(meta["created_at"]),
                last_activity_at=self._deserialize_datetime(meta["last_activity_at"]),
                device_class=meta.get("device_class", "unknown"),
            ),
        )

    def _serialize_audit_event(self, event: AuditEvent) -> dict:
        return {
            "id": event.id,
            "actor": event.actor,
            "action": event.action,
            "method": event.method,
            "network_origin": event.network_origin,
            "user_agent": event.user_agent,
            "success": event.success,
            "severity": event.severity,
            "metadata": event.metadata,
            "timestamp": self._serialize_datetime(event.timestamp),
        }

    def _deserialize_audit_event(self, data: dict) -> AuditEvent:
        return AuditEvent(
            id=data["id"],
            actor=data["actor"],
            action=data["action"],
            method=data.get("method", "admin_session"),
            network_origin=data.get("network_origin"),
            user_agent=data.get("user_agent"),
            success=data.get("success", False),
            severity=data.get("severity", "LOW"),
            metadata=data.get("metadata") or {},
            timestamp=self._deserialize_datetime(data["timestamp"]),
        )
