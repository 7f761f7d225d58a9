from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, List, Optional

import psycopg
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from admingate.logging import get_logger
from admingate.storage.errors import StorageUnavailable
from admingate.storage.models import AdminIdentity, AuditEvent, Session, SessionMetadata

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        role TEXT NOT NULL DEFAULT 'user',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_banned BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS admin_session (
        session_id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        access_token TEXT NOT NULL,
        refresh_token TEXT NOT NULL,
        user_agent TEXT,
        network_origin TEXT NOT NULL,
        fingerprint_hash TEXT NOT NULL,
        device_class TEXT NOT NULL DEFAULT 'unknown',
        created_at TIMESTAMPTZ NOT NULL,
        last_activity TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE
    )
    """,
    "CREATE INDEX IF NOT EXISTS admin_session_user_idx ON admin_session (user_id, is_active)",
    """
    CREATE TABLE IF NOT EXISTS admin_audit_log (
        id TEXT PRIMARY KEY,
        actor TEXT NOT NULL,
        action TEXT NOT NULL,
        method TEXT NOT NULL,
        network_origin TEXT,
        user_agent TEXT,
        success BOOLEAN NOT NULL,
        severity TEXT NOT NULL,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS admin_audit_log_created_idx ON admin_audit_log (created_at DESC)",
)

# Concurrent writers converge: the larger expiry wins and an inactive row stays inactive
_UPSERT_SESSION_SQL = """
    INSERT INTO admin_session (
        session_id, user_id, access_token, refresh_token, user_agent, network_origin,
        fingerprint_hash, device_class, created_at, last_activity, expires_at, is_active
    )
    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
    ON CONFLICT (session_id) DO UPDATE SET
        access_token = CASE WHEN EXCLUDED.expires_at >= admin_session.expires_at
            THEN EXCLUDED.access_token ELSE admin_session.access_token END,
        refresh_token = CASE WHEN EXCLUDED.expires_at >= admin_session.expires_at
            THEN EXCLUDED.refresh_token ELSE admin_session.refresh_token END,
        network_origin = EXCLUDED.network_origin,
        last_activity = GREATEST(admin_session.last_activity, EXCLUDED.last_activity),
        expires_at = GREATEST(admin_session.expires_at, EXCLUDED.expires_at),
        is_active = admin_session.is_active AND EXCLUDED.is_active
    RETURNING *
"""


class PostgresStore:
    """Postgres-backed durable layer: admin sessions, audit log, identity lookups."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, psycopg.InterfaceError, PoolTimeout) as exc:
            self.logger.warning("postgres_unavailable", error=str(exc))
            raise StorageUnavailable("durable store unavailable", {"error": str(exc)}) from exc

    def _ensure_schema(self) -> None:
        """Create the admin session tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    # identity directory
    def lookup_user(self, user_id: str) -> Optional[AdminIdentity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, email, role, is_active, is_banned, created_at FROM app_user WHERE id = %s",
                (user_id,),
            ).fetchone()
        return self._row_to_identity(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[AdminIdentity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, email, role, is_active, is_banned, created_at FROM app_user WHERE lower(email) = lower(%s)",
                (email,),
            ).fetchone()
        return self._row_to_identity(row) if row else None

    def upsert_user(self, identity: AdminIdentity) -> AdminIdentity:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO app_user (id, email, role, is_active, is_banned, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    email = EXCLUDED.email,
                    role = EXCLUDED.role,
                    is_active = EXCLUDED.is_active,
                    is_banned = EXCLUDED.is_banned
                RETURNING id, email, role, is_active, is_banned, created_at
                """,
                (
                    identity.id,
                    identity.email,
                    identity.role,
                    identity.is_active,
                    identity.is_banned,
                    identity.created_at,
                ),
            ).fetchone()
        return self._row_to_identity(row)

    # admin sessions
    def upsert_session(self, session: Session) -> Session:
        meta = session.metadata
        with self._connect() as conn:
            row = conn.execute(
                _UPSERT_SESSION_SQL,
                (
                    session.id,
                    session.user_id,
                    session.access_token,
                    session.refresh_token,
                    meta.user_agent,
                    meta.network_origin,
                    meta.fingerprint_hash,
                    meta.device_class,
                    meta.created_at,
                    meta.last_activity_at,
                    session.expires_at,
                    session.is_valid,
                ),
            ).fetchone()
        return self._row_to_session(row) if row else session.copy()

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM admin_session WHERE session_id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def touch_session(
        self,
        session_id: str,
        last_activity_at: datetime,
        network_origin: Optional[str] = None,
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE admin_session
                SET last_activity = GREATEST(last_activity, %s),
                    network_origin = COALESCE(%s, network_origin)
                WHERE session_id = %s AND is_active
                """,
                (last_activity_at, network_origin, session_id),
            )
            return cur.rowcount > 0

    def deactivate_session(self, session_id: str, at: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE admin_session
                SET is_active = FALSE, last_activity = GREATEST(last_activity, %s)
                WHERE session_id = %s AND is_active
                """,
                (at, session_id),
            )
            return cur.rowcount > 0

    def deactivate_user_sessions(
        self, user_id: str, at: datetime, except_session_id: Optional[str] = None
    ) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE admin_session
                SET is_active = FALSE, last_activity = GREATEST(last_activity, %s)
                WHERE user_id = %s AND is_active AND session_id IS DISTINCT FROM %s
                RETURNING session_id
                """,
                (at, user_id, except_session_id),
            ).fetchall()
        return [str(row["session_id"]) for row in rows]

    def expire_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE admin_session SET is_active = FALSE WHERE is_active AND expires_at < %s",
                (now,),
            )
            return cur.rowcount

    def list_user_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM admin_session
                WHERE user_id = %s AND is_active AND expires_at >= %s
                ORDER BY created_at ASC
                """,
                (user_id, now),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    # audit log
    def append_audit_event(self, event: AuditEvent) -> AuditEvent:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO admin_audit_log (
                    id, actor, action, method, network_origin, user_agent,
                    success, severity, metadata, created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.actor,
                    event.action,
                    event.method,
                    event.network_origin,
                    event.user_agent,
                    event.success,
                    event.severity,
                    json.dumps(event.metadata, default=str),
                    event.timestamp,
                ),
            )
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
        clauses: List[str] = []
        params: List[Any] = []
        if actor is not None:
            clauses.append("actor = %s")
            params.append(actor)
        if action is not None:
            clauses.append("action = %s")
            params.append(action)
        if success is not None:
            clauses.append("success = %s")
            params.append(success)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.extend([limit, offset])
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM admin_audit_log {where} ORDER BY created_at DESC LIMIT %s OFFSET %s",
                tuple(params),
            ).fetchall()
        return [self._row_to_audit_event(row) for row in rows]

    @staticmethod
    def _row_to_identity(row: dict) -> AdminIdentity:
        return AdminIdentity(
            id=str(row["id"]),
            email=row["email"],
            role=row.get("role") or "user",
            is_active=bool(row.get("is_active", True)),
            is_banned=bool(row.get("is_banned", False)),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_session(row: dict) -> Session:
        return Session(
            id=str(row["session_id"]),
            user_id=str(row["user_id"]),
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=row["expires_at"],
            is_valid=bool(row["is_active"]),
            metadata=SessionMetadata(
                user_agent=row.get("user_agent"),
                network_origin=row.get("network_origin") or "unknown",
                fingerprint_hash=row["fingerprint_hash"],
                created_at=row["created_at"],
                last_activity_at=row["last_activity"],
                device_class=row.get("device_class") or "unknown",
            ),
        )

    @staticmethod
    def _row_to_audit_event(row: dict) -> AuditEvent:
        metadata = row.get("metadata") or {}
        if isinstance(metadata, str):
            try:
                metadata = json.loads(metadata)
            except ValueError:
                metadata = {"raw": metadata}
        return AuditEvent(
            id=str(row["id"]),
            actor=row["actor"],
            action=row["action"],
            method=row["method"],
            network_origin=row.get("network_origin"),
            user_agent=row.get("user_agent"),
            success=bool(row["success"]),
            severity=row["severity"],
            metadata=metadata,
            timestamp=row["created_at"],
        )
