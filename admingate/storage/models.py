from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AdminIdentity:
    id: str
    email: str
    role: str = "admin"
    is_active: bool = True
    is_banned: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def is_eligible(self, required_role: str = "admin") -> bool:
        return self.is_active and not self.is_banned and self.role == required_role


@dataclass
class SessionMetadata:
    user_agent: Optional[str]
    network_origin: str
    fingerprint_hash: str
    created_at: datetime
    last_activity_at: datetime
    device_class: str = "unknown"


@dataclass
class Session:
    id: str
    user_id: str
    access_token: str
    refresh_token: str
    metadata: SessionMetadata
    expires_at: datetime
    is_valid: bool = True

    @staticmethod
    def new_id() -> str:
        """256 bits of randomness, hex encoded."""
        return secrets.token_hex(32)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def remaining(self, now: datetime) -> timedelta:
        return self.expires_at - now

    def copy(self) -> "Session":
        return replace(self, metadata=replace(self.metadata))


@dataclass(frozen=True)
class AuditEvent:
    actor: str
    action: str
    success: bool
    method: str = "admin_session"
    network_origin: Optional[str] = None
    user_agent: Optional[str] = None
    severity: str = "LOW"
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class SuspiciousActivityMarker:
    user_id: str
    kind: str
    timestamp: datetime
    expires_at: datetime

    def is_active(self, now: datetime) -> bool:
        return self.expires_at > now
