from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from admingate.logging import get_correlation_id
from admingate.storage.models import AdminIdentity, AuditEvent, Session

_VALID_ERROR_CODES = {
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "server_error",
    "service_unavailable",
}


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class AdminUserView(BaseModel):
    id: str
    email: str
    role: str

    @classmethod
    def from_identity(cls, identity: AdminIdentity) -> "AdminUserView":
        return cls(id=identity.id, email=identity.email, role=identity.role)


class SessionView(BaseModel):
    id: str
    user_id: str
    expires_at: datetime
    created_at: datetime
    last_activity_at: datetime
    device_class: str
    network_origin: str
    current: bool = False

    @classmethod
    def from_session(cls, session: Session, *, current_id: Optional[str] = None) -> "SessionView":
        return cls(
            id=session.id,
            user_id=session.user_id,
            expires_at=session.expires_at,
            created_at=session.metadata.created_at,
            last_activity_at=session.metadata.last_activity_at,
            device_class=session.metadata.device_class,
            network_origin=session.metadata.network_origin,
            current=session.id == current_id,
        )


class CurrentSessionResponse(BaseModel):
    user: AdminUserView
    session: SessionView
    refreshed: bool = False


class SessionListResponse(BaseModel):
    items: List[SessionView]


class RevokeAllRequest(BaseModel):
    keep_current: bool = True


class RevokeAllResponse(BaseModel):
    revoked: List[str]


class SessionMetricsResponse(BaseModel):
    active_sessions: int
    live_heartbeats: int
    total_heartbeats: int
    suspicious_activities: int


class AuditEventView(BaseModel):
    id: str
    actor: str
    action: str
    method: str
    network_origin: Optional[str] = None
    user_agent: Optional[str] = None
    success: bool
    severity: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime

    @classmethod
    def from_event(cls, event: AuditEvent) -> "AuditEventView":
        return cls(
            id=event.id,
            actor=event.actor,
            action=event.action,
            method=event.method,
            network_origin=event.network_origin,
            user_agent=event.user_agent,
            success=event.success,
            severity=event.severity,
            metadata=dict(event.metadata),
            timestamp=event.timestamp,
        )


class AuditEventListResponse(BaseModel):
    items: List[AuditEventView]
    limit: int
    offset: int
