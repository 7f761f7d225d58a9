from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from admingate.api.boundary import AdminContext
from admingate.api.schemas import (
    AdminUserView,
    AuditEventListResponse,
    AuditEventView,
    CurrentSessionResponse,
    Envelope,
    RevokeAllRequest,
    RevokeAllResponse,
    SessionListResponse,
    SessionMetricsResponse,
    SessionView,
)
from admingate.service.runtime import get_runtime

router = APIRouter(prefix="/admin", tags=["admin-session"])

MAX_AUDIT_PAGE_SIZE = 200


def _http_error(
    code: str, message: str, status_code: int = 400, details: Optional[dict] = None
) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"status": "error", "error": {"code": code, "message": message, "details": details}},
    )


async def require_admin_session(request: Request, response: Response) -> AdminContext:
    """Dependency guarding every admin route; see AuthenticationBoundary.authenticate."""
    return await get_runtime().boundary.authenticate(request, response)


@router.get("/session", response_model=Envelope)
async def current_session(ctx: AdminContext = Depends(require_admin_session)):
    return Envelope(
        status="ok",
        data=CurrentSessionResponse(
            user=AdminUserView.from_identity(ctx.identity),
            session=SessionView.from_session(ctx.session, current_id=ctx.session_id),
            refreshed=ctx.refreshed,
        ),
    )


@router.post("/logout", response_model=Envelope)
async def logout(response: Response, ctx: AdminContext = Depends(require_admin_session)):
    await get_runtime().boundary.logout(ctx, response)
    return Envelope(status="ok", data={"logged_out": True})


@router.get("/sessions", response_model=Envelope)
async def list_sessions(ctx: AdminContext = Depends(require_admin_session)):
    sessions = get_runtime().sessions.list_user_sessions(ctx.user_id)
    return Envelope(
        status="ok",
        data=SessionListResponse(
            items=[SessionView.from_session(s, current_id=ctx.session_id) for s in sessions]
        ),
    )


@router.post("/sessions/revoke-all", response_model=Envelope)
async def revoke_all_sessions(
    body: Optional[RevokeAllRequest] = None,
    ctx: AdminContext = Depends(require_admin_session),
):
    keep_current = body.keep_current if body is not None else True
    revoked = await get_runtime().sessions.invalidate_all_user_sessions(
        ctx.user_id,
        except_session_id=ctx.session_id if keep_current else None,
        actor_id=ctx.user_id,
    )
    return Envelope(status="ok", data=RevokeAllResponse(revoked=revoked))


@router.get("/session/metrics", response_model=Envelope)
async def session_metrics(ctx: AdminContext = Depends(require_admin_session)):
    metrics = await get_runtime().sessions.metrics()
    return Envelope(status="ok", data=SessionMetricsResponse(**metrics))


@router.get("/audit", response_model=Envelope)
async def list_audit_events(
    actor: Optional[str] = Query(None),
    action: Optional[str] = Query(None),
    success: Optional[bool] = Query(None),
    limit: int = Query(50, ge=1),
    offset: int = Query(0, ge=0),
    ctx: AdminContext = Depends(require_admin_session),
):
    if limit > MAX_AUDIT_PAGE_SIZE:
        raise _http_error(
            "validation_error",
            f"limit must be at most {MAX_AUDIT_PAGE_SIZE}",
            details={"limit": limit},
        )
    events = get_runtime().sessions.list_audit_events(
        actor=actor, action=action, success=success, limit=limit, offset=offset
    )
    return Envelope(
        status="ok",
        data=AuditEventListResponse(
            items=[AuditEventView.from_event(e) for e in events], limit=limit, offset=offset
        ),
    )
