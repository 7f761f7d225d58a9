from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Request, Response

from admingate.config import Settings
from admingate.logging import get_logger
from admingate.service.errors import SessionRejected
from admingate.service.fingerprint import RequestMetadata
from admingate.service.pipeline import Invalid
from admingate.service.sessions import SessionService
from admingate.storage.models import AdminIdentity, Session

logger = get_logger(__name__)

ACCESS_COOKIE = "admin_token"
SESSION_COOKIE = "admin_session_id"
FINGERPRINT_COOKIE = "admin_fingerprint"
SESSION_COOKIES = (ACCESS_COOKIE, SESSION_COOKIE, FINGERPRINT_COOKIE)

FINGERPRINT_COOKIE_CHARS = 16


@dataclass(frozen=True)
class AdminContext:
    identity: AdminIdentity
    session: Session
    refreshed: bool = False

    @property
    def user_id(self) -> str:
        return self.identity.id

    @property
    def session_id(self) -> str:
        return self.session.id


def extract_token(request: Request) -> Optional[str]:
    """Bearer header, then the access cookie, then the ``token`` query param."""
    authorization = request.headers.get("authorization")
    if authorization:
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()
    cookie = request.cookies.get(ACCESS_COOKIE)
    if cookie:
        return cookie
    query = request.query_params.get("token")
    if query:
        return query
    return None


def request_metadata(request: Request) -> RequestMetadata:
    return RequestMetadata(
        headers=dict(request.headers.items()),
        connection_address=request.client.host if request.client else None,
    )


def set_session_cookies(response: Response, session: Session, settings: Settings) -> None:
    max_age = settings.access_token_ttl_minutes * 60
    common = {
        "secure": settings.secure_cookies,
        "samesite": "strict",
        "path": settings.cookie_path,
        "domain": settings.cookie_domain,
    }
    response.set_cookie(
        ACCESS_COOKIE, session.access_token, httponly=True, max_age=max_age, **common
    )
    # Client-readable mirror so the UI can show which session it holds
    response.set_cookie(
        SESSION_COOKIE, session.id, httponly=False, max_age=max_age, **common
    )
    set_fingerprint_cookie(response, session, settings)


def set_fingerprint_cookie(response: Response, session: Session, settings: Settings) -> None:
    """Short-lived fingerprint fragment, re-issued whenever the browser has let it lapse."""
    response.set_cookie(
        FINGERPRINT_COOKIE,
        session.metadata.fingerprint_hash[:FINGERPRINT_COOKIE_CHARS],
        httponly=True,
        max_age=settings.fingerprint_cookie_max_age_seconds,
        secure=settings.secure_cookies,
        samesite="strict",
        path=settings.cookie_path,
        domain=settings.cookie_domain,
    )


def clear_session_cookies(response: Response, settings: Settings) -> None:
    for name in SESSION_COOKIES:
        response.delete_cookie(
            name,
            path=settings.cookie_path,
            domain=settings.cookie_domain,
            secure=settings.secure_cookies,
            httponly=name != SESSION_COOKIE,
            samesite="strict",
        )


def apply_security_headers(response: Response, session: Session) -> None:
    response.headers["X-Admin-Session-Id"] = session.id
    response.headers["X-Session-Expires"] = session.expires_at.isoformat()
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-XSS-Protection"] = "1; mode=block"


class AuthenticationBoundary:
    """HTTP edge of the session engine.

    Extracts the token, runs validation, and shapes the response. Every
    rejection surfaces as :class:`SessionRejected`; the exception handler turns
    that into one uniform 401 that also clears the session cookies.
    """

    def __init__(self, sessions: SessionService, settings: Settings) -> None:
        self.sessions = sessions
        self.settings = settings

    async def authenticate(self, request: Request, response: Response) -> AdminContext:
        token = extract_token(request)
        if not token:
            raise SessionRejected(reason="token-missing", stage="extract")

        result = await self.sessions.validate(token, request_metadata(request))
        if isinstance(result, Invalid):
            raise result.to_error()

        ctx = AdminContext(
            identity=result.identity, session=result.session, refreshed=result.refreshed
        )
        request.state.admin = ctx
        apply_security_headers(response, result.session)
        if result.refreshed:
            set_session_cookies(response, result.session, self.settings)
            logger.info("session_cookies_reissued", session_id=result.session.id)
        elif request.cookies.get(ACCESS_COOKIE) and not request.cookies.get(FINGERPRINT_COOKIE):
            set_fingerprint_cookie(response, result.session, self.settings)
        return ctx

    async def login(
        self, identity: AdminIdentity, request: Request, response: Response
    ) -> Session:
        """Create a session for an already-verified identity and attach cookies."""
        session = await self.sessions.create_session(identity, request_metadata(request))
        set_session_cookies(response, session, self.settings)
        apply_security_headers(response, session)
        return session

    async def logout(self, ctx: AdminContext, response: Response) -> None:
        await self.sessions.invalidate(ctx.session_id, reason="logout", user_id=ctx.user_id)
        clear_session_cookies(response, self.settings)
