from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from admingate.config import Settings
from admingate.logging import get_logger
from admingate.service.errors import TokenExpired, TokenInvalid
from admingate.storage.models import AdminIdentity, utcnow

logger = get_logger(__name__)


class TokenClass(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    session_id: str
    token_class: TokenClass
    issued_at: datetime
    expires_at: datetime
    email: Optional[str] = None
    role: Optional[str] = None


class TokenCodec:
    """Mints and verifies HS256 access/refresh tokens.

    Access and refresh tokens are signed with different secrets so one class
    can never be replayed as the other; the ``typ`` claim is checked as well.
    """

    def __init__(self, settings: Settings, *, clock: Callable[[], datetime] = utcnow):
        self.settings = settings
        self._clock = clock
        self._secrets = {
            TokenClass.ACCESS: settings.access_token_secret.encode(),
            TokenClass.REFRESH: settings.refresh_token_secret.encode(),
        }
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.refresh_ttl = timedelta(days=settings.refresh_token_ttl_days)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, token_class: TokenClass) -> str:
        digest = hmac.new(
            self._secrets[token_class], signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def _encode(self, payload: dict[str, Any], token_class: TokenClass) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, token_class)}"

    def _split(self, token: str) -> tuple[str, str, str]:
        if not isinstance(token, str):
            raise TokenInvalid(reason="token-invalid", detail={"cause": "not_a_string"})
        if not token.isascii():
            raise TokenInvalid(detail={"cause": "non_ascii"})
        parts = token.split(".")
        if len(parts) != 3 or not all(parts):
            raise TokenInvalid(detail={"cause": "malformed"})
        return parts[0], parts[1], parts[2]

    def _load_segment(self, segment: str, what: str) -> dict[str, Any]:
        try:
            value = json.loads(self._decode_segment(segment))
        except (binascii.Error, ValueError, UnicodeDecodeError) as exc:
            logger.warning("token_segment_decode_failed", segment=what, error=str(exc))
            raise TokenInvalid(detail={"cause": f"{what}_decode"}) from exc
        if not isinstance(value, dict):
            raise TokenInvalid(detail={"cause": f"{what}_shape"})
        return value

    def issue_access_token(
        self, identity: AdminIdentity, session_id: str, now: Optional[datetime] = None
    ) -> tuple[str, datetime]:
        issued = now or self._clock()
        expires_at = issued + self.access_ttl
        payload = {
            "iss": self.settings.token_issuer,
            "sub": identity.id,
            "sid": session_id,
            "email": identity.email,
            "role": identity.role,
            "typ": TokenClass.ACCESS.value,
            "jti": str(uuid.uuid4()),
            "iat": int(issued.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return self._encode(payload, TokenClass.ACCESS), expires_at

    def issue_refresh_token(
        self, identity: AdminIdentity, session_id: str, now: Optional[datetime] = None
    ) -> tuple[str, datetime]:
        issued = now or self._clock()
        expires_at = issued + self.refresh_ttl
        payload = {
            "iss": self.settings.token_issuer,
            "sub": identity.id,
            "sid": session_id,
            "typ": TokenClass.REFRESH.value,
            "jti": str(uuid.uuid4()),
            "iat": int(issued.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return self._encode(payload, TokenClass.REFRESH), expires_at

    def issue_pair(
        self, identity: AdminIdentity, session_id: str, now: Optional[datetime] = None
    ) -> TokenPair:
        issued = now or self._clock()
        access, access_exp = self.issue_access_token(identity, session_id, issued)
        refresh, refresh_exp = self.issue_refresh_token(identity, session_id, issued)
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    def verify(
        self, token: str, expected: TokenClass = TokenClass.ACCESS
    ) -> TokenClaims:
        """Verify signature, class and expiry of ``token``.

        Raises TokenInvalid for anything structurally wrong or signed with the
        wrong secret, TokenExpired once ``exp`` has passed.
        """
        header_b64, payload_b64, sig_b64 = self._split(token)
        header = self._load_segment(header_b64, "header")
        # Pin the algorithm to prevent algorithm confusion ("none", RS/HS swaps)
        if header.get("alg") != "HS256":
            logger.warning("token_invalid_algorithm", alg=header.get("alg"))
            raise TokenInvalid(detail={"cause": "algorithm"})

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", expected)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenInvalid(detail={"cause": "signature"})

        payload = self._load_segment(payload_b64, "payload")
        if payload.get("typ") != expected.value:
            raise TokenInvalid(detail={"cause": "token_class"})
        if payload.get("iss") != self.settings.token_issuer:
            raise TokenInvalid(detail={"cause": "issuer"})
        user_id = payload.get("sub")
        session_id = payload.get("sid")
        if not isinstance(user_id, str) or not isinstance(session_id, str):
            raise TokenInvalid(detail={"cause": "claims"})
        try:
            issued_at = datetime.fromtimestamp(float(payload["iat"]), tz=timezone.utc)
            expires_at = datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc)
        except (KeyError, TypeError, ValueError, OverflowError) as exc:
            raise TokenInvalid(detail={"cause": "timestamps"}) from exc

        if expires_at <= self._clock():
            raise TokenExpired(detail={"session_id": session_id})

        return TokenClaims(
            user_id=user_id,
            session_id=session_id,
            token_class=expected,
            issued_at=issued_at,
            expires_at=expires_at,
            email=payload.get("email"),
            role=payload.get("role"),
        )
