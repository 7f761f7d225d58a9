from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as aioredis

from admingate.storage.models import SuspiciousActivityMarker

_MARKER_PREFIX = "admin:suspicious"


class RedisCache:
    """Thin Redis wrapper for cross-process suspicious-activity markers."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived synchronous client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _marker_key(user_id: str, kind: str) -> str:
        return f"{_MARKER_PREFIX}:{user_id}:{kind}"

    async def claim_suspicious_marker(
        self, user_id: str, kind: str, now: datetime, ttl_seconds: int
    ) -> Optional[SuspiciousActivityMarker]:
        """Set the marker if absent.

        Returns None when this caller created the marker, or the existing
        marker when one is still live (the caller should suppress its write).
        """
        key = self._marker_key(user_id, kind)
        created = await self.client.set(key, now.isoformat(), nx=True, ex=max(1, ttl_seconds))
        if created:
            return None
        raw = await self.client.get(key)
        ttl = await self.client.ttl(key)
        try:
            first_seen = datetime.fromisoformat(raw) if raw else now
        except ValueError:
            first_seen = now
        if first_seen.tzinfo is None:
            first_seen = first_seen.replace(tzinfo=timezone.utc)
        remaining = ttl if isinstance(ttl, int) and ttl > 0 else ttl_seconds
        return SuspiciousActivityMarker(
            user_id=user_id,
            kind=kind,
            timestamp=first_seen,
            expires_at=datetime.fromtimestamp(now.timestamp() + remaining, tz=timezone.utc),
        )

    async def count_suspicious_markers(self) -> int:
        count = 0
        async for _ in self.client.scan_iter(match=f"{_MARKER_PREFIX}:*", count=500):
            count += 1
        return count

    async def close(self) -> None:
        await self.client.aclose()
