"""
Session-bound, single-use CSRF tokens kept in Redis
"""
from typing import Optional
import logging
import secrets

import redis.asyncio as redis

from lessonpulse.audit import security_events
from lessonpulse.config import CSRF_TOKEN_TTL_SECONDS

logger = logging.getLogger(__name__)


class CSRFProtection:

    def __init__(self, ttl: int = CSRF_TOKEN_TTL_SECONDS):
        self.ttl = ttl

    async def issue(self, cache: redis.Redis, session_id: str) -> str:
        token = secrets.token_hex(32)
        await cache.set(f"csrf:{token}", session_id, ex=self.ttl)
        return token

    async def validate(
        self,
        cache: redis.Redis,
        token: Optional[str],
        session_id: str,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None
    ) -> bool:
        """Check and consume a token. Every rejection is recorded as a security event."""
        if not token:
            await security_events.log(
                "csrf_rejected", "high", "CSRF token missing",
                user_id=user_id, ip_address=ip_address,
            )
            return False

        key = f"csrf:{token}"
        bound_session = await cache.get(key)
        if bound_session is None:
            # Unknown and expired tokens look the same once the TTL has run out
            await security_events.log(
                "csrf_rejected", "high", "CSRF token validation failed - token not found or expired",
                user_id=user_id, ip_address=ip_address,
            )
            return False

        if bound_session != session_id:
            await security_events.log(
                "csrf_rejected", "high", "CSRF token validation failed - session mismatch",
                user_id=user_id, ip_address=ip_address,
            )
            return False

        await cache.delete(key)
        return True


csrf_protection = CSRFProtection()
