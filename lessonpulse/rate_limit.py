"""
Redis-backed rate limiting and login throttling
"""
from typing import Optional
import logging

import redis.asyncio as redis
from pydantic import BaseModel

from lessonpulse.audit import security_events
from lessonpulse.config import (
    RATE_LIMITS,
    RATE_LIMIT_WINDOW_SECONDS,
    LOGIN_MAX_FAILURES,
    LOGIN_FAILURE_WINDOW_SECONDS,
    LOGIN_LOCKOUT_SECONDS,
    MAX_PROGRESSIVE_DELAY_SECONDS,
)

logger = logging.getLogger(__name__)


class RateLimitResult(BaseModel):
    """Decision for one attempt; retry_after is in whole seconds"""
    allowed: bool
    remaining: int
    retry_after: int = 0
    message: Optional[str] = None


def _seconds_left(pttl: int) -> int:
    """Whole seconds left on a key from PTTL; 0 when missing or persistent"""
    if pttl is None or pttl <= 0:
        return 0
    return -(-pttl // 1000)


def progressive_delay(failures: int) -> int:
    """Seconds to wait after the n-th consecutive failure: 1, 2, 4, ... capped"""
    if failures <= 0:
        return 0
    return min(2 ** (failures - 1), MAX_PROGRESSIVE_DELAY_SECONDS)


class RateLimiter:
    """Fixed-window counter per action and subject (user id or client IP)"""

    def __init__(self, limits: Optional[dict] = None, window: int = RATE_LIMIT_WINDOW_SECONDS):
        self.limits = limits or RATE_LIMITS
        self.window = window

    async def hit(
        self,
        cache: redis.Redis,
        action: str,
        subject: str,
        ip_address: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> RateLimitResult:
        max_attempts = self.limits.get(action, self.limits["general"])
        key = f"rate_limit:{action}:{subject}"

        count = await cache.incr(key)
        if count == 1:
            await cache.expire(key, self.window)

        if count > max_attempts:
            retry_after = _seconds_left(await cache.pttl(key)) or self.window
            # Only the first violation of a window is worth an event
            if count == max_attempts + 1:
                await security_events.log(
                    "rate_limit_exceeded", "medium",
                    f"Action: {action}, subject: {subject}",
                    user_id=user_id, ip_address=ip_address,
                )
            return RateLimitResult(
                allowed=False,
                remaining=0,
                retry_after=retry_after,
                message="Rate limit exceeded. Please try again later.",
            )

        return RateLimitResult(allowed=True, remaining=max_attempts - count)


class LoginThrottle:
    """
    Per-identifier failed-login tracking.

    Each failure extends an enforced progressive delay; reaching the failure limit
    inside the window locks the identifier out entirely. A success clears everything.
    """

    def __init__(
        self,
        max_failures: int = LOGIN_MAX_FAILURES,
        window: int = LOGIN_FAILURE_WINDOW_SECONDS,
        lockout: int = LOGIN_LOCKOUT_SECONDS
    ):
        self.max_failures = max_failures
        self.window = window
        self.lockout = lockout

    @staticmethod
    def _keys(identifier: str):
        identifier = identifier.lower()
        return (
            f"login_failures:{identifier}",
            f"login_delay:{identifier}",
            f"login_lock:{identifier}",
        )

    async def check(self, cache: redis.Redis, identifier: str) -> RateLimitResult:
        failures_key, delay_key, lock_key = self._keys(identifier)

        lock_ttl = _seconds_left(await cache.pttl(lock_key))
        if lock_ttl:
            minutes = -(-lock_ttl // 60)
            return RateLimitResult(
                allowed=False,
                remaining=0,
                retry_after=lock_ttl,
                message=f"Account temporarily locked. Try again in {minutes} minutes.",
            )

        delay_ttl = _seconds_left(await cache.pttl(delay_key))
        failures = int(await cache.get(failures_key) or 0)
        remaining = max(0, self.max_failures - failures)
        if delay_ttl:
            return RateLimitResult(
                allowed=False,
                remaining=remaining,
                retry_after=delay_ttl,
                message=f"Too many attempts. Wait {delay_ttl} seconds before trying again.",
            )

        message = f"{remaining} attempts remaining" if failures and remaining <= 2 else None
        return RateLimitResult(allowed=True, remaining=remaining, message=message)

    async def record_failure(
        self,
        cache: redis.Redis,
        identifier: str,
        ip_address: Optional[str] = None
    ) -> RateLimitResult:
        failures_key, delay_key, lock_key = self._keys(identifier)

        failures = await cache.incr(failures_key)
        if failures == 1:
            await cache.expire(failures_key, self.window)

        if failures >= self.max_failures:
            await cache.set(lock_key, "1", ex=self.lockout)
            await cache.delete(failures_key, delay_key)
            await security_events.log(
                "account_locked", "high",
                f"Identifier {identifier} locked after {failures} failed attempts",
                ip_address=ip_address,
            )
            return RateLimitResult(
                allowed=False,
                remaining=0,
                retry_after=self.lockout,
                message=f"Account temporarily locked. Try again in {self.lockout // 60} minutes.",
            )

        delay = progressive_delay(failures)
        await cache.set(delay_key, "1", ex=delay)
        return RateLimitResult(allowed=True, remaining=self.max_failures - failures, retry_after=delay)

    async def reset(self, cache: redis.Redis, identifier: str):
        await cache.delete(*self._keys(identifier))

    async def is_locked(self, cache: redis.Redis, identifier: str) -> bool:
        _, _, lock_key = self._keys(identifier)
        return bool(await cache.exists(lock_key))


rate_limiter = RateLimiter()
login_throttle = LoginThrottle()
