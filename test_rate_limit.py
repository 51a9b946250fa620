"""Tests for the per-action rate limiter and the login throttle"""
import pytest

from lessonpulse.rate_limit import LoginThrottle, RateLimiter, progressive_delay

pytestmark = pytest.mark.anyio


def test_progressive_delay_doubles_and_caps():
    assert [progressive_delay(n) for n in range(0, 8)] == [0, 1, 2, 4, 8, 16, 30, 30]


async def test_limit_blocks_after_max_attempts(database, cache):
    limiter = RateLimiter(limits={"signup": 3, "general": 100}, window=60)

    results = [await limiter.hit(cache, "signup", "10.0.0.1") for _ in range(4)]

    assert [r.allowed for r in results] == [True, True, True, False]
    assert [r.remaining for r in results[:3]] == [2, 1, 0]
    assert 0 < results[3].retry_after <= 60
    assert "Rate limit exceeded" in results[3].message


async def test_limits_are_per_subject_and_action(database, cache):
    limiter = RateLimiter(limits={"login": 1, "general": 100}, window=60)

    assert (await limiter.hit(cache, "login", "10.0.0.1")).allowed
    assert not (await limiter.hit(cache, "login", "10.0.0.1")).allowed
    assert (await limiter.hit(cache, "login", "10.0.0.2")).allowed
    # Unknown actions fall back to the general limit
    assert (await limiter.hit(cache, "export", "10.0.0.1")).remaining == 99


async def test_first_violation_records_security_event(database, cache):
    from lessonpulse.audit import security_events

    limiter = RateLimiter(limits={"chat": 1, "general": 100}, window=60)
    for _ in range(4):
        await limiter.hit(cache, "chat", "user-1", ip_address="10.0.0.9", user_id="user-1")

    events = await security_events.list_events(event_type="rate_limit_exceeded")
    assert len(events) == 1
    assert events[0].severity == "medium"
    assert events[0].user_id == "user-1"


async def test_failed_logins_enforce_delay(database, cache):
    throttle = LoginThrottle(max_failures=5, window=900, lockout=900)

    assert (await throttle.check(cache, "jonas@school.lt")).allowed

    failure = await throttle.record_failure(cache, "jonas@school.lt")
    assert failure.allowed
    assert failure.remaining == 4
    assert failure.retry_after == 1

    check = await throttle.check(cache, "Jonas@School.lt")
    assert not check.allowed
    assert "Wait" in check.message


async def test_lockout_after_max_failures(database, cache):
    throttle = LoginThrottle(max_failures=5, window=900, lockout=900)

    for _ in range(4):
        assert (await throttle.record_failure(cache, "jonas@school.lt")).allowed
    locked = await throttle.record_failure(cache, "jonas@school.lt")

    assert not locked.allowed
    assert locked.retry_after == 900
    assert await throttle.is_locked(cache, "jonas@school.lt")

    check = await throttle.check(cache, "jonas@school.lt")
    assert not check.allowed
    assert "15 minutes" in check.message


async def test_reset_clears_lockout(database, cache):
    throttle = LoginThrottle(max_failures=2, window=900, lockout=900)
    await throttle.record_failure(cache, "jonas@school.lt")
    await throttle.record_failure(cache, "jonas@school.lt")
    assert await throttle.is_locked(cache, "jonas@school.lt")

    await throttle.reset(cache, "jonas@school.lt")

    assert not await throttle.is_locked(cache, "jonas@school.lt")
    check = await throttle.check(cache, "jonas@school.lt")
    assert check.allowed
    assert check.remaining == 2
