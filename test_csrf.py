"""Tests for session-bound single-use CSRF tokens"""
import pytest

from lessonpulse.audit import security_events
from lessonpulse.csrf import CSRFProtection

pytestmark = pytest.mark.anyio


async def test_token_is_bound_to_session_and_single_use(database, cache):
    csrf = CSRFProtection(ttl=1800)
    token = await csrf.issue(cache, "session-a")

    assert len(token) == 64
    assert await cache.ttl(f"csrf:{token}") > 0
    assert await csrf.validate(cache, token, "session-a")
    assert not await csrf.validate(cache, token, "session-a")


async def test_token_from_another_session_is_rejected(database, cache):
    csrf = CSRFProtection()
    token = await csrf.issue(cache, "session-a")

    assert not await csrf.validate(cache, token, "session-b", user_id="user-b")
    # A rejected token stays usable by its own session
    assert await csrf.validate(cache, token, "session-a")

    events = await security_events.list_events(event_type="csrf_rejected")
    assert len(events) == 1
    assert events[0].severity == "high"
    assert "session mismatch" in events[0].details


async def test_missing_and_unknown_tokens_are_logged(database, cache):
    csrf = CSRFProtection()

    assert not await csrf.validate(cache, None, "session-a")
    assert not await csrf.validate(cache, "0" * 64, "session-a")

    details = [event.details for event in await security_events.list_events(event_type="csrf_rejected")]
    assert any("missing" in d for d in details)
    assert any("not found or expired" in d for d in details)
