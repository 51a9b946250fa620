"""Tests for fingerprint scoring and server-side session validation"""
import base64
import json
from datetime import timedelta

import pytest
from jose import jwt

from lessonpulse.database import AsyncSessionLocal
from lessonpulse.db_models import UserSession, as_utc, utcnow
from lessonpulse.fingerprint import parse_fingerprint, risk_level, score_fingerprint
from lessonpulse.sessions import SessionError, SessionManager

DEVICE = {
    "user_agent": "Mozilla/5.0 (X11; Linux x86_64)",
    "platform": "Linux x86_64",
    "language": "lt-LT",
    "screen_resolution": "1920x1080",
    "timezone": "Europe/Vilnius",
    "color_depth": 24,
    "cookies_enabled": True,
    "touch_support": False,
    "hardware_concurrency": 8,
    "canvas": "c4f1e0",
    "webgl": "ANGLE (Intel)",
}


# ==================== Fingerprint ====================

def test_identical_fingerprints_score_one():
    assert score_fingerprint(DEVICE, dict(DEVICE)) == 1.0
    assert risk_level(1.0) == "low"


def test_missing_fingerprint_scores_zero():
    assert score_fingerprint(DEVICE, None) == 0.0
    assert risk_level(0.0) == "high"


def test_partial_match_is_weighted():
    # Same browser, different canvas and WebGL: loses 3*4 + 2*2 of 73 points
    current = dict(DEVICE, canvas="ffffff", webgl="other")
    score = score_fingerprint(DEVICE, current)
    assert score == pytest.approx(57 / 73)
    assert risk_level(score) == "low"

    # New user agent and platform as well: another 3*5 + 2*5 points gone
    current.update(user_agent="curl/8.0", platform="Win32")
    score = score_fingerprint(DEVICE, current)
    assert score == pytest.approx(32 / 73)
    assert risk_level(score) == "medium"


def test_unavailable_webgl_never_matches():
    stored = dict(DEVICE, webgl="unavailable")
    assert score_fingerprint(stored, dict(stored)) == pytest.approx(69 / 73)


def test_partial_fingerprint_is_scored_on_reported_fields():
    stored = {"platform": "Linux x86_64", "canvas": "c4f1e0"}
    assert score_fingerprint(stored, dict(stored)) == 1.0

    # Extra fields on a later request neither help nor hurt
    assert score_fingerprint(stored, dict(DEVICE)) == 1.0

    # platform is 2*5 of the 22 points reported at login
    assert score_fingerprint(stored, {"canvas": "c4f1e0"}) == pytest.approx(12 / 22)
    assert score_fingerprint({"webgl": "unavailable"}, {"webgl": "unavailable"}) == 0.0
    assert score_fingerprint({}, None) == 1.0


def test_parse_fingerprint_accepts_base64_and_fills_headers():
    raw = base64.b64encode(json.dumps({"platform": "Linux x86_64", "unknown": 1}).encode()).decode()
    parsed = parse_fingerprint(raw, user_agent="Mozilla/5.0", accept_language="lt-LT,lt;q=0.9")
    assert parsed == {"platform": "Linux x86_64", "user_agent": "Mozilla/5.0", "language": "lt-LT"}


def test_parse_fingerprint_ignores_garbage():
    assert parse_fingerprint(None) is None
    assert parse_fingerprint("not json at all") is None
    assert parse_fingerprint(json.dumps(["a", "list"])) is None


# ==================== Sessions ====================

@pytest.mark.anyio
async def test_create_and_validate_session(database):
    manager = SessionManager(max_age=3600, idle_timeout=600, max_sessions=3)
    async with AsyncSessionLocal() as db:
        session, token = await manager.create(db, "student-1", "student", "student", "Vilnius Gymnasium")
        await db.commit()

        assert len(session.id) == 64
        payload = manager.decode_token(token)
        assert payload["sub"] == "student-1"
        assert payload["sid"] == session.id
        assert payload["role"] == "student"

        check = await manager.validate(db, token)
        assert check.session.id == session.id
        assert check.risk_level == "low"


@pytest.mark.anyio
async def test_tampered_token_is_rejected(database):
    manager = SessionManager()
    async with AsyncSessionLocal() as db:
        _, token = await manager.create(db, "student-1", "student", "student", None)
        await db.commit()
        forged = jwt.encode(manager.decode_token(token), "someone-elses-key", algorithm="HS256")
        with pytest.raises(SessionError, match="Invalid token"):
            await manager.validate(db, forged)


@pytest.mark.anyio
async def test_session_cap_revokes_oldest(database):
    manager = SessionManager(max_sessions=2)
    async with AsyncSessionLocal() as db:
        tokens = []
        for _ in range(3):
            _, token = await manager.create(db, "teacher-1", "teacher", "teacher", "Vilnius Gymnasium")
            await db.commit()
            tokens.append(token)

        with pytest.raises(SessionError, match="revoked"):
            await manager.validate(db, tokens[0])
        await manager.validate(db, tokens[1])
        await manager.validate(db, tokens[2])


@pytest.mark.anyio
async def test_idle_session_times_out(database):
    manager = SessionManager(idle_timeout=60)
    async with AsyncSessionLocal() as db:
        session, token = await manager.create(db, "student-1", "student", "student", None)
        session.last_activity = utcnow() - timedelta(minutes=5)
        await db.commit()

        with pytest.raises(SessionError, match="inactivity"):
            await manager.validate(db, token)

    async with AsyncSessionLocal() as db:
        assert (await db.get(UserSession, session.id)).revoked_at is not None


@pytest.mark.anyio
async def test_fingerprint_drift_warns_then_revokes(database):
    manager = SessionManager()
    async with AsyncSessionLocal() as db:
        _, token = await manager.create(db, "doctor-1", "teacher", "doctor", "Vilnius Gymnasium", fingerprint=DEVICE)
        await db.commit()

        medium = dict(DEVICE, canvas="ffffff", webgl="other", user_agent="curl/8.0", platform="Win32")
        check = await manager.validate(db, token, fingerprint=medium)
        assert check.risk_level == "medium"
        assert check.issues

        with pytest.raises(SessionError):
            await manager.validate(db, token, fingerprint={"user_agent": "something else"})
        with pytest.raises(SessionError, match="revoked"):
            await manager.validate(db, token, fingerprint=DEVICE)


@pytest.mark.anyio
async def test_revoke_all_keeps_current_session(database):
    manager = SessionManager()
    async with AsyncSessionLocal() as db:
        first, first_token = await manager.create(db, "teacher-1", "teacher", "teacher", None)
        second, second_token = await manager.create(db, "teacher-1", "teacher", "teacher", None)
        await db.commit()

        revoked = await manager.revoke_all_for_user(db, "teacher-1", except_session_id=second.id)
        await db.commit()

        assert revoked == 1
        with pytest.raises(SessionError):
            await manager.validate(db, first_token)
        await manager.validate(db, second_token)


@pytest.mark.anyio
async def test_session_expires_after_absolute_lifetime(database):
    manager = SessionManager(max_age=3600, idle_timeout=600)
    async with AsyncSessionLocal() as db:
        session, token = await manager.create(db, "teacher-1", "teacher", "teacher", "Vilnius Gymnasium")
        # Active a moment ago, but past its absolute lifetime
        session.expires_at = utcnow() - timedelta(seconds=1)
        session.last_activity = utcnow()
        await db.commit()

        with pytest.raises(SessionError, match="Session expired"):
            await manager.validate(db, token)


@pytest.mark.anyio
async def test_refresh_moves_expiry_forward(database):
    manager = SessionManager(max_age=3600)
    async with AsyncSessionLocal() as db:
        session, _ = await manager.create(db, "teacher-1", "teacher", "teacher", "Vilnius Gymnasium")
        session.expires_at = utcnow() + timedelta(minutes=5)
        await db.commit()

        refreshed = await manager.refresh(db, session)
        await db.commit()

        assert as_utc(session.expires_at) > utcnow() + timedelta(minutes=59)
        assert manager.decode_token(refreshed)["exp"] >= int((utcnow() + timedelta(minutes=59)).timestamp())
        check = await manager.validate(db, refreshed)
        assert check.session.id == session.id

    async with AsyncSessionLocal() as db:
        stored = await db.get(UserSession, session.id)
        assert as_utc(stored.expires_at) > utcnow() + timedelta(minutes=59)
