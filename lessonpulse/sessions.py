"""
Server-side sessions: issuance, JWT access tokens, expiry and fingerprint binding
"""
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple
import logging
import secrets

from jose import jwt, JWTError
from pydantic import BaseModel, ConfigDict
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from lessonpulse.audit import security_events
from lessonpulse.config import (
    SECRET_KEY,
    JWT_ALGORITHM,
    SESSION_MAX_AGE_SECONDS,
    SESSION_IDLE_TIMEOUT_SECONDS,
    MAX_SESSIONS_PER_USER,
)
from lessonpulse.database import after_commit
from lessonpulse.db_models import UserSession, utcnow, as_utc
from lessonpulse.fingerprint import score_fingerprint, risk_level
from lessonpulse.realtime import manager

logger = logging.getLogger(__name__)


class SessionError(Exception):
    """Raised when a token or session can no longer be used"""

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class SessionCheck(BaseModel):
    """Outcome of validating a token against its stored session"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    session: UserSession
    risk_level: str = "low"
    fingerprint_score: Optional[float] = None
    issues: List[str] = []


class SessionManager:
    """Creates and validates login sessions stored in the database"""

    def __init__(
        self,
        max_age: int = SESSION_MAX_AGE_SECONDS,
        idle_timeout: int = SESSION_IDLE_TIMEOUT_SECONDS,
        max_sessions: int = MAX_SESSIONS_PER_USER
    ):
        self.max_age = max_age
        self.idle_timeout = idle_timeout
        self.max_sessions = max_sessions

    def issue_token(self, session: UserSession) -> str:
        payload = {
            "sub": session.user_id,
            "sid": session.id,
            "typ": session.user_type,
            "role": session.role,
            "iat": int(as_utc(session.created_at).timestamp()),
            "exp": int(as_utc(session.expires_at).timestamp()),
        }
        return jwt.encode(payload, SECRET_KEY, algorithm=JWT_ALGORITHM)

    def decode_token(self, token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(token, SECRET_KEY, algorithms=[JWT_ALGORITHM])
        except JWTError as e:
            logger.info(f"JWT verification failed: {e}")
            raise SessionError("Invalid token")

    async def create(
        self,
        db: AsyncSession,
        user_id: str,
        user_type: str,
        role: str,
        school: Optional[str],
        fingerprint: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> Tuple[UserSession, str]:
        """Start a session and return it together with its access token"""
        now = utcnow()
        await self._enforce_session_cap(db, user_id, now)

        session = UserSession(
            id=secrets.token_hex(32),
            user_id=user_id,
            user_type=user_type,
            role=role,
            school=school,
            created_at=now,
            expires_at=now + timedelta(seconds=self.max_age),
            last_activity=now,
            fingerprint=fingerprint,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        db.add(session)
        await db.flush()

        await security_events.log(
            "session_created", "low",
            f"Session created for {role}",
            user_id=user_id, ip_address=ip_address, user_agent=user_agent, db=db,
        )
        return session, self.issue_token(session)

    async def _enforce_session_cap(self, db: AsyncSession, user_id: str, now):
        result = await db.execute(
            select(UserSession)
            .where(
                UserSession.user_id == user_id,
                UserSession.revoked_at.is_(None),
                UserSession.expires_at > now,
            )
            .order_by(UserSession.created_at.desc())
        )
        active = list(result.scalars().all())
        # Leave room for the session about to be created
        stale_ids = []
        for stale in active[self.max_sessions - 1:]:
            stale.revoked_at = now
            stale_ids.append(stale.id)
            logger.info(f"Revoked oldest session for user {user_id} (limit {self.max_sessions})")
        if stale_ids:
            after_commit(db, lambda: manager.close_sessions(stale_ids))

    async def validate(
        self,
        db: AsyncSession,
        token: str,
        fingerprint: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        check_fingerprint: bool = True
    ) -> SessionCheck:
        """
        Resolve a token to a live session and slide its idle timer.
        Raises SessionError for anything that must end in 401.
        """
        payload = self.decode_token(token)
        session = await db.get(UserSession, payload.get("sid"))
        if session is None or session.user_id != payload.get("sub"):
            raise SessionError("Session not found")
        if session.revoked_at is not None:
            raise SessionError("Session has been revoked")

        now = utcnow()
        if now > as_utc(session.expires_at):
            raise SessionError("Session expired")
        if (now - as_utc(session.last_activity)).total_seconds() > self.idle_timeout:
            session.revoked_at = now
            # Commit now: the request's own transaction is rolled back on the 401
            await db.commit()
            await manager.close_sessions([session.id])
            raise SessionError("Session timed out due to inactivity")

        check = SessionCheck(session=session)
        if check_fingerprint and session.fingerprint:
            check.fingerprint_score = score_fingerprint(session.fingerprint, fingerprint)
            check.risk_level = risk_level(check.fingerprint_score)
            if check.risk_level != "low":
                detail = f"Session fingerprint mismatch (score: {check.fingerprint_score:.2f})"
                check.issues.append(detail)
                await security_events.log(
                    "fingerprint_mismatch", "high" if check.risk_level == "high" else "medium",
                    detail, user_id=session.user_id, ip_address=ip_address, user_agent=user_agent,
                )
            if check.risk_level == "high":
                session.revoked_at = now
                await db.commit()
                await manager.close_sessions([session.id])
                raise SessionError("Session could not be verified for this device")

        # Written when the request commits
        session.last_activity = now
        return check

    async def refresh(self, db: AsyncSession, session: UserSession) -> str:
        now = utcnow()
        session.expires_at = now + timedelta(seconds=self.max_age)
        session.last_activity = now
        await db.flush()
        return self.issue_token(session)

    async def revoke(self, db: AsyncSession, session: UserSession):
        session.revoked_at = utcnow()
        await db.flush()
        session_id = session.id
        after_commit(db, lambda: manager.close_sessions([session_id]))

    async def revoke_all_for_user(self, db: AsyncSession, user_id: str,
                                  except_session_id: Optional[str] = None) -> int:
        query = select(UserSession.id).where(
            UserSession.user_id == user_id,
            UserSession.revoked_at.is_(None),
        )
        if except_session_id:
            query = query.where(UserSession.id != except_session_id)
        session_ids = list((await db.scalars(query)).all())
        if not session_ids:
            return 0

        await db.execute(
            update(UserSession).where(UserSession.id.in_(session_ids)).values(revoked_at=utcnow())
        )
        after_commit(db, lambda: manager.close_sessions(session_ids))
        return len(session_ids)

    def security_report(self, check: SessionCheck) -> Dict[str, Any]:
        session = check.session
        now = utcnow()
        issues = list(check.issues)
        remaining = (as_utc(session.expires_at) - now).total_seconds()
        if remaining < 15 * 60:
            issues.append("Session expires in less than 15 minutes")
        return {
            "session_id": session.id,
            "valid": not check.issues,
            "risk_level": check.risk_level,
            "fingerprint_bound": bool(session.fingerprint),
            "fingerprint_score": check.fingerprint_score,
            "issues": issues,
            "created_at": session.created_at,
            "expires_at": session.expires_at,
            "idle_timeout_seconds": self.idle_timeout,
        }


session_manager = SessionManager()
