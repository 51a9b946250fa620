"""
Authentication and RBAC dependencies
"""
from fastapi import Depends, HTTPException, Request, Response, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional
from enum import Enum
import logging

from lessonpulse.cache import get_cache
from lessonpulse.config import CSRF_HEADER
from lessonpulse.csrf import csrf_protection
from lessonpulse.database import get_db
from lessonpulse.fingerprint import FINGERPRINT_HEADER, parse_fingerprint
from lessonpulse.sessions import session_manager, SessionError

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


class Role(str, Enum):
    """User roles for RBAC"""
    STUDENT = "student"
    TEACHER = "teacher"
    ADMIN = "admin"
    DOCTOR = "doctor"
    PLATFORM_ADMIN = "platform_admin"


class UserType(str, Enum):
    """Account table the user lives in"""
    STUDENT = "student"
    TEACHER = "teacher"
    PLATFORM_ADMIN = "platform_admin"


class CurrentUser(BaseModel):
    """Authenticated principal resolved from the session"""
    id: str
    user_type: UserType
    role: Role
    school: Optional[str] = None
    session_id: str
    risk_level: str = "low"
    fingerprint_score: Optional[float] = None
    issues: List[str] = []


def client_ip(request: Request) -> Optional[str]:
    """Client address, honouring the first X-Forwarded-For hop set by the proxy"""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def request_fingerprint(request: Request) -> Optional[dict]:
    return parse_fingerprint(
        request.headers.get(FINGERPRINT_HEADER),
        user_agent=request.headers.get("user-agent"),
        accept_language=request.headers.get("accept-language"),
    )


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db)
) -> CurrentUser:
    """Verify the bearer token against its server-side session"""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"}
        )

    try:
        check = await session_manager.validate(
            db,
            credentials.credentials,
            fingerprint=request_fingerprint(request),
            ip_address=client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
    except SessionError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.detail,
            headers={"WWW-Authenticate": "Bearer"}
        )

    session = check.session
    return CurrentUser(
        id=session.user_id,
        user_type=session.user_type,
        role=session.role,
        school=session.school,
        session_id=session.id,
        risk_level=check.risk_level,
        fingerprint_score=check.fingerprint_score,
        issues=check.issues,
    )


def require_role(allowed_roles: List[Role]):
    """
    Dependency to require specific roles
    Usage: current_user: CurrentUser = Depends(require_role([Role.ADMIN, Role.DOCTOR]))
    """
    async def role_checker(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if current_user.role not in allowed_roles:
            logger.warning(
                f"User {current_user.id} with role {current_user.role.value} "
                f"attempted to access endpoint requiring {[r.value for r in allowed_roles]}"
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Insufficient permissions. Required roles: {[r.value for r in allowed_roles]}"
            )
        return current_user

    return role_checker


async def _consume_csrf(request: Request, response: Response, current_user: CurrentUser):
    cache = await get_cache()
    valid = await csrf_protection.validate(
        cache,
        request.headers.get(CSRF_HEADER),
        current_user.session_id,
        user_id=current_user.id,
        ip_address=client_ip(request),
    )
    if not valid:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid or missing CSRF token")

    response.headers[CSRF_HEADER] = await csrf_protection.issue(cache, current_user.session_id)


async def require_csrf(
    request: Request,
    response: Response,
    current_user: CurrentUser = Depends(get_current_user)
) -> CurrentUser:
    """
    Consume the X-CSRF-Token header for state-changing requests.
    A replacement token is returned in the same response header.
    """
    await _consume_csrf(request, response, current_user)
    return current_user


def require_role_with_csrf(allowed_roles: List[Role]):
    """
    Role check, then CSRF check, for mutating endpoints.
    A caller with the wrong role keeps their CSRF token.
    """
    async def checker(
        request: Request,
        response: Response,
        current_user: CurrentUser = Depends(require_role(allowed_roles))
    ) -> CurrentUser:
        await _consume_csrf(request, response, current_user)
        return current_user

    return checker
