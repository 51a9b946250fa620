"""
Signup, login and session endpoints for students, school staff and platform admins
"""
from typing import Awaitable, Callable, Optional
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from lessonpulse.audit import audit_service, security_events
from lessonpulse.auth import (
    CurrentUser,
    UserType,
    client_ip,
    get_current_user,
    request_fingerprint,
    require_csrf,
)
from lessonpulse.cache import get_cache
from lessonpulse.config import CSRF_HEADER
from lessonpulse.csrf import csrf_protection
from lessonpulse.database import get_db
from lessonpulse.db_models import UserSession
from lessonpulse.models import (
    AuthResponse,
    EmailLogin,
    PasswordChange,
    StudentLogin,
    StudentSignup,
    TeacherSignup,
    UserProfile,
)
from lessonpulse.rate_limit import login_throttle
from lessonpulse.sessions import SessionCheck, session_manager
from lessonpulse.services import account_service
from lessonpulse.api.common import enforce_rate_limit, service_error, too_many_requests

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["Authentication"])

INVALID_CREDENTIALS = "Invalid credentials"


async def _start_session(request: Request, db: AsyncSession, account, user_type: UserType,
                         role: str, school: Optional[str]) -> AuthResponse:
    ip_address = client_ip(request)
    user_agent = request.headers.get("user-agent")
    session, token = await session_manager.create(
        db,
        user_id=account.id,
        user_type=user_type.value,
        role=role,
        school=school,
        fingerprint=request_fingerprint(request),
        ip_address=ip_address,
        user_agent=user_agent,
    )
    csrf_token = await csrf_protection.issue(await get_cache(), session.id)
    return AuthResponse(
        access_token=token,
        expires_at=session.expires_at,
        csrf_token=csrf_token,
        user=account_service.profile(account, user_type.value),
    )


async def _login(
    request: Request,
    db: AsyncSession,
    identifier: str,
    authenticate: Callable[[], Awaitable],
    user_type: UserType
) -> AuthResponse:
    """Shared login flow: IP limit, identifier throttle, credential check, session"""
    ip_address = client_ip(request)
    user_agent = request.headers.get("user-agent")
    await enforce_rate_limit(request, "login")

    cache = await get_cache()
    throttle = await login_throttle.check(cache, identifier)
    if not throttle.allowed:
        raise too_many_requests(throttle.message, throttle.retry_after)

    account = await authenticate()
    if account is None:
        failure = await login_throttle.record_failure(cache, identifier, ip_address=ip_address)
        await security_events.log(
            "login_failed", "medium", f"Failed {user_type.value} login for {identifier}",
            ip_address=ip_address, user_agent=user_agent,
        )
        if not failure.allowed:
            raise too_many_requests(failure.message, failure.retry_after)
        detail = INVALID_CREDENTIALS
        if failure.remaining <= 2:
            detail = f"{INVALID_CREDENTIALS}. {failure.remaining} attempts remaining"
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)

    await login_throttle.reset(cache, identifier)
    role = "student" if user_type == UserType.STUDENT else getattr(account, "role", "platform_admin")
    school = getattr(account, "school", None)
    response = await _start_session(request, db, account, user_type, role, school)
    await security_events.log(
        "login_success", "low", f"{role} logged in",
        user_id=account.id, ip_address=ip_address, user_agent=user_agent, db=db,
    )
    return response


def _student_identifier(full_name: str, school: str, grade: str) -> str:
    return f"student:{full_name}|{school}|{grade}"


@router.post("/students/signup", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
async def student_signup(request: Request, data: StudentSignup, db: AsyncSession = Depends(get_db)):
    """Register a student and start their first session"""
    await enforce_rate_limit(request, "signup")
    try:
        student = await account_service.signup_student(db, data)
        response = await _start_session(request, db, student, UserType.STUDENT, "student", student.school)
        await audit_service.log_activity(
            user_id=student.id, action="signup", resource="student", resource_id=student.id,
            ip_address=client_ip(request), db=db,
        )
        return response
    except Exception as e:
        raise service_error(e, "register student")


@router.post("/students/login", response_model=AuthResponse)
async def student_login(request: Request, data: StudentLogin, db: AsyncSession = Depends(get_db)):
    """Login with full name, school, grade and password"""
    return await _login(
        request, db,
        _student_identifier(data.full_name, data.school, data.grade),
        lambda: account_service.authenticate_student(db, data.full_name, data.school, data.grade, data.password),
        UserType.STUDENT,
    )


@router.post("/teachers/signup", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
async def teacher_signup(request: Request, data: TeacherSignup, db: AsyncSession = Depends(get_db)):
    """
    Register a teacher or school admin.
    Only the first admin of a school can sign up directly; doctors need an invitation.
    """
    await enforce_rate_limit(request, "signup")
    try:
        teacher = await account_service.signup_teacher(db, data)
        response = await _start_session(request, db, teacher, UserType.TEACHER, teacher.role, teacher.school)
        await audit_service.log_activity(
            user_id=teacher.id, action="signup", resource=teacher.role, resource_id=teacher.id,
            ip_address=client_ip(request), db=db,
        )
        return response
    except Exception as e:
        raise service_error(e, "register teacher")


@router.post("/teachers/login", response_model=AuthResponse)
async def teacher_login(request: Request, data: EmailLogin, db: AsyncSession = Depends(get_db)):
    """Login for teachers, school admins and doctors"""
    return await _login(
        request, db, data.email,
        lambda: account_service.authenticate_teacher(db, data.email, data.password),
        UserType.TEACHER,
    )


@router.post("/platform/login", response_model=AuthResponse)
async def platform_login(request: Request, data: EmailLogin, db: AsyncSession = Depends(get_db)):
    return await _login(
        request, db, f"platform:{data.email}",
        lambda: account_service.authenticate_platform_admin(db, data.email, data.password),
        UserType.PLATFORM_ADMIN,
    )


@router.get("/me", response_model=UserProfile)
async def me(current_user: CurrentUser = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    """Get current user profile"""
    account = await account_service.load_account(db, current_user)
    if account is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Account no longer exists")
    await audit_service.log_activity(
        user_id=current_user.id, action="view_profile", resource="user_profile", db=db,
    )
    return account_service.profile(account, current_user.user_type.value)


@router.get("/session")
async def session_report(current_user: CurrentUser = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    """Security report for the calling session"""
    session = await db.get(UserSession, current_user.session_id)
    check = SessionCheck(
        session=session,
        risk_level=current_user.risk_level,
        fingerprint_score=current_user.fingerprint_score,
        issues=list(current_user.issues),
    )
    return session_manager.security_report(check)


@router.get("/csrf-token")
async def csrf_token(response: Response, current_user: CurrentUser = Depends(get_current_user)):
    token = await csrf_protection.issue(await get_cache(), current_user.session_id)
    response.headers[CSRF_HEADER] = token
    return {"csrf_token": token}


@router.post("/refresh")
async def refresh(current_user: CurrentUser = Depends(require_csrf), db: AsyncSession = Depends(get_db)):
    """Extend the session and return a new access token"""
    session = await db.get(UserSession, current_user.session_id)
    token = await session_manager.refresh(db, session)
    return {"access_token": token, "token_type": "bearer", "expires_at": session.expires_at}


@router.post("/logout")
async def logout(request: Request, current_user: CurrentUser = Depends(require_csrf),
                 db: AsyncSession = Depends(get_db)):
    session = await db.get(UserSession, current_user.session_id)
    await session_manager.revoke(db, session)
    await security_events.log(
        "logout", "low", f"{current_user.role.value} logged out",
        user_id=current_user.id, ip_address=client_ip(request), db=db,
    )
    return {"status": "logged_out"}


@router.post("/change-password")
async def change_password(
    request: Request,
    data: PasswordChange,
    current_user: CurrentUser = Depends(require_csrf),
    db: AsyncSession = Depends(get_db)
):
    """Change the password and sign out every other session of the account"""
    try:
        await account_service.change_password(db, current_user, data.current_password, data.new_password)
        revoked = await session_manager.revoke_all_for_user(
            db, current_user.id, except_session_id=current_user.session_id
        )
        await security_events.log(
            "password_changed", "medium", f"Password changed; {revoked} other sessions revoked",
            user_id=current_user.id, ip_address=client_ip(request), db=db,
        )
        return {"status": "password_changed", "revoked_sessions": revoked}
    except Exception as e:
        raise service_error(e, "change password")
