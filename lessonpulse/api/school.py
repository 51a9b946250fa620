"""
School endpoints: classes, feedback, analytics, weekly summaries, alerts, students and invitations
"""
from typing import List, Optional
from datetime import date
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from lessonpulse.audit import audit_service, security_events
from lessonpulse.auth import (
    CurrentUser,
    Role,
    client_ip,
    get_current_user,
    require_role,
    require_role_with_csrf,
)
from lessonpulse.database import get_db
from lessonpulse.db_models import Feedback, Student, WeeklySummary
from lessonpulse.distress import DistressAnalysis, analyze_text, crisis_resources
from lessonpulse.models import (
    ClassScheduleCreate,
    ClassScheduleOut,
    FeedbackOut,
    FeedbackSubmission,
    InvitationAccept,
    InvitationCreate,
    InvitationCreated,
    InvitationOut,
    MentalHealthAlertOut,
    StudentOut,
    StudentPasswordReset,
    SubscriptionOut,
    TextAnalysisRequest,
    UserProfile,
    WeeklySummaryCreate,
    WeeklySummaryOut,
)
from lessonpulse.services import (
    account_service,
    alert_service,
    analytics_service,
    class_service,
    feedback_service,
    invitation_service,
    platform_service,
    subscription_service,
)
from lessonpulse.sessions import session_manager
from lessonpulse.api.common import enforce_rate_limit, not_found, service_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["School"])

STAFF = [Role.TEACHER, Role.ADMIN]
CARE_TEAM = [Role.DOCTOR, Role.ADMIN]


def feedback_view(feedback: Feedback) -> FeedbackOut:
    out = FeedbackOut.model_validate(feedback)
    if feedback.is_anonymous:
        out.student_id = None
        out.student_name = None
    return out


def summary_view(summary: WeeklySummary) -> WeeklySummaryOut:
    out = WeeklySummaryOut.model_validate(summary)
    if summary.is_anonymous:
        out.student_id = None
    return out


async def load_student(db: AsyncSession, current_user: CurrentUser) -> Student:
    student = await db.get(Student, current_user.id)
    if student is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Account no longer exists")
    return student


# ==================== Classes ====================

@router.post("/classes", response_model=ClassScheduleOut, status_code=status.HTTP_201_CREATED, tags=["Classes"])
async def create_class(
    data: ClassScheduleCreate,
    current_user: CurrentUser = Depends(require_role_with_csrf(STAFF)),
    db: AsyncSession = Depends(get_db)
):
    """
    Schedule a lesson
    Requires: teacher or admin role
    """
    try:
        schedule = await class_service.create(db, current_user, data)
        await audit_service.log_activity(
            user_id=current_user.id, action="create_class", resource="class_schedule",
            resource_id=schedule.id, db=db,
        )
        return schedule
    except Exception as e:
        raise service_error(e, "create class")


@router.get("/classes", response_model=List[ClassScheduleOut], tags=["Classes"])
async def list_classes(
    since: Optional[date] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    current_user: CurrentUser = Depends(require_role([Role.STUDENT, Role.TEACHER, Role.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """
    Teachers see their own schedule; students see upcoming classes for their grade.
    A student's `since` earlier than today is raised to today.
    """
    if current_user.role == Role.STUDENT:
        student = await load_student(db, current_user)
        return await class_service.list_for_student(db, student.school, student.grade, since=since, limit=limit)
    return await class_service.list_for_teacher(db, current_user.id, skip=skip, limit=limit)


# ==================== Feedback ====================

@router.post("/feedback", response_model=FeedbackOut, status_code=status.HTTP_201_CREATED, tags=["Feedback"])
async def submit_feedback(
    request: Request,
    data: FeedbackSubmission,
    current_user: CurrentUser = Depends(require_role_with_csrf([Role.STUDENT])),
    db: AsyncSession = Depends(get_db)
):
    """
    Submit lesson feedback. Free-text answers are screened for distress.
    Requires: student role
    """
    await enforce_rate_limit(request, "feedback", user_id=current_user.id)
    try:
        student = await load_student(db, current_user)
        feedback = await feedback_service.submit(db, student, data)
        await audit_service.log_activity(
            user_id=current_user.id, action="submit_feedback", resource="feedback",
            resource_id=feedback.id, ip_address=client_ip(request), db=db,
        )
        return FeedbackOut.model_validate(feedback)
    except Exception as e:
        raise service_error(e, "submit feedback")


@router.get("/feedback", response_model=List[FeedbackOut], tags=["Feedback"])
async def list_feedback(
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    current_user: CurrentUser = Depends(require_role(STAFF)),
    db: AsyncSession = Depends(get_db)
):
    """
    Teachers see feedback for their classes, admins for the whole school.
    Anonymous submissions come back without student details.
    """
    if current_user.role == Role.ADMIN:
        rows = await feedback_service.list_for_school(db, current_user.school, skip=skip, limit=limit)
    else:
        rows = await feedback_service.list_for_teacher(db, current_user.id, skip=skip, limit=limit)
    return [feedback_view(row) for row in rows]


@router.get("/analytics/feedback", tags=["Analytics"])
async def feedback_analytics(
    teacher_id: Optional[str] = None,
    current_user: CurrentUser = Depends(require_role(STAFF))
):
    """
    Averages per class and subject plus emotional-state counts
    Requires: teacher (own classes) or admin (school-wide, optionally one teacher)
    """
    try:
        if current_user.role == Role.TEACHER:
            teacher_id = current_user.id
        analytics = await analytics_service.feedback_overview(current_user.school, teacher_id)

        await audit_service.log_activity(
            user_id=current_user.id,
            action="view_analytics",
            resource="analytics"
        )

        return analytics

    except Exception as e:
        raise service_error(e, "retrieve analytics")


# ==================== Weekly summaries ====================

@router.post("/weekly-summaries", response_model=WeeklySummaryOut, status_code=status.HTTP_201_CREATED,
             tags=["Feedback"])
async def submit_weekly_summary(
    request: Request,
    data: WeeklySummaryCreate,
    current_user: CurrentUser = Depends(require_role_with_csrf([Role.STUDENT])),
    db: AsyncSession = Depends(get_db)
):
    await enforce_rate_limit(request, "feedback", user_id=current_user.id)
    try:
        student = await load_student(db, current_user)
        summary = await feedback_service.submit_weekly_summary(db, student, data)
        return WeeklySummaryOut.model_validate(summary)
    except Exception as e:
        raise service_error(e, "submit weekly summary")


@router.get("/weekly-summaries", response_model=List[WeeklySummaryOut], tags=["Feedback"])
async def list_weekly_summaries(
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    current_user: CurrentUser = Depends(require_role(STAFF)),
    db: AsyncSession = Depends(get_db)
):
    rows = await feedback_service.list_weekly_summaries(db, current_user.school, skip=skip, limit=limit)
    return [summary_view(row) for row in rows]


# ==================== Mental health ====================

@router.get("/alerts", response_model=List[MentalHealthAlertOut], tags=["Mental Health"])
async def list_alerts(
    reviewed: Optional[bool] = None,
    min_severity: int = Query(1, ge=1, le=5),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    current_user: CurrentUser = Depends(require_role(CARE_TEAM)),
    db: AsyncSession = Depends(get_db)
):
    """
    Mental-health alerts for the caller's school, most severe first
    Requires: doctor or admin role
    """
    alerts = await alert_service.list_for_school(
        db, current_user.school, reviewed=reviewed, min_severity=min_severity, skip=skip, limit=limit
    )
    await audit_service.log_activity(
        user_id=current_user.id, action="list_alerts", resource="mental_health_alerts", db=db,
    )
    return alerts


@router.post("/alerts/{alert_id}/review", response_model=MentalHealthAlertOut, tags=["Mental Health"])
async def review_alert(
    alert_id: str,
    current_user: CurrentUser = Depends(require_role_with_csrf(CARE_TEAM)),
    db: AsyncSession = Depends(get_db)
):
    alert = await alert_service.mark_reviewed(db, current_user, alert_id)
    if alert is None:
        raise not_found("Alert")
    await audit_service.log_activity(
        user_id=current_user.id, action="review_alert", resource="mental_health_alert",
        resource_id=alert.id, db=db,
    )
    return alert


@router.post("/distress/analyze", response_model=DistressAnalysis, tags=["Mental Health"])
async def analyze_distress(
    data: TextAnalysisRequest,
    current_user: CurrentUser = Depends(get_current_user)
):
    """Run the distress analysis on a piece of text without storing anything"""
    return analyze_text(data.text)


@router.get("/crisis-resources", tags=["Mental Health"])
async def get_crisis_resources(language: str = Query("en", pattern="^(en|lt)$")):
    return crisis_resources(language)


# ==================== Students ====================

@router.get("/students", response_model=List[StudentOut], tags=["Students"])
async def list_students(
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    current_user: CurrentUser = Depends(require_role([Role.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """Students registered at the admin's school"""
    return await platform_service.students(db, school=current_user.school, skip=skip, limit=limit)


@router.post("/students/{student_id}/reset-password", tags=["Students"])
async def reset_student_password(
    request: Request,
    student_id: str,
    data: StudentPasswordReset,
    current_user: CurrentUser = Depends(require_role_with_csrf([Role.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """
    Give a student a temporary password and sign out all of their sessions.
    The student is asked to choose a new password at the next login.
    """
    try:
        student = await account_service.reset_student_password(
            db, current_user.school, student_id, data.temporary_password
        )
        revoked = await session_manager.revoke_all_for_user(db, student.id)
        await security_events.log(
            "password_reset", "medium", f"Student password reset by admin {current_user.id}; {revoked} sessions revoked",
            user_id=student.id, ip_address=client_ip(request), db=db,
        )
        await audit_service.log_activity(
            user_id=current_user.id, action="reset_student_password", resource="student",
            resource_id=student.id, ip_address=client_ip(request), db=db,
        )
        return {"status": "password_reset", "revoked_sessions": revoked}
    except Exception as e:
        raise service_error(e, "reset student password")


# ==================== Invitations ====================

@router.post("/invitations", response_model=InvitationCreated, status_code=status.HTTP_201_CREATED,
             tags=["Invitations"])
async def create_invitation(
    data: InvitationCreate,
    current_user: CurrentUser = Depends(require_role_with_csrf([Role.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """
    Invite a teacher or doctor to the admin's school
    Requires: admin role
    """
    try:
        invitation = await invitation_service.create(db, current_user, data)
        await audit_service.log_activity(
            user_id=current_user.id, action="create_invitation", resource="invitation",
            resource_id=invitation.id, metadata={"role": invitation.role}, db=db,
        )
        return InvitationCreated.model_validate(invitation)
    except Exception as e:
        raise service_error(e, "create invitation")


@router.get("/invitations", response_model=List[InvitationOut], tags=["Invitations"])
async def list_invitations(
    current_user: CurrentUser = Depends(require_role([Role.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    return await invitation_service.list_pending(db, current_user.school)


@router.delete("/invitations/{invitation_id}", response_model=InvitationOut, tags=["Invitations"])
async def revoke_invitation(
    invitation_id: str,
    current_user: CurrentUser = Depends(require_role_with_csrf([Role.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    try:
        invitation = await invitation_service.revoke(db, current_user.school, invitation_id)
        if invitation is None:
            raise not_found("Invitation")
        await audit_service.log_activity(
            user_id=current_user.id, action="revoke_invitation", resource="invitation",
            resource_id=invitation.id, db=db,
        )
        return invitation
    except Exception as e:
        raise service_error(e, "revoke invitation")


@router.post("/invitations/accept", response_model=UserProfile, status_code=status.HTTP_201_CREATED,
             tags=["Invitations"])
async def accept_invitation(request: Request, data: InvitationAccept, db: AsyncSession = Depends(get_db)):
    """Create a teacher or doctor account from an invitation token"""
    await enforce_rate_limit(request, "signup")
    try:
        teacher = await invitation_service.accept(db, data)
        await audit_service.log_activity(
            user_id=teacher.id, action="accept_invitation", resource=teacher.role,
            resource_id=teacher.id, ip_address=client_ip(request), db=db,
        )
        return account_service.profile(teacher, "teacher")
    except Exception as e:
        raise service_error(e, "accept invitation")


# ==================== Subscription ====================

@router.get("/subscription", response_model=Optional[SubscriptionOut], tags=["Subscriptions"])
async def school_subscription(
    current_user: CurrentUser = Depends(require_role([Role.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """Current subscription of the admin's school, if any"""
    return await subscription_service.for_school(db, current_user.school)
