"""
Service layer for business logic
"""
from typing import List, Optional, Dict, Any
from datetime import date, timedelta
from functools import lru_cache
import logging
import secrets

from sqlalchemy import select, func, update, distinct
from sqlalchemy.ext.asyncio import AsyncSession

from lessonpulse.auth import CurrentUser, Role
from lessonpulse.cache import cached_per_school, invalidate_school
from lessonpulse.config import (
    ANALYTICS_CACHE_TTL,
    INVITATION_TTL_DAYS,
    TRIAL_DAYS,
)
from lessonpulse.database import AsyncSessionLocal, after_commit, session_scope
from lessonpulse.db_models import (
    ChatMessage,
    ClassSchedule,
    DiscountCode,
    Feedback,
    Invitation,
    LiveChatSession,
    MentalHealthAlert,
    PlatformAdmin,
    Student,
    Subscription,
    Teacher,
    WeeklySummary,
    as_utc,
    utcnow,
)
from lessonpulse.distress import ALERT_SEVERITY, analyze_text
from lessonpulse.models import (
    ChatStatus,
    ClassScheduleCreate,
    DiscountCodeCreate,
    FeedbackSubmission,
    InvitationAccept,
    InvitationCreate,
    StudentSignup,
    SubscriptionCreate,
    SubscriptionStatus,
    TeacherRole,
    TeacherSignup,
    UserProfile,
    WeeklySummaryCreate,
)
from lessonpulse.passwords import hash_password, verify_password, validate_password_strength
from lessonpulse.pricing import apply_discount, calculate_pricing
from lessonpulse.realtime import manager, chat_channel, doctors_channel

logger = logging.getLogger(__name__)

ANONYMOUS_NAME = "Anonymous"


class StateConflictError(ValueError):
    """The requested change is not allowed in the record's current state"""


@lru_cache(maxsize=1)
def _dummy_hash() -> str:
    return hash_password(secrets.token_urlsafe(16))


def _check_password_strength(password: str):
    problems = validate_password_strength(password)
    if problems:
        raise ValueError("; ".join(problems))


class AccountService:
    """Signup, credential checks and profile lookups for every account type"""

    async def signup_student(self, db: AsyncSession, data: StudentSignup) -> Student:
        _check_password_strength(data.password)
        existing = await db.scalar(
            select(Student).where(
                Student.full_name == data.full_name,
                Student.school == data.school,
                Student.grade == data.grade,
            )
        )
        if existing:
            raise StateConflictError("A student with this name is already registered in this class")

        student = Student(
            full_name=data.full_name,
            school=data.school,
            grade=data.grade,
            password_hash=hash_password(data.password),
            last_password_change=utcnow(),
        )
        db.add(student)
        await db.flush()
        logger.info(f"Student {student.id} registered at {student.school}")
        return student

    async def signup_teacher(self, db: AsyncSession, data: TeacherSignup) -> Teacher:
        if data.role == TeacherRole.DOCTOR:
            raise ValueError("Doctors join a school through an invitation")
        _check_password_strength(data.password)

        if await db.scalar(select(Teacher).where(Teacher.email == data.email)):
            raise StateConflictError("An account with this email already exists")

        if data.role == TeacherRole.ADMIN:
            existing_admin = await db.scalar(
                select(Teacher).where(Teacher.school == data.school, Teacher.role == "admin")
            )
            if existing_admin:
                raise StateConflictError("This school already has an administrator")

        teacher = Teacher(
            name=data.name,
            email=data.email,
            school=data.school,
            role=data.role.value,
            password_hash=hash_password(data.password),
        )
        db.add(teacher)
        await db.flush()
        logger.info(f"{teacher.role} {teacher.id} registered at {teacher.school}")
        return teacher

    async def authenticate_student(self, db: AsyncSession, full_name: str, school: str,
                                   grade: str, password: str) -> Optional[Student]:
        student = await db.scalar(
            select(Student).where(
                Student.full_name == full_name,
                Student.school == school,
                Student.grade == grade,
            )
        )
        return self._verified(student, password)

    async def authenticate_teacher(self, db: AsyncSession, email: str, password: str) -> Optional[Teacher]:
        teacher = await db.scalar(select(Teacher).where(Teacher.email == email))
        return self._verified(teacher, password)

    async def authenticate_platform_admin(self, db: AsyncSession, email: str,
                                          password: str) -> Optional[PlatformAdmin]:
        admin = await db.scalar(select(PlatformAdmin).where(PlatformAdmin.email == email))
        return self._verified(admin, password)

    @staticmethod
    def _verified(account, password: str):
        if account is None:
            # Same bcrypt cost whether or not the account exists
            verify_password(password, _dummy_hash())
            return None
        return account if verify_password(password, account.password_hash) else None

    async def ensure_platform_admin(self, email: str, password: str, name: str):
        """Create the configured platform admin on first start"""
        async with session_scope() as session:
            existing = await session.scalar(select(PlatformAdmin).where(PlatformAdmin.email == email))
            if existing:
                return
            session.add(PlatformAdmin(email=email, name=name, password_hash=hash_password(password)))
            logger.info(f"Seeded platform admin {email}")

    async def load_account(self, db: AsyncSession, user: CurrentUser):
        model = {"student": Student, "teacher": Teacher, "platform_admin": PlatformAdmin}[user.user_type.value]
        return await db.get(model, user.id)

    def profile(self, account, user_type: str) -> UserProfile:
        if isinstance(account, Student):
            return UserProfile(
                id=account.id, user_type=user_type, role="student", name=account.full_name,
                school=account.school, grade=account.grade,
                needs_password_change=bool(account.needs_password_change),
            )
        if isinstance(account, Teacher):
            return UserProfile(
                id=account.id, user_type=user_type, role=account.role, name=account.name,
                school=account.school, email=account.email,
            )
        return UserProfile(
            id=account.id, user_type=user_type, role="platform_admin", name=account.name, email=account.email,
        )

    async def change_password(self, db: AsyncSession, user: CurrentUser, current: str, new: str):
        account = await self.load_account(db, user)
        if account is None or not verify_password(current, account.password_hash):
            raise PermissionError("Current password is incorrect")
        if current == new:
            raise ValueError("New password must be different from the current password")
        _check_password_strength(new)

        account.password_hash = hash_password(new)
        if isinstance(account, Student):
            account.needs_password_change = False
            account.last_password_change = utcnow()
        await db.flush()

    async def reset_student_password(self, db: AsyncSession, school: str, student_id: str,
                                     temporary_password: str) -> Student:
        """Set a temporary password that the student has to change after logging in"""
        student = await db.get(Student, student_id)
        if student is None or student.school != school:
            raise LookupError("Student not found")
        _check_password_strength(temporary_password)

        student.password_hash = hash_password(temporary_password)
        student.needs_password_change = True
        student.last_password_change = utcnow()
        await db.flush()
        logger.info(f"Password of student {student.id} reset by school admin at {school}")
        return student


class InvitationService:
    """Admins inviting teachers and doctors into their school"""

    async def create(self, db: AsyncSession, admin: CurrentUser, data: InvitationCreate) -> Invitation:
        if await db.scalar(select(Teacher).where(Teacher.email == data.email)):
            raise StateConflictError("An account with this email already exists")

        pending = await db.scalar(
            select(Invitation).where(
                Invitation.email == data.email,
                Invitation.school == admin.school,
                Invitation.status == "pending",
            )
        )
        if pending and as_utc(pending.expires_at) > utcnow():
            raise StateConflictError("A pending invitation already exists for this email")
        if pending:
            pending.status = "revoked"

        invitation = Invitation(
            email=data.email,
            school=admin.school,
            role=data.role.value,
            specialization=data.specialization,
            invite_token=secrets.token_urlsafe(32),
            invited_by=admin.id,
            expires_at=utcnow() + timedelta(days=INVITATION_TTL_DAYS),
        )
        db.add(invitation)
        await db.flush()
        # Delivery is handled by the mail integration reading pending invitations
        logger.info(f"Invitation {invitation.id} created for {invitation.role} at {invitation.school}")
        return invitation

    async def list_pending(self, db: AsyncSession, school: str) -> List[Invitation]:
        result = await db.execute(
            select(Invitation)
            .where(Invitation.school == school, Invitation.status == "pending")
            .order_by(Invitation.created_at.desc())
        )
        return list(result.scalars().all())

    async def revoke(self, db: AsyncSession, school: str, invitation_id: str) -> Optional[Invitation]:
        invitation = await db.get(Invitation, invitation_id)
        if invitation is None or invitation.school != school:
            return None
        if invitation.status != "pending":
            raise StateConflictError(f"Invitation is already {invitation.status}")
        invitation.status = "revoked"
        await db.flush()
        return invitation

    async def accept(self, db: AsyncSession, data: InvitationAccept) -> Teacher:
        invitation = await db.scalar(select(Invitation).where(Invitation.invite_token == data.token))
        if invitation is None or invitation.status != "pending":
            raise ValueError("Invitation is invalid or no longer available")
        if as_utc(invitation.expires_at) <= utcnow():
            raise ValueError("Invitation has expired")
        _check_password_strength(data.password)
        if await db.scalar(select(Teacher).where(Teacher.email == invitation.email)):
            raise StateConflictError("An account with this email already exists")

        teacher = Teacher(
            name=data.name,
            email=invitation.email,
            school=invitation.school,
            role=invitation.role,
            specialization=invitation.specialization,
            license_number=data.license_number,
            password_hash=hash_password(data.password),
        )
        db.add(teacher)
        invitation.status = "accepted"
        invitation.accepted_at = utcnow()
        await db.flush()
        logger.info(f"Invitation {invitation.id} accepted; created {teacher.role} {teacher.id}")
        return teacher


class ClassService:
    """Lesson schedules"""

    async def create(self, db: AsyncSession, teacher: CurrentUser, data: ClassScheduleCreate) -> ClassSchedule:
        schedule = ClassSchedule(
            teacher_id=teacher.id,
            school=teacher.school,
            grade=data.grade,
            subject=data.subject,
            lesson_topic=data.lesson_topic,
            class_date=data.class_date,
            class_time=data.class_time,
            duration_minutes=data.duration_minutes,
            description=data.description,
        )
        db.add(schedule)
        await db.flush()
        return schedule

    async def list_for_teacher(self, db: AsyncSession, teacher_id: str,
                               skip: int = 0, limit: int = 50) -> List[ClassSchedule]:
        result = await db.execute(
            select(ClassSchedule)
            .where(ClassSchedule.teacher_id == teacher_id)
            .order_by(ClassSchedule.class_date.desc(), ClassSchedule.class_time.desc())
            .offset(skip).limit(limit)
        )
        return list(result.scalars().all())

    async def list_for_student(self, db: AsyncSession, school: str, grade: str,
                               since: Optional[date] = None, limit: int = 50) -> List[ClassSchedule]:
        today = date.today()
        since = max(since, today) if since else today
        result = await db.execute(
            select(ClassSchedule)
            .where(
                ClassSchedule.school == school,
                ClassSchedule.grade == grade,
                ClassSchedule.class_date >= since,
            )
            .order_by(ClassSchedule.class_date, ClassSchedule.class_time)
            .limit(limit)
        )
        return list(result.scalars().all())


class AlertService:
    """Mental-health alerts raised from student text"""

    async def raise_if_distressed(
        self,
        db: AsyncSession,
        text: Optional[str],
        source_table: str,
        source_id: str,
        school: str,
        grade: str,
        student_id: Optional[str],
        student_name: str
    ) -> Optional[MentalHealthAlert]:
        if not text:
            return None
        analysis = analyze_text(text)
        if not analysis.needs_alert:
            return None

        alert = MentalHealthAlert(
            student_id=student_id,
            student_name=student_name,
            school=school,
            grade=grade,
            source_table=source_table,
            source_id=source_id,
            content=text,
            alert_type="self_harm" if analysis.risk_level == "critical" else "distress",
            severity_level=ALERT_SEVERITY[analysis.risk_level],
            analysis=analysis.model_dump(),
        )
        db.add(alert)
        await db.flush()
        logger.warning(
            f"Mental health alert {alert.id} ({analysis.risk_level}) raised from {source_table} at {school}"
        )
        return alert

    async def list_for_school(self, db: AsyncSession, school: str, reviewed: Optional[bool] = None,
                              min_severity: int = 1, skip: int = 0, limit: int = 50) -> List[MentalHealthAlert]:
        query = select(MentalHealthAlert).where(
            MentalHealthAlert.school == school,
            MentalHealthAlert.severity_level >= min_severity,
        )
        if reviewed is not None:
            query = query.where(MentalHealthAlert.is_reviewed == reviewed)
        result = await db.execute(
            query.order_by(MentalHealthAlert.severity_level.desc(), MentalHealthAlert.created_at.desc())
            .offset(skip).limit(limit)
        )
        return list(result.scalars().all())

    async def mark_reviewed(self, db: AsyncSession, reviewer: CurrentUser,
                            alert_id: str) -> Optional[MentalHealthAlert]:
        alert = await db.get(MentalHealthAlert, alert_id)
        if alert is None or alert.school != reviewer.school:
            return None
        if not alert.is_reviewed:
            alert.is_reviewed = True
            alert.reviewed_by = reviewer.id
            alert.reviewed_at = utcnow()
            await db.flush()
        return alert


class FeedbackService:
    """Lesson feedback and weekly summaries"""

    async def submit(self, db: AsyncSession, student: Student, data: FeedbackSubmission) -> Feedback:
        schedule = await db.get(ClassSchedule, data.class_schedule_id)
        if schedule is None:
            raise LookupError("Class not found")
        if schedule.school != student.school or schedule.grade != student.grade:
            raise PermissionError("This class is not part of your school and grade")

        duplicate = await db.scalar(
            select(Feedback).where(
                Feedback.class_schedule_id == schedule.id,
                Feedback.student_id == student.id,
            )
        )
        if duplicate:
            raise StateConflictError("Feedback for this class has already been submitted")

        feedback = Feedback(
            class_schedule_id=schedule.id,
            student_id=student.id,
            student_name=None if data.is_anonymous else student.full_name,
            is_anonymous=data.is_anonymous,
            understanding=data.understanding,
            interest=data.interest,
            educational_growth=data.educational_growth,
            emotional_state=data.emotional_state,
            what_went_well=data.what_went_well,
            suggestions=data.suggestions,
            additional_comments=data.additional_comments,
        )
        db.add(feedback)
        await db.flush()

        text = " ".join(
            part for part in (data.what_went_well, data.suggestions, data.additional_comments) if part
        )
        await alert_service.raise_if_distressed(
            db, text, "feedback", feedback.id, student.school, student.grade,
            None if data.is_anonymous else student.id,
            ANONYMOUS_NAME if data.is_anonymous else student.full_name,
        )
        school = student.school
        after_commit(db, lambda: invalidate_school("analytics", school))
        return feedback

    async def list_for_teacher(self, db: AsyncSession, teacher_id: str,
                               skip: int = 0, limit: int = 50) -> List[Feedback]:
        result = await db.execute(
            select(Feedback)
            .join(ClassSchedule, Feedback.class_schedule_id == ClassSchedule.id)
            .where(ClassSchedule.teacher_id == teacher_id)
            .order_by(Feedback.submitted_at.desc())
            .offset(skip).limit(limit)
        )
        return list(result.scalars().all())

    async def list_for_school(self, db: AsyncSession, school: str,
                              skip: int = 0, limit: int = 50) -> List[Feedback]:
        result = await db.execute(
            select(Feedback)
            .join(ClassSchedule, Feedback.class_schedule_id == ClassSchedule.id)
            .where(ClassSchedule.school == school)
            .order_by(Feedback.submitted_at.desc())
            .offset(skip).limit(limit)
        )
        return list(result.scalars().all())

    async def submit_weekly_summary(self, db: AsyncSession, student: Student,
                                    data: WeeklySummaryCreate) -> WeeklySummary:
        if not data.emotional_concerns and not data.academic_concerns:
            raise ValueError("A weekly summary needs emotional or academic concerns")

        duplicate = await db.scalar(
            select(WeeklySummary).where(
                WeeklySummary.student_id == student.id,
                WeeklySummary.week_start_date == data.week_start_date,
            )
        )
        if duplicate:
            raise StateConflictError("A summary for this week has already been submitted")

        summary = WeeklySummary(
            student_id=student.id,
            student_name=ANONYMOUS_NAME if data.is_anonymous else student.full_name,
            school=student.school,
            grade=student.grade,
            week_start_date=data.week_start_date,
            emotional_concerns=data.emotional_concerns,
            academic_concerns=data.academic_concerns,
            is_anonymous=data.is_anonymous,
        )
        db.add(summary)
        await db.flush()

        text = " ".join(part for part in (data.emotional_concerns, data.academic_concerns) if part)
        await alert_service.raise_if_distressed(
            db, text, "weekly_summaries", summary.id, student.school, student.grade,
            None if data.is_anonymous else student.id, summary.student_name,
        )
        return summary

    async def list_weekly_summaries(self, db: AsyncSession, school: str,
                                    skip: int = 0, limit: int = 50) -> List[WeeklySummary]:
        result = await db.execute(
            select(WeeklySummary)
            .where(WeeklySummary.school == school)
            .order_by(WeeklySummary.week_start_date.desc(), WeeklySummary.submitted_at.desc())
            .offset(skip).limit(limit)
        )
        return list(result.scalars().all())


class ChatService:
    """Live support chat between students and school doctors"""

    async def create_session(self, db: AsyncSession, student: Student, is_anonymous: bool) -> LiveChatSession:
        open_session = await db.scalar(
            select(LiveChatSession).where(
                LiveChatSession.student_id == student.id,
                LiveChatSession.status != ChatStatus.ENDED.value,
            )
        )
        if open_session:
            raise StateConflictError("You already have an open chat session")

        session = LiveChatSession(
            student_id=student.id,
            student_name=ANONYMOUS_NAME if is_anonymous else student.full_name,
            school=student.school,
            grade=student.grade,
            is_anonymous=is_anonymous,
            status=ChatStatus.WAITING.value,
        )
        db.add(session)
        await db.flush()
        await self._notify_available_doctors(db, session)
        return session

    async def _notify_available_doctors(self, db: AsyncSession, session: LiveChatSession):
        doctors = await self.available_doctors(db, session.school)
        logger.info(f"Chat session {session.id} waiting; {len(doctors)} available doctors at {session.school}")
        event = {
            "id": session.id,
            "student_name": session.student_name,
            "grade": session.grade,
            "is_anonymous": session.is_anonymous,
            "created_at": session.created_at,
        }
        channel = doctors_channel(session.school)
        after_commit(db, lambda: manager.broadcast(channel, "session_waiting", event))

    async def available_doctors(self, db: AsyncSession, school: str) -> List[Teacher]:
        result = await db.execute(
            select(Teacher).where(
                Teacher.school == school,
                Teacher.role == "doctor",
                Teacher.is_available.is_(True),
            ).order_by(Teacher.name)
        )
        return list(result.scalars().all())

    async def set_availability(self, db: AsyncSession, doctor_id: str, is_available: bool) -> Teacher:
        doctor = await db.get(Teacher, doctor_id)
        doctor.is_available = is_available
        await db.flush()
        return doctor

    async def list_sessions(self, db: AsyncSession, school: str,
                            status: Optional[ChatStatus] = None) -> List[LiveChatSession]:
        query = select(LiveChatSession).where(LiveChatSession.school == school)
        if status is not None:
            query = query.where(LiveChatSession.status == status.value)
        result = await db.execute(query.order_by(LiveChatSession.created_at))
        return list(result.scalars().all())

    async def list_for_student(self, db: AsyncSession, student_id: str) -> List[LiveChatSession]:
        result = await db.execute(
            select(LiveChatSession)
            .where(LiveChatSession.student_id == student_id)
            .order_by(LiveChatSession.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_for_participant(self, db: AsyncSession, user: CurrentUser,
                                  session_id: str) -> Optional[LiveChatSession]:
        """Session visible to the student who opened it or to a doctor of the same school"""
        session = await db.get(LiveChatSession, session_id)
        if session is None:
            return None
        if user.role == Role.STUDENT and session.student_id == user.id:
            return session
        if user.role == Role.DOCTOR and session.school == user.school:
            if session.doctor_id in (None, user.id):
                return session
        return None

    async def join(self, db: AsyncSession, doctor: CurrentUser, session_id: str) -> LiveChatSession:
        now = utcnow()
        result = await db.execute(
            update(LiveChatSession)
            .where(
                LiveChatSession.id == session_id,
                LiveChatSession.school == doctor.school,
                LiveChatSession.status == ChatStatus.WAITING.value,
            )
            .values(doctor_id=doctor.id, status=ChatStatus.ACTIVE.value, started_at=now)
        )
        session = await db.get(LiveChatSession, session_id)
        if session is None or session.school != doctor.school:
            raise LookupError("Chat session not found")
        if result.rowcount == 0:
            raise StateConflictError(f"Chat session is {session.status}, not waiting")

        await db.refresh(session)
        channel = chat_channel(session.id)
        event = {"status": session.status, "doctor_id": session.doctor_id, "started_at": session.started_at}

        async def announce():
            await manager.restrict_to_doctor(channel, doctor.id)
            await manager.broadcast(channel, "status", event)

        after_commit(db, announce)
        logger.info(f"Doctor {doctor.id} joined chat session {session.id}")
        return session

    async def post_message(self, db: AsyncSession, user: CurrentUser, session: LiveChatSession,
                           sender_name: str, text: str) -> ChatMessage:
        if session.status == ChatStatus.ENDED.value:
            raise StateConflictError("Chat session has ended")

        if user.role == Role.DOCTOR:
            if session.status != ChatStatus.ACTIVE.value or session.doctor_id != user.id:
                raise StateConflictError("Join the chat session before sending messages")
            sender_type = "doctor"
        else:
            sender_type = "student"
            if session.is_anonymous:
                sender_name = ANONYMOUS_NAME

        message = ChatMessage(
            session_id=session.id,
            sender_type=sender_type,
            sender_name=sender_name,
            message=text,
        )
        db.add(message)
        await db.flush()

        if sender_type == "student":
            await alert_service.raise_if_distressed(
                db, text, "chat_messages", message.id, session.school, session.grade or "",
                None if session.is_anonymous else session.student_id, session.student_name,
            )

        event = {
            "id": message.id,
            "session_id": session.id,
            "sender_type": message.sender_type,
            "sender_name": message.sender_name,
            "message": message.message,
            "sent_at": message.sent_at,
        }
        channel = chat_channel(session.id)
        after_commit(db, lambda: manager.broadcast(channel, "message", event))
        return message

    async def end(self, db: AsyncSession, session: LiveChatSession) -> LiveChatSession:
        if session.status == ChatStatus.ENDED.value:
            raise StateConflictError("Chat session has already ended")
        session.status = ChatStatus.ENDED.value
        session.ended_at = utcnow()
        await db.flush()
        channel = chat_channel(session.id)
        event = {"status": session.status, "ended_at": session.ended_at}
        after_commit(db, lambda: manager.broadcast(channel, "status", event))
        return session

    async def messages(self, db: AsyncSession, session_id: str) -> List[ChatMessage]:
        result = await db.execute(
            select(ChatMessage).where(ChatMessage.session_id == session_id).order_by(ChatMessage.sent_at)
        )
        return list(result.scalars().all())


class SubscriptionService:
    """School subscriptions and discount codes"""

    async def list_subscriptions(self, db: AsyncSession, status: Optional[SubscriptionStatus] = None,
                   skip: int = 0, limit: int = 50) -> List[Subscription]:
        query = select(Subscription)
        if status is not None:
            query = query.where(Subscription.status == status.value)
        result = await db.execute(query.order_by(Subscription.created_at.desc()).offset(skip).limit(limit))
        return list(result.scalars().all())

    async def for_school(self, db: AsyncSession, school: str) -> Optional[Subscription]:
        return await db.scalar(
            select(Subscription)
            .where(Subscription.school_name == school)
            .order_by(Subscription.created_at.desc())
            .limit(1)
        )

    async def create(self, db: AsyncSession, data: SubscriptionCreate) -> Subscription:
        quote = calculate_pricing(data.plan_type, data.teacher_count, data.is_annual)
        now = utcnow()

        subscription = Subscription(
            school_name=data.school_name,
            plan_type=data.plan_type,
            status=SubscriptionStatus.TRIALING.value if data.start_trial else SubscriptionStatus.ACTIVE.value,
            amount=quote.final_price,
            original_amount=quote.final_price,
            currency=data.currency,
            teacher_count=data.teacher_count,
            is_annual=data.is_annual,
            current_period_start=now,
            current_period_end=now + timedelta(days=TRIAL_DAYS if data.start_trial else (365 if data.is_annual else 30)),
        )

        if data.discount_code:
            code = await self.validate_discount(db, data.discount_code, data.school_name)
            subscription.amount = apply_discount(quote.final_price, code.discount_percent)
            subscription.discount_code_id = code.id
            if code.duration_months:
                subscription.discount_expires_at = now + timedelta(days=30 * code.duration_months)
            code.current_uses = (code.current_uses or 0) + 1

        db.add(subscription)
        await db.flush()
        logger.info(f"Subscription {subscription.id} created for {subscription.school_name} ({subscription.status})")
        return subscription

    async def update_status(self, db: AsyncSession, subscription_id: str,
                            status: SubscriptionStatus) -> Optional[Subscription]:
        subscription = await db.get(Subscription, subscription_id)
        if subscription is None:
            return None
        if subscription.status == SubscriptionStatus.CANCELED.value and status != SubscriptionStatus.CANCELED:
            raise StateConflictError("Canceled subscriptions cannot be reactivated")
        subscription.status = status.value
        subscription.updated_at = utcnow()
        await db.flush()
        return subscription

    async def create_discount(self, db: AsyncSession, creator_id: str, data: DiscountCodeCreate) -> DiscountCode:
        code_value = data.code.upper()
        if await db.scalar(select(DiscountCode).where(DiscountCode.code == code_value)):
            raise StateConflictError("Discount code already exists")
        code = DiscountCode(
            code=code_value,
            description=data.description,
            discount_percent=data.discount_percent,
            duration_months=data.duration_months,
            max_uses=data.max_uses,
            expires_at=data.expires_at,
            school_name=data.school_name,
            created_by=creator_id,
        )
        db.add(code)
        await db.flush()
        return code

    async def list_discounts(self, db: AsyncSession) -> List[DiscountCode]:
        result = await db.execute(select(DiscountCode).order_by(DiscountCode.created_at.desc()))
        return list(result.scalars().all())

    async def deactivate_discount(self, db: AsyncSession, code_id: str) -> Optional[DiscountCode]:
        code = await db.get(DiscountCode, code_id)
        if code is None:
            return None
        code.is_active = False
        await db.flush()
        return code

    async def validate_discount(self, db: AsyncSession, code_value: str, school_name: str) -> DiscountCode:
        code = await db.scalar(select(DiscountCode).where(DiscountCode.code == code_value.upper()))
        if code is None or not code.is_active:
            raise ValueError("Discount code is not valid")
        if code.expires_at and as_utc(code.expires_at) <= utcnow():
            raise ValueError("Discount code has expired")
        if code.max_uses is not None and (code.current_uses or 0) >= code.max_uses:
            raise ValueError("Discount code has reached its usage limit")
        if code.school_name and code.school_name.lower() != school_name.lower():
            raise ValueError("Discount code is not valid for this school")
        return code


class AnalyticsService:
    """Service for analytics and reporting"""

    @cached_per_school("analytics", ttl=ANALYTICS_CACHE_TTL)
    async def feedback_overview(self, school: str, teacher_id: Optional[str] = None) -> Dict[str, Any]:
        """Averages per class and per subject plus the emotional-state distribution"""
        rating_columns = (
            func.count(Feedback.id),
            func.avg(Feedback.understanding),
            func.avg(Feedback.interest),
            func.avg(Feedback.educational_growth),
        )

        def scoped(query):
            query = query.join(ClassSchedule, Feedback.class_schedule_id == ClassSchedule.id)
            query = query.where(ClassSchedule.school == school)
            if teacher_id:
                query = query.where(ClassSchedule.teacher_id == teacher_id)
            return query

        async with AsyncSessionLocal() as session:
            totals = (await session.execute(scoped(select(*rating_columns)))).one()
            by_subject = await session.execute(
                scoped(select(ClassSchedule.subject, *rating_columns)).group_by(ClassSchedule.subject)
            )
            by_class = await session.execute(
                scoped(select(
                    ClassSchedule.id, ClassSchedule.subject, ClassSchedule.lesson_topic,
                    ClassSchedule.class_date, *rating_columns,
                )).group_by(
                    ClassSchedule.id, ClassSchedule.subject, ClassSchedule.lesson_topic, ClassSchedule.class_date,
                ).order_by(ClassSchedule.class_date.desc())
            )
            emotional = await session.execute(
                scoped(select(Feedback.emotional_state, func.count(Feedback.id))).group_by(Feedback.emotional_state)
            )

        def ratings(count, understanding, interest, growth):
            return {
                "count": count,
                "avg_understanding": round(float(understanding), 2) if understanding is not None else None,
                "avg_interest": round(float(interest), 2) if interest is not None else None,
                "avg_educational_growth": round(float(growth), 2) if growth is not None else None,
            }

        return {
            "school": school,
            "teacher_id": teacher_id,
            "totals": ratings(*totals),
            "by_subject": {row[0]: ratings(*row[1:]) for row in by_subject.all()},
            "by_class": [
                {
                    "class_schedule_id": row[0],
                    "subject": row[1],
                    "lesson_topic": row[2],
                    "class_date": str(row[3]),
                    **ratings(*row[4:]),
                }
                for row in by_class.all()
            ],
            "emotional_states": dict(emotional.all()),
        }


class PlatformService:
    """Cross-school views for platform admins"""

    async def platform_stats(self, db: AsyncSession) -> Dict[str, Any]:
        schools = await db.scalar(
            select(func.count(distinct(Teacher.school)))
        )
        students = await db.scalar(select(func.count()).select_from(Student))
        teachers_by_role = dict((await db.execute(
            select(Teacher.role, func.count()).group_by(Teacher.role)
        )).all())
        feedback = await db.scalar(select(func.count()).select_from(Feedback))
        active_subscriptions = await db.scalar(
            select(func.count()).select_from(Subscription).where(
                Subscription.status.in_([SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value])
            )
        )
        open_alerts = await db.scalar(
            select(func.count()).select_from(MentalHealthAlert).where(MentalHealthAlert.is_reviewed.is_(False))
        )
        return {
            "schools": schools or 0,
            "students": students or 0,
            "teachers_by_role": {role: teachers_by_role.get(role, 0) for role in ("teacher", "admin", "doctor")},
            "feedback": feedback or 0,
            "active_subscriptions": active_subscriptions or 0,
            "open_alerts": open_alerts or 0,
        }

    async def schools(self, db: AsyncSession) -> List[Dict[str, Any]]:
        student_counts = dict((await db.execute(
            select(Student.school, func.count()).group_by(Student.school)
        )).all())
        teacher_counts = dict((await db.execute(
            select(Teacher.school, func.count()).group_by(Teacher.school)
        )).all())
        subscriptions = {}
        for subscription in (await db.execute(
            select(Subscription).order_by(Subscription.created_at)
        )).scalars().all():
            subscriptions[subscription.school_name] = subscription.status

        names = sorted(set(student_counts) | set(teacher_counts) | set(subscriptions))
        return [
            {
                "school": name,
                "students": student_counts.get(name, 0),
                "teachers": teacher_counts.get(name, 0),
                "subscription_status": subscriptions.get(name),
            }
            for name in names
        ]

    async def students(self, db: AsyncSession, school: Optional[str] = None,
                       skip: int = 0, limit: int = 50) -> List[Student]:
        query = select(Student)
        if school:
            query = query.where(Student.school == school)
        result = await db.execute(query.order_by(Student.school, Student.full_name).offset(skip).limit(limit))
        return list(result.scalars().all())

    async def teachers(self, db: AsyncSession, school: Optional[str] = None, role: Optional[str] = None,
                       skip: int = 0, limit: int = 50) -> List[Teacher]:
        query = select(Teacher)
        if school:
            query = query.where(Teacher.school == school)
        if role:
            query = query.where(Teacher.role == role)
        result = await db.execute(query.order_by(Teacher.school, Teacher.name).offset(skip).limit(limit))
        return list(result.scalars().all())


# Service instances
account_service = AccountService()
invitation_service = InvitationService()
class_service = ClassService()
alert_service = AlertService()
feedback_service = FeedbackService()
chat_service = ChatService()
subscription_service = SubscriptionService()
analytics_service = AnalyticsService()
platform_service = PlatformService()
