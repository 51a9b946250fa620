"""
SQLAlchemy database models
"""
from sqlalchemy import (
    Column, String, Integer, Boolean, Date, DateTime, JSON, Text, ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from typing import Optional
import uuid

from lessonpulse.database import Base


def generate_uuid():
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class Student(Base):
    """Student account - identified by full name, school and grade"""
    __tablename__ = "students"

    id = Column(String, primary_key=True, default=generate_uuid)
    full_name = Column(String, nullable=False)
    school = Column(String, nullable=False)
    grade = Column(String, nullable=False)
    password_hash = Column(String, nullable=False)
    needs_password_change = Column(Boolean, default=False)
    last_password_change = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)

    feedback = relationship("Feedback", back_populates="student")

    __table_args__ = (
        UniqueConstraint("full_name", "school", "grade", name="uq_students_identity"),
        Index("ix_students_school", "school"),
    )


class Teacher(Base):
    """Teacher, school admin or school doctor (mental-health professional)"""
    __tablename__ = "teachers"

    id = Column(String, primary_key=True, default=generate_uuid)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, nullable=False)
    school = Column(String, nullable=False)
    role = Column(String, nullable=False, default="teacher")
    password_hash = Column(String, nullable=False)
    specialization = Column(String)
    license_number = Column(String)
    is_available = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    class_schedules = relationship("ClassSchedule", back_populates="teacher")

    __table_args__ = (
        Index("ix_teachers_school_role", "school", "role"),
    )


class PlatformAdmin(Base):
    """Operator of the whole platform"""
    __tablename__ = "platform_admins"

    id = Column(String, primary_key=True, default=generate_uuid)
    email = Column(String, unique=True, nullable=False)
    name = Column(String, nullable=False)
    password_hash = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class UserSession(Base):
    """Server-side login session"""
    __tablename__ = "user_sessions"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    user_type = Column(String, nullable=False)  # student, teacher, platform_admin
    role = Column(String, nullable=False)
    school = Column(String)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    last_activity = Column(DateTime(timezone=True), default=utcnow)
    fingerprint = Column(JSON)
    ip_address = Column(String)
    user_agent = Column(String)
    revoked_at = Column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_user_sessions_user_id", "user_id"),
    )


class ClassSchedule(Base):
    """A scheduled lesson students can give feedback on"""
    __tablename__ = "class_schedules"

    id = Column(String, primary_key=True, default=generate_uuid)
    teacher_id = Column(String, ForeignKey("teachers.id"), nullable=False)
    school = Column(String, nullable=False)
    grade = Column(String, nullable=False)
    subject = Column(String, nullable=False)
    lesson_topic = Column(String, nullable=False)
    class_date = Column(Date, nullable=False)
    class_time = Column(String, nullable=False)
    duration_minutes = Column(Integer, default=45)
    description = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    teacher = relationship("Teacher", back_populates="class_schedules")
    feedback = relationship("Feedback", back_populates="class_schedule")

    __table_args__ = (
        Index("ix_class_schedules_teacher_id", "teacher_id"),
        Index("ix_class_schedules_school_grade", "school", "grade"),
    )


class Feedback(Base):
    """Student feedback on a lesson"""
    __tablename__ = "feedback"

    id = Column(String, primary_key=True, default=generate_uuid)
    class_schedule_id = Column(String, ForeignKey("class_schedules.id"), nullable=False)
    student_id = Column(String, ForeignKey("students.id"), nullable=False)
    student_name = Column(String)
    is_anonymous = Column(Boolean, default=False)

    # Ratings (1-5 scale)
    understanding = Column(Integer, nullable=False)
    interest = Column(Integer, nullable=False)
    educational_growth = Column(Integer, nullable=False)
    emotional_state = Column(String, nullable=False)

    what_went_well = Column(Text)
    suggestions = Column(Text)
    additional_comments = Column(Text)
    submitted_at = Column(DateTime(timezone=True), default=utcnow)

    class_schedule = relationship("ClassSchedule", back_populates="feedback")
    student = relationship("Student", back_populates="feedback")

    __table_args__ = (
        UniqueConstraint("class_schedule_id", "student_id", name="uq_feedback_class_student"),
        Index("ix_feedback_class_schedule_id", "class_schedule_id"),
    )


class WeeklySummary(Base):
    """Student's weekly reflection on emotional and academic concerns"""
    __tablename__ = "weekly_summaries"

    id = Column(String, primary_key=True, default=generate_uuid)
    student_id = Column(String, ForeignKey("students.id"), nullable=False)
    student_name = Column(String, nullable=False)
    school = Column(String, nullable=False)
    grade = Column(String, nullable=False)
    week_start_date = Column(Date, nullable=False)
    emotional_concerns = Column(Text)
    academic_concerns = Column(Text)
    is_anonymous = Column(Boolean, default=False)
    submitted_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("student_id", "week_start_date", name="uq_weekly_summaries_student_week"),
        Index("ix_weekly_summaries_school", "school"),
    )


class MentalHealthAlert(Base):
    """Distress detected in student-written text"""
    __tablename__ = "mental_health_alerts"

    id = Column(String, primary_key=True, default=generate_uuid)
    student_id = Column(String)
    student_name = Column(String, nullable=False)
    school = Column(String, nullable=False)
    grade = Column(String, nullable=False)
    source_table = Column(String, nullable=False)
    source_id = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    alert_type = Column(String, nullable=False)
    severity_level = Column(Integer, nullable=False)
    analysis = Column(JSON)
    is_reviewed = Column(Boolean, default=False)
    reviewed_by = Column(String)
    reviewed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("ix_mental_health_alerts_school", "school"),
        Index("ix_mental_health_alerts_severity", "severity_level"),
    )


class LiveChatSession(Base):
    """Support chat between a student and a school doctor"""
    __tablename__ = "live_chat_sessions"

    id = Column(String, primary_key=True, default=generate_uuid)
    student_id = Column(String, ForeignKey("students.id"))
    student_name = Column(String, nullable=False)
    school = Column(String, nullable=False)
    grade = Column(String)
    is_anonymous = Column(Boolean, default=False)
    status = Column(String, nullable=False, default="waiting")
    doctor_id = Column(String, ForeignKey("teachers.id"))
    started_at = Column(DateTime(timezone=True))
    ended_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)

    messages = relationship("ChatMessage", back_populates="session", order_by="ChatMessage.sent_at")

    __table_args__ = (
        Index("ix_live_chat_sessions_school_status", "school", "status"),
    )


class ChatMessage(Base):
    """Single message in a live chat"""
    __tablename__ = "chat_messages"

    id = Column(String, primary_key=True, default=generate_uuid)
    session_id = Column(String, ForeignKey("live_chat_sessions.id"), nullable=False)
    sender_type = Column(String, nullable=False)  # student, doctor
    sender_name = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    sent_at = Column(DateTime(timezone=True), default=utcnow)

    session = relationship("LiveChatSession", back_populates="messages")

    __table_args__ = (
        Index("ix_chat_messages_session_id", "session_id"),
    )


class Subscription(Base):
    """School subscription to the platform"""
    __tablename__ = "subscriptions"

    id = Column(String, primary_key=True, default=generate_uuid)
    school_name = Column(String, nullable=False)
    plan_type = Column(String, nullable=False)
    status = Column(String, nullable=False, default="active")
    amount = Column(Integer, nullable=False)  # cents
    original_amount = Column(Integer)
    currency = Column(String, nullable=False, default="usd")
    teacher_count = Column(Integer, default=1)
    is_annual = Column(Boolean, default=False)
    discount_code_id = Column(String, ForeignKey("discount_codes.id"))
    discount_expires_at = Column(DateTime(timezone=True))
    current_period_start = Column(DateTime(timezone=True))
    current_period_end = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_subscriptions_school_name", "school_name"),
        Index("ix_subscriptions_status", "status"),
    )


class DiscountCode(Base):
    """Promotional code applied to a subscription"""
    __tablename__ = "discount_codes"

    id = Column(String, primary_key=True, default=generate_uuid)
    code = Column(String, unique=True, nullable=False)
    description = Column(String)
    discount_percent = Column(Integer, nullable=False)
    duration_months = Column(Integer)
    max_uses = Column(Integer)
    current_uses = Column(Integer, default=0)
    expires_at = Column(DateTime(timezone=True))
    school_name = Column(String)
    is_active = Column(Boolean, default=True)
    created_by = Column(String)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Invitation(Base):
    """Invitation for a teacher or doctor to join a school"""
    __tablename__ = "invitations"

    id = Column(String, primary_key=True, default=generate_uuid)
    email = Column(String, nullable=False)
    school = Column(String, nullable=False)
    role = Column(String, nullable=False)
    specialization = Column(String)
    invite_token = Column(String, unique=True, nullable=False)
    status = Column(String, nullable=False, default="pending")
    invited_by = Column(String)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    accepted_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("ix_invitations_school_status", "school", "status"),
    )


class SecurityEvent(Base):
    """Security-relevant event (failed login, rate limit, CSRF reject, ...)"""
    __tablename__ = "security_events"

    id = Column(String, primary_key=True, default=generate_uuid)
    event_type = Column(String, nullable=False)
    severity = Column(String, nullable=False)
    user_id = Column(String)
    details = Column(Text)
    ip_address = Column(String)
    user_agent = Column(String)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("ix_security_events_type", "event_type"),
        Index("ix_security_events_created_at", "created_at"),
    )


class AuditLog(Base):
    """Audit log for compliance and security"""
    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, nullable=False)

    # Action details
    action = Column(String, nullable=False)
    resource = Column(String, nullable=False)
    resource_id = Column(String, nullable=True)

    # Request metadata
    ip_address = Column(String)
    user_agent = Column(String)
    extra_metadata = Column(JSON)

    timestamp = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("ix_audit_logs_user_id", "user_id"),
        Index("ix_audit_logs_action", "action"),
        Index("ix_audit_logs_timestamp", "timestamp"),
    )
