"""
Pydantic models for API request/response schemas
"""
from pydantic import AfterValidator, BaseModel, Field, ConfigDict, field_validator
from typing import Annotated, Optional, Dict, Any
from datetime import date, datetime
from enum import Enum

from lessonpulse.config import EMOTIONAL_STATES
from lessonpulse.validation import (
    clean_text,
    validate_email,
    validate_grade,
    validate_person_name,
    validate_school_name,
)

PersonName = Annotated[str, AfterValidator(validate_person_name)]
SchoolName = Annotated[str, AfterValidator(validate_school_name)]
Grade = Annotated[str, AfterValidator(validate_grade)]
Email = Annotated[str, AfterValidator(validate_email)]


class TeacherRole(str, Enum):
    TEACHER = "teacher"
    ADMIN = "admin"
    DOCTOR = "doctor"


class InvitableRole(str, Enum):
    TEACHER = "teacher"
    DOCTOR = "doctor"


class ChatStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    ENDED = "ended"


class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAUSED = "paused"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


# ==================== Auth ====================

class StudentSignup(BaseModel):
    full_name: PersonName
    school: SchoolName
    grade: Grade
    password: str = Field(..., max_length=128)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "full_name": "Ona Petraitė",
                "school": "Vilnius Gymnasium",
                "grade": "9",
                "password": "Kaunas2024"
            }
        }
    )


class StudentLogin(BaseModel):
    full_name: PersonName
    school: SchoolName
    grade: Grade
    password: str = Field(..., max_length=128)


class TeacherSignup(BaseModel):
    name: PersonName
    email: Email
    school: SchoolName
    password: str = Field(..., max_length=128)
    role: TeacherRole = TeacherRole.TEACHER


class EmailLogin(BaseModel):
    email: Email
    password: str = Field(..., max_length=128)


class PasswordChange(BaseModel):
    current_password: str = Field(..., max_length=128)
    new_password: str = Field(..., max_length=128)


class StudentPasswordReset(BaseModel):
    """Temporary password set by a school admin; the student must replace it"""
    temporary_password: str = Field(..., max_length=128)


class UserProfile(BaseModel):
    id: str
    user_type: str
    role: str
    name: str
    school: Optional[str] = None
    email: Optional[str] = None
    grade: Optional[str] = None
    needs_password_change: bool = False


class AuthResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    csrf_token: str
    user: UserProfile


# ==================== Invitations ====================

class InvitationCreate(BaseModel):
    email: Email
    role: InvitableRole = InvitableRole.TEACHER
    specialization: Optional[str] = Field(None, max_length=100)


class InvitationAccept(BaseModel):
    token: str = Field(..., min_length=16, max_length=128)
    name: PersonName
    password: str = Field(..., max_length=128)
    license_number: Optional[str] = Field(None, max_length=50)


class InvitationOut(BaseModel):
    id: str
    email: str
    school: str
    role: str
    specialization: Optional[str] = None
    status: str
    expires_at: datetime
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class InvitationCreated(InvitationOut):
    """Returned once, to the inviting admin, so the link can be shared"""
    invite_token: str


# ==================== Classes & feedback ====================

class ClassScheduleCreate(BaseModel):
    subject: str = Field(..., min_length=1, max_length=100)
    lesson_topic: str = Field(..., min_length=1, max_length=200)
    grade: Grade
    class_date: date
    class_time: str = Field(..., pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    duration_minutes: int = Field(45, ge=5, le=480)
    description: Optional[str] = None

    @field_validator("subject", "lesson_topic")
    @classmethod
    def _clean_short(cls, value: str) -> str:
        value = clean_text(value, max_length=200)
        if not value:
            raise ValueError("Field must not be empty")
        return value

    @field_validator("description")
    @classmethod
    def _clean_description(cls, value: Optional[str]) -> Optional[str]:
        return clean_text(value, max_length=1000)


class ClassScheduleOut(BaseModel):
    id: str
    teacher_id: str
    school: str
    grade: str
    subject: str
    lesson_topic: str
    class_date: date
    class_time: str
    duration_minutes: int
    description: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class FeedbackSubmission(BaseModel):
    """Model for lesson feedback submission"""
    class_schedule_id: str
    understanding: int = Field(..., ge=1, le=5)
    interest: int = Field(..., ge=1, le=5)
    educational_growth: int = Field(..., ge=1, le=5)
    emotional_state: str
    what_went_well: Optional[str] = None
    suggestions: Optional[str] = None
    additional_comments: Optional[str] = None
    is_anonymous: bool = False

    @field_validator("emotional_state")
    @classmethod
    def _emotional_state(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in EMOTIONAL_STATES:
            raise ValueError(f"Emotional state must be one of {', '.join(EMOTIONAL_STATES)}")
        return value

    @field_validator("what_went_well", "suggestions", "additional_comments")
    @classmethod
    def _clean(cls, value: Optional[str]) -> Optional[str]:
        return clean_text(value, max_length=1000)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "class_schedule_id": "8c6f0f1e-3d1c-4a53-9d0e-6ad1f3f0a2b1",
                "understanding": 4,
                "interest": 5,
                "educational_growth": 4,
                "emotional_state": "happy",
                "what_went_well": "The experiments made the topic easy to follow",
                "suggestions": "More time for questions",
                "is_anonymous": False
            }
        }
    )


class FeedbackOut(BaseModel):
    id: str
    class_schedule_id: str
    student_id: Optional[str] = None
    student_name: Optional[str] = None
    is_anonymous: bool
    understanding: int
    interest: int
    educational_growth: int
    emotional_state: str
    what_went_well: Optional[str] = None
    suggestions: Optional[str] = None
    additional_comments: Optional[str] = None
    submitted_at: datetime

    model_config = ConfigDict(from_attributes=True)


class WeeklySummaryCreate(BaseModel):
    week_start_date: date
    emotional_concerns: Optional[str] = None
    academic_concerns: Optional[str] = None
    is_anonymous: bool = False

    @field_validator("emotional_concerns", "academic_concerns")
    @classmethod
    def _clean(cls, value: Optional[str]) -> Optional[str]:
        return clean_text(value, max_length=2000)


class WeeklySummaryOut(BaseModel):
    id: str
    student_id: Optional[str] = None
    student_name: str
    school: str
    grade: str
    week_start_date: date
    emotional_concerns: Optional[str] = None
    academic_concerns: Optional[str] = None
    is_anonymous: bool
    submitted_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ==================== Mental health ====================

class TextAnalysisRequest(BaseModel):
    text: str = Field(..., max_length=5000)


class MentalHealthAlertOut(BaseModel):
    id: str
    student_id: Optional[str] = None
    student_name: str
    school: str
    grade: str
    source_table: str
    source_id: str
    content: str
    alert_type: str
    severity_level: int
    is_reviewed: bool
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ==================== Chat ====================

class ChatSessionCreate(BaseModel):
    is_anonymous: bool = False


class ChatSessionOut(BaseModel):
    id: str
    student_id: Optional[str] = None
    student_name: str
    school: str
    grade: Optional[str] = None
    is_anonymous: bool
    status: ChatStatus
    doctor_id: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ChatMessageCreate(BaseModel):
    message: str = Field(..., min_length=1, max_length=2000)

    @field_validator("message")
    @classmethod
    def _clean(cls, value: str) -> str:
        value = clean_text(value, max_length=2000)
        if not value:
            raise ValueError("Message must not be empty")
        return value


class ChatMessageOut(BaseModel):
    id: str
    session_id: str
    sender_type: str
    sender_name: str
    message: str
    sent_at: datetime

    model_config = ConfigDict(from_attributes=True)


class DoctorOut(BaseModel):
    id: str
    name: str
    school: str
    specialization: Optional[str] = None
    is_available: bool

    model_config = ConfigDict(from_attributes=True)


class AvailabilityUpdate(BaseModel):
    is_available: bool


# ==================== Platform ====================

class SubscriptionCreate(BaseModel):
    school_name: SchoolName
    plan_type: str = Field(..., pattern=r"^(teacher|admin)$")
    teacher_count: int = Field(1, ge=1, le=10000)
    is_annual: bool = False
    currency: str = Field("usd", pattern=r"^[a-z]{3}$")
    start_trial: bool = False
    discount_code: Optional[str] = Field(None, max_length=50)


class SubscriptionStatusUpdate(BaseModel):
    status: SubscriptionStatus


class SubscriptionOut(BaseModel):
    id: str
    school_name: str
    plan_type: str
    status: str
    amount: int
    original_amount: Optional[int] = None
    currency: str
    teacher_count: int
    is_annual: bool
    discount_code_id: Optional[str] = None
    discount_expires_at: Optional[datetime] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class DiscountCodeCreate(BaseModel):
    code: str = Field(..., pattern=r"^[A-Za-z0-9_-]{3,50}$")
    discount_percent: int = Field(..., ge=1, le=100)
    description: Optional[str] = Field(None, max_length=200)
    duration_months: Optional[int] = Field(None, ge=1, le=36)
    max_uses: Optional[int] = Field(None, ge=1)
    expires_at: Optional[datetime] = None
    school_name: Optional[str] = None


class DiscountCodeOut(BaseModel):
    id: str
    code: str
    description: Optional[str] = None
    discount_percent: int
    duration_months: Optional[int] = None
    max_uses: Optional[int] = None
    current_uses: int
    expires_at: Optional[datetime] = None
    school_name: Optional[str] = None
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class LockoutClear(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=300)


class SecurityEventOut(BaseModel):
    id: str
    event_type: str
    severity: str
    user_id: Optional[str] = None
    details: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuditLogOut(BaseModel):
    """Model for audit log entries"""
    id: str
    user_id: str
    action: str
    resource: str
    resource_id: Optional[str] = None
    timestamp: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    extra_metadata: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(from_attributes=True)


class PlatformStats(BaseModel):
    schools: int
    students: int
    teachers_by_role: Dict[str, int]
    feedback: int
    active_subscriptions: int
    open_alerts: int


class HealthCheck(BaseModel):
    """Health check response"""
    status: str
    service: str
    version: str


class SchoolSummary(BaseModel):
    school: str
    students: int
    teachers: int
    subscription_status: Optional[str] = None


class StudentOut(BaseModel):
    id: str
    full_name: str
    school: str
    grade: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TeacherOut(BaseModel):
    id: str
    name: str
    email: str
    school: str
    role: str
    specialization: Optional[str] = None
    is_available: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
