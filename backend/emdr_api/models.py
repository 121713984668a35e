"""SQLModel data models.

This module defines the application's database tables using SQLModel
together with the closed enumerations stored in them. Enumerated values
are persisted as plain strings; services validate them on the way in.

Timestamps are stored as naive UTC datetimes (see `utils.dates.utcnow`)
in explicit `DateTime` columns, so values read back from SQLite compare
cleanly with fresh ones and SQLModel never expects timezone info.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import SQLModel, Field, Relationship

from .utils.dates import utcnow


class Role(str, Enum):
    STUDENT = "STUDENT"
    CONSULTANT = "CONSULTANT"
    ADMIN = "ADMIN"


class AccountStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"


class CertificationStatus(str, Enum):
    ENROLLED = "ENROLLED"
    CONSULTATION_ACCESS_GRANTED = "CONSULTATION_ACCESS_GRANTED"
    IN_PROGRESS = "IN_PROGRESS"
    PENDING_VERIFICATION = "PENDING_VERIFICATION"
    READY_FOR_CERTIFICATION = "READY_FOR_CERTIFICATION"
    CERTIFIED = "CERTIFIED"
    SUSPENDED = "SUSPENDED"
    WITHDRAWN = "WITHDRAWN"


class NotificationType(str, Enum):
    # session
    SESSION_SCHEDULED = "SESSION_SCHEDULED"
    SESSION_REMINDER_24H = "SESSION_REMINDER_24H"
    SESSION_REMINDER_2H = "SESSION_REMINDER_2H"
    SESSION_REMINDER_15M = "SESSION_REMINDER_15M"
    SESSION_CANCELLED = "SESSION_CANCELLED"
    SESSION_RESCHEDULED = "SESSION_RESCHEDULED"
    SESSION_COMPLETED = "SESSION_COMPLETED"
    # progress
    MILESTONE_REACHED = "MILESTONE_REACHED"
    PROGRESS_UPDATE = "PROGRESS_UPDATE"
    CERTIFICATION_ELIGIBLE = "CERTIFICATION_ELIGIBLE"
    CERTIFICATION_COMPLETED = "CERTIFICATION_COMPLETED"
    # documents
    DOCUMENT_UPLOADED = "DOCUMENT_UPLOADED"
    DOCUMENT_APPROVED = "DOCUMENT_APPROVED"
    DOCUMENT_REJECTED = "DOCUMENT_REJECTED"
    DOCUMENT_REVIEW_REQUIRED = "DOCUMENT_REVIEW_REQUIRED"
    # system
    SYSTEM_MAINTENANCE = "SYSTEM_MAINTENANCE"
    SYSTEM_UPDATE = "SYSTEM_UPDATE"
    SECURITY_ALERT = "SECURITY_ALERT"
    # consultant
    NEW_BOOKING = "NEW_BOOKING"
    SESSION_VERIFICATION_REQUIRED = "SESSION_VERIFICATION_REQUIRED"
    PAYMENT_PROCESSED = "PAYMENT_PROCESSED"
    # admin
    USER_REGISTRATION = "USER_REGISTRATION"
    SYSTEM_ALERT = "SYSTEM_ALERT"
    PERFORMANCE_METRIC = "PERFORMANCE_METRIC"


class NotificationPriority(str, Enum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    URGENT = "URGENT"


class ScheduledStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    CANCELLED = "CANCELLED"


class SessionStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    CONFIRMED = "CONFIRMED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"
    RESCHEDULED = "RESCHEDULED"
    TECHNICAL_ISSUE = "TECHNICAL_ISSUE"


class DocumentType(str, Enum):
    CONSULTATION_LOG = "CONSULTATION_LOG"
    EVALUATION_FORM = "EVALUATION_FORM"
    REFLECTION_PAPER = "REFLECTION_PAPER"
    CASE_STUDY = "CASE_STUDY"
    ADDITIONAL_REQUIREMENT = "ADDITIONAL_REQUIREMENT"
    MAKEUP_DOCUMENTATION = "MAKEUP_DOCUMENTATION"


class ReviewStatus(str, Enum):
    PENDING = "PENDING"
    UNDER_REVIEW = "UNDER_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    NEEDS_REVISION = "NEEDS_REVISION"
    AUTO_APPROVED = "AUTO_APPROVED"


class VideoQuality(str, Enum):
    SD = "480p"
    HD = "720p"
    FULL_HD = "1080p"


class RoomStatus(str, Enum):
    ACTIVE = "active"
    ENDED = "ended"


class User(SQLModel, table=True):
    """A platform account (student, consultant or admin).

    Fields:
    - `email`: unique login name
    - `password_hash`: hashed password string (never store plaintext)
    - `certification_status`: only meaningful for students
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(index=True, nullable=False, unique=True)
    password_hash: str
    first_name: str
    last_name: str
    phone: Optional[str] = None
    role: str = Field(default=Role.STUDENT.value, index=True)
    status: str = Field(default=AccountStatus.ACTIVE.value)
    certification_status: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Notification(SQLModel, table=True):
    """An in-app notification owned by its recipient.

    `read_at` is set exactly when `read` flips to True and is never cleared.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    type: str = Field(index=True)
    priority: str = Field(default=NotificationPriority.NORMAL.value)
    title: str
    message: str
    data: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    read: bool = Field(default=False, index=True)
    read_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    created_at: datetime = Field(default_factory=utcnow, index=True, sa_type=DateTime)


class ScheduledNotification(SQLModel, table=True):
    """A notification waiting to be delivered at `scheduled_for`."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    type: str
    priority: str = Field(default=NotificationPriority.NORMAL.value)
    title: str
    message: str
    data: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    scheduled_for: datetime = Field(index=True, sa_type=DateTime)
    status: str = Field(default=ScheduledStatus.PENDING.value, index=True)
    sent_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class NotificationPreference(SQLModel, table=True):
    """Per-user delivery channel settings.

    `type_overrides` maps a notification type to a dict of channel flags
    (`email`, `sms`, `inApp`, `push`) that win over the global toggles.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", unique=True, index=True)
    email_enabled: bool = True
    sms_enabled: bool = False
    in_app_enabled: bool = True
    push_enabled: bool = False
    quiet_hours_enabled: bool = False
    quiet_hours_start: str = "22:00"
    quiet_hours_end: str = "08:00"
    quiet_hours_timezone: str = "UTC"
    type_overrides: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class TrainingSession(SQLModel, table=True):
    """A consultation session between a student and a consultant."""
    id: Optional[int] = Field(default=None, primary_key=True)
    student_id: int = Field(foreign_key="user.id", index=True)
    consultant_id: int = Field(foreign_key="user.id", index=True)
    scheduled_start: datetime = Field(index=True, sa_type=DateTime)
    scheduled_end: datetime = Field(sa_type=DateTime)
    actual_start: Optional[datetime] = Field(default=None, sa_type=DateTime)
    actual_end: Optional[datetime] = Field(default=None, sa_type=DateTime)
    status: str = Field(default=SessionStatus.SCHEDULED.value, index=True)
    consultant_verified_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    student_verified_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    rating: Optional[int] = None
    student_notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class StudentDocument(SQLModel, table=True):
    """An uploaded certification document and its review state."""
    id: Optional[int] = Field(default=None, primary_key=True)
    student_id: int = Field(foreign_key="user.id", index=True)
    document_type: str = Field(index=True)
    file_name: str
    file_size_bytes: int
    mime_type: str
    file_path: str
    review_status: str = Field(default=ReviewStatus.PENDING.value, index=True)
    reviewed_by: Optional[int] = Field(default=None, foreign_key="user.id")
    reviewed_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    review_notes: Optional[str] = None
    version_number: int = 1
    uploaded_at: datetime = Field(default_factory=utcnow, index=True, sa_type=DateTime)


class VideoRoom(SQLModel, table=True):
    """Bookkeeping for the video room attached to a training session."""
    id: Optional[int] = Field(default=None, primary_key=True)
    session_id: int = Field(foreign_key="trainingsession.id", index=True)
    room_id: str = Field(index=True, unique=True)
    recording_enabled: bool = True
    quality: str = VideoQuality.HD.value
    max_participants: int = 2
    status: str = RoomStatus.ACTIVE.value
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    ended_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    participants: List["VideoParticipant"] = Relationship(back_populates="room")


class VideoParticipant(SQLModel, table=True):
    """One user's presence in a `VideoRoom`."""
    id: Optional[int] = Field(default=None, primary_key=True)
    room_pk: int = Field(foreign_key="videoroom.id", index=True)
    user_id: int = Field(foreign_key="user.id")
    role: str
    join_time: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    leave_time: Optional[datetime] = Field(default=None, sa_type=DateTime)
    is_active: bool = True
    room: Optional[VideoRoom] = Relationship(back_populates="participants")
