"""Pydantic request schemas used by the API.

Schemas keep API input shapes stable and provide validation for
controller handlers and tests. JSON bodies use camelCase keys; the
Python attributes are snake_case and either spelling is accepted.
Enumerated fields stay plain strings here so that the services own the
validation and report it with the same error payload as everything else.
"""

from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RegisterIn(CamelModel):
    """Payload for user registration."""
    email: str
    password: str
    first_name: str = Field(alias="firstName")
    last_name: str = Field(alias="lastName")
    role: str = "STUDENT"
    phone: Optional[str] = None


class LoginIn(CamelModel):
    email: str
    password: str


class ForgotPasswordIn(CamelModel):
    email: str


class ResetPasswordIn(CamelModel):
    token: str
    password: str


class NotificationIn(CamelModel):
    """Body of `POST /notifications`."""
    user_id: int = Field(alias="userId")
    type: str
    title: str
    message: str
    data: Optional[Dict[str, Any]] = None
    priority: Optional[str] = None


class MarkReadRequest(CamelModel):
    """`PUT /notifications` variant selected by `action: "mark_read"`."""
    action: Literal["mark_read"]
    notification_id: int = Field(alias="notificationId")


class MarkAllReadRequest(CamelModel):
    action: Literal["mark_all_read"]
    user_id: Optional[int] = Field(default=None, alias="userId")


class SessionNotificationIn(CamelModel):
    session_id: int = Field(alias="sessionId")


class QuietHoursIn(CamelModel):
    enabled: Optional[bool] = None
    start_time: Optional[str] = Field(default=None, alias="startTime")
    end_time: Optional[str] = Field(default=None, alias="endTime")
    timezone: Optional[str] = None


class PreferencesUpdate(CamelModel):
    email_enabled: Optional[bool] = Field(default=None, alias="emailEnabled")
    sms_enabled: Optional[bool] = Field(default=None, alias="smsEnabled")
    in_app_enabled: Optional[bool] = Field(default=None, alias="inAppEnabled")
    push_enabled: Optional[bool] = Field(default=None, alias="pushEnabled")
    quiet_hours: Optional[QuietHoursIn] = Field(default=None, alias="quietHours")
    notification_types: Optional[Dict[str, Dict[str, bool]]] = Field(default=None, alias="notificationTypes")


class SessionCreate(CamelModel):
    """Booking request; students book for themselves, admins may name the student."""
    consultant_id: int = Field(alias="consultantId")
    scheduled_start: datetime = Field(alias="scheduledStart")
    duration: int = 60
    student_id: Optional[int] = Field(default=None, alias="studentId")


class SessionStatusUpdate(CamelModel):
    status: str
    actual_start: Optional[datetime] = Field(default=None, alias="actualStart")
    actual_end: Optional[datetime] = Field(default=None, alias="actualEnd")


class SessionReschedule(CamelModel):
    """New slot for `POST /sessions/{id}/reschedule`; the duration defaults to the current one."""
    scheduled_start: datetime = Field(alias="scheduledStart")
    duration: Optional[int] = None
    reason: Optional[str] = None


class SessionVerifyIn(CamelModel):
    rating: Optional[int] = None
    notes: Optional[str] = None


class StudentStatusUpdate(CamelModel):
    status: str
    student_id: Optional[int] = Field(default=None, alias="studentId")


class DocumentReviewIn(CamelModel):
    status: str
    notes: Optional[str] = None


class VideoRoomCreate(CamelModel):
    session_id: int = Field(alias="sessionId")
    recording_enabled: bool = Field(default=True, alias="recordingEnabled")
    quality: str = "720p"
    max_participants: int = Field(default=2, alias="maxParticipants")


class WebhookTestIn(CamelModel):
    """Optional overrides for the synthetic webhook sent by `POST /test/webhook`."""
    event: str = "course.completed"
    webhook_url: Optional[str] = Field(default=None, alias="webhookUrl")
    test_data: Optional[Dict[str, Any]] = Field(default=None, alias="testData")
