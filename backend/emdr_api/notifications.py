"""Notification service: construction, delivery tracking and read state.

`NotificationService` is the single entry point for creating user
notifications. Every successful send persists exactly one in-app
`Notification` row (unread). Email and SMS copies are rendered from the
per-type templates below and handed to the logger; the recipient's
preferences and quiet hours only decide whether those outbound copies go
out, never whether the in-app record is written.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Type, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlmodel import Session

from . import models, repositories
from .errors import NotFoundError, ValidationError
from .models import NotificationPriority, NotificationType
from .utils.dates import isoformat, parse_hhmm, to_utc_naive, utcnow

logger = logging.getLogger("emdr_api.notifications")

CHANNELS = ("email", "sms", "inApp", "push")

# Reminders fanned out for every booked session: (lead time, type, wording).
SESSION_REMINDERS = (
    (timedelta(hours=24), NotificationType.SESSION_REMINDER_24H, "in 24 hours"),
    (timedelta(hours=2), NotificationType.SESSION_REMINDER_2H, "in 2 hours"),
    (timedelta(minutes=15), NotificationType.SESSION_REMINDER_15M, "in 15 minutes"),
)

_BASE_CHANNELS = {"email": True, "sms": False, "inApp": True, "push": False}

# Per-type channel defaults that differ from `_BASE_CHANNELS`.
_DEFAULT_CHANNEL_OVERRIDES = {
    NotificationType.SESSION_REMINDER_24H: {"sms": True},
    NotificationType.SESSION_REMINDER_2H: {"sms": True, "push": True},
    NotificationType.SESSION_REMINDER_15M: {"email": False, "sms": True, "push": True},
    NotificationType.SESSION_CANCELLED: {"sms": True, "push": True},
    NotificationType.SESSION_RESCHEDULED: {"sms": True, "push": True},
    NotificationType.PROGRESS_UPDATE: {"email": False},
    NotificationType.CERTIFICATION_ELIGIBLE: {"sms": True, "push": True},
    NotificationType.CERTIFICATION_COMPLETED: {"sms": True, "push": True},
    NotificationType.DOCUMENT_UPLOADED: {"email": False},
    NotificationType.DOCUMENT_REJECTED: {"sms": True, "push": True},
    NotificationType.SECURITY_ALERT: {"sms": True, "push": True},
    NotificationType.USER_REGISTRATION: {"email": False, "inApp": False},
    NotificationType.PERFORMANCE_METRIC: {"email": False, "inApp": False},
}


@dataclass(frozen=True)
class Template:
    subject: str
    body: str
    sms: Optional[str] = None


TEMPLATES: Dict[NotificationType, Template] = {
    NotificationType.SESSION_SCHEDULED: Template(
        subject="Consultation Session Scheduled",
        body=(
            "Hello {{firstName}},\n\n"
            "Your consultation session with {{consultantName}} has been scheduled for "
            "{{sessionDate}} at {{sessionTime}} ({{duration}} minutes).\n"
            "You can join the session 5 minutes before the scheduled time. If you need to "
            "reschedule, please contact us at least 24 hours in advance."
        ),
        sms="Your consultation session with {{consultantName}} is scheduled for {{sessionDate}} at {{sessionTime}}. Join 5 min early.",
    ),
    NotificationType.SESSION_REMINDER_24H: Template(
        subject="Reminder: Consultation Session Tomorrow",
        body=(
            "Hello {{firstName}},\n\n"
            "This is a friendly reminder that your consultation session is scheduled for tomorrow, "
            "{{sessionDate}} at {{sessionTime}}.\n"
            "Please ensure you have a stable internet connection and are in a quiet environment."
        ),
        sms="Reminder: your consultation session is tomorrow at {{sessionTime}}.",
    ),
    NotificationType.SESSION_REMINDER_2H: Template(
        subject="Reminder: Consultation Session in 2 Hours",
        body=(
            "Hello {{firstName}},\n\n"
            "Your consultation session starts in 2 hours at {{sessionTime}}.\n"
            "Please prepare your environment and ensure you're ready for the session."
        ),
        sms="Your consultation session starts in 2 hours at {{sessionTime}}.",
    ),
    NotificationType.SESSION_REMINDER_15M: Template(
        subject="Your consultation session starts in 15 minutes",
        body="Hello {{firstName}},\n\nYour consultation session starts in 15 minutes. You can now join the session room.",
        sms="Your consultation session starts in 15 minutes. Join now.",
    ),
    NotificationType.MILESTONE_REACHED: Template(
        subject="Congratulations! You've reached a milestone",
        body=(
            "Hello {{firstName}},\n\n"
            "Congratulations! You've reached {{milestoneName}} with {{hoursCompleted}} hours completed.\n"
            "You're making excellent progress toward your certification!"
        ),
        sms="Congratulations! You've reached {{milestoneName}} with {{hoursCompleted}} hours completed.",
    ),
    NotificationType.CERTIFICATION_ELIGIBLE: Template(
        subject="You're eligible for certification!",
        body=(
            "Hello {{firstName}},\n\n"
            "Great news! You've completed all requirements and are now eligible for certification.\n"
            "Your certificate will be generated and sent to you within 24 hours."
        ),
        sms="Great news! You're eligible for certification. Your certificate will be sent within 24 hours.",
    ),
    NotificationType.DOCUMENT_APPROVED: Template(
        subject="Document Approved",
        body=(
            "Hello {{firstName}},\n\n"
            'Your document "{{documentName}}" has been approved.\n'
            "This brings you one step closer to certification!"
        ),
        sms='Your document "{{documentName}}" has been approved.',
    ),
    NotificationType.DOCUMENT_REJECTED: Template(
        subject="Document Review Required",
        body=(
            "Hello {{firstName}},\n\n"
            'Your document "{{documentName}}" requires revisions.\n'
            "Feedback: {{feedback}}\n"
            "Please review and resubmit the document."
        ),
        sms='Your document "{{documentName}}" requires revisions. Check your email for details.',
    ),
    NotificationType.NEW_BOOKING: Template(
        subject="New Session Booking",
        body=(
            "Hello {{firstName}},\n\n"
            "You have a new consultation session booked with {{studentName}} on "
            "{{sessionDate}} at {{sessionTime}} ({{duration}} minutes)."
        ),
        sms="New booking: {{studentName}} on {{sessionDate}} at {{sessionTime}}.",
    ),
    NotificationType.SESSION_VERIFICATION_REQUIRED: Template(
        subject="Session Verification Required",
        body=(
            "Hello {{firstName}},\n\n"
            "Please verify your recent session with {{studentName}} on {{sessionDate}}.\n"
            "This helps ensure accurate progress tracking and payment processing."
        ),
        sms="Please verify your session with {{studentName}} on {{sessionDate}}.",
    ),
}

_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")


def render_template(text: str, data: Dict[str, Any]) -> str:
    """Substitute `{{name}}` placeholders; unknown names are left as-is."""
    def _sub(match: re.Match) -> str:
        value = data.get(match.group(1))
        if value is None or value == "":
            return match.group(0)
        return str(value)

    return _PLACEHOLDER.sub(_sub, text)


def _coerce_enum(enum_cls: Type[Enum], value: Any, field_name: str) -> Enum:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"invalid notification {field_name}: {value!r}", field=field_name)


@dataclass
class NotificationRequest:
    """Everything needed to send one notification."""
    user_id: int
    type: Union[NotificationType, str]
    title: str
    message: str
    data: Optional[Dict[str, Any]] = None
    priority: Union[NotificationPriority, str, None] = None


@dataclass
class Preferences:
    """Effective preferences for a user (stored row or defaults)."""
    user_id: int
    email_enabled: bool = True
    sms_enabled: bool = False
    in_app_enabled: bool = True
    push_enabled: bool = False
    quiet_hours_enabled: bool = False
    quiet_hours_start: str = "22:00"
    quiet_hours_end: str = "08:00"
    quiet_hours_timezone: str = "UTC"
    type_overrides: Dict[str, Dict[str, bool]] = field(default_factory=dict)

    def channels_for(self, notification_type: NotificationType) -> Dict[str, bool]:
        channels = dict(_BASE_CHANNELS)
        channels.update(_DEFAULT_CHANNEL_OVERRIDES.get(notification_type, {}))
        channels.update(self.type_overrides.get(notification_type.value, {}))
        return channels

    def to_dict(self) -> dict:
        return {
            "userId": self.user_id,
            "emailEnabled": self.email_enabled,
            "smsEnabled": self.sms_enabled,
            "inAppEnabled": self.in_app_enabled,
            "pushEnabled": self.push_enabled,
            "quietHours": {
                "enabled": self.quiet_hours_enabled,
                "startTime": self.quiet_hours_start,
                "endTime": self.quiet_hours_end,
                "timezone": self.quiet_hours_timezone,
            },
            "notificationTypes": {t.value: self.channels_for(t) for t in NotificationType},
        }


def is_in_quiet_hours(prefs: Preferences, now: Optional[datetime] = None) -> bool:
    """Return True when `now` falls inside the user's quiet-hours window.

    Windows that wrap midnight (e.g. 22:00-08:00) are supported. The window
    is half-open: the start minute is quiet, the end minute is not.
    """
    if not prefs.quiet_hours_enabled:
        return False
    now = to_utc_naive(now) or utcnow()
    try:
        tz = ZoneInfo(prefs.quiet_hours_timezone or "UTC")
    except ZoneInfoNotFoundError:
        tz = ZoneInfo("UTC")
    local = now.replace(tzinfo=ZoneInfo("UTC")).astimezone(tz)
    current = local.hour * 60 + local.minute
    start = parse_hhmm(prefs.quiet_hours_start)
    end = parse_hhmm(prefs.quiet_hours_end)
    if start == end:
        return False
    if start < end:
        return start <= current < end
    return current >= start or current < end


def serialize_notification(n: models.Notification) -> dict:
    return {
        "id": n.id,
        "userId": n.user_id,
        "type": n.type,
        "priority": n.priority,
        "title": n.title,
        "message": n.message,
        "data": n.data or {},
        "read": n.read,
        "readAt": isoformat(n.read_at),
        "createdAt": isoformat(n.created_at),
    }


class NotificationService:
    """Send, list and mark notifications for platform users."""
    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)
        self.repo = repositories.NotificationRepository(session)
        self.scheduled_repo = repositories.ScheduledNotificationRepository(session)
        self.pref_repo = repositories.PreferenceRepository(session)
        self.session_repo = repositories.TrainingSessionRepository(session)

    # -- sending -----------------------------------------------------------

    def send_notification(
        self,
        user_id: int,
        type: Union[NotificationType, str],
        title: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        priority: Union[NotificationPriority, str, None] = None,
    ) -> models.Notification:
        """Validate and persist one unread notification, then fan out to channels.

        Raises `ValidationError` for a type or priority outside its
        enumeration (checked before any database access) or for an empty
        title/message, and `NotFoundError` for an unknown recipient.
        """
        ntype = _coerce_enum(NotificationType, type, "type")
        npriority = _coerce_enum(NotificationPriority, priority or NotificationPriority.NORMAL, "priority")
        if not isinstance(title, str) or not title.strip():
            raise ValidationError("title is required", field="title")
        if not isinstance(message, str) or not message.strip():
            raise ValidationError("message is required", field="message")
        if data is not None and not isinstance(data, dict):
            raise ValidationError("data must be an object", field="data")

        user = self.user_repo.get(user_id)
        if not user:
            raise NotFoundError("user", user_id)

        notification = self.repo.create(
            models.Notification(
                user_id=user.id,
                type=ntype.value,
                priority=npriority.value,
                title=title.strip(),
                message=message.strip(),
                data=data or None,
            )
        )
        logger.info(
            "notification_sent %s",
            json.dumps(
                {"notification_id": notification.id, "user_id": user.id, "type": ntype.value, "priority": npriority.value},
                ensure_ascii=True,
            ),
        )
        self._deliver_outbound(user, notification, ntype)
        return notification

    def send_bulk_notifications(self, items: Iterable[NotificationRequest]) -> List[models.Notification]:
        """Send each request in order; the first failure propagates."""
        return [
            self.send_notification(i.user_id, i.type, i.title, i.message, i.data, i.priority)
            for i in items
        ]

    def schedule_notification(self, item: NotificationRequest, scheduled_for: datetime) -> models.ScheduledNotification:
        """Persist a pending notification to be sent at `scheduled_for`."""
        ntype = _coerce_enum(NotificationType, item.type, "type")
        npriority = _coerce_enum(NotificationPriority, item.priority or NotificationPriority.NORMAL, "priority")
        if not self.user_repo.get(item.user_id):
            raise NotFoundError("user", item.user_id)
        return self.scheduled_repo.create(
            models.ScheduledNotification(
                user_id=item.user_id,
                type=ntype.value,
                priority=npriority.value,
                title=item.title,
                message=item.message,
                data=item.data or None,
                scheduled_for=to_utc_naive(scheduled_for),
            )
        )

    def dispatch_due_notifications(self, now: Optional[datetime] = None) -> int:
        """Send every pending scheduled notification that is due.

        Items whose recipient no longer exists are cancelled. Returns the
        number of notifications actually sent.
        """
        now = to_utc_naive(now) or utcnow()
        sent = 0
        for item in self.scheduled_repo.list_due(now):
            try:
                self.send_notification(item.user_id, item.type, item.title, item.message, item.data, item.priority)
            except NotFoundError:
                logger.warning("scheduled_notification_cancelled id=%s user_id=%s", item.id, item.user_id)
                self.scheduled_repo.set_status(item, models.ScheduledStatus.CANCELLED.value)
                continue
            self.scheduled_repo.set_status(item, models.ScheduledStatus.SENT.value, now)
            sent += 1
        return sent

    def send_session_notifications(self, session_id: int, now: Optional[datetime] = None) -> List[models.ScheduledNotification]:
        """Confirm a booked session to both participants and schedule reminders.

        The student receives `SESSION_SCHEDULED` and the consultant
        `NEW_BOOKING` immediately; the student's 24h/2h/15min reminders are
        scheduled only when their send time is still in the future.
        Returns the scheduled reminders.
        """
        training_session = self.session_repo.get(session_id)
        if not training_session:
            raise NotFoundError("session", session_id)
        if training_session.status == models.SessionStatus.CANCELLED.value:
            raise ValidationError("cannot send notifications for a cancelled session", field="sessionId")
        student = self.user_repo.get(training_session.student_id)
        consultant = self.user_repo.get(training_session.consultant_id)
        if not student or not consultant:
            raise NotFoundError("session participant")

        start = training_session.scheduled_start
        session_date = start.strftime("%Y-%m-%d")
        session_time = start.strftime("%H:%M UTC")
        duration = round((training_session.scheduled_end - start).total_seconds() / 60)

        self.send_notification(
            student.id,
            NotificationType.SESSION_SCHEDULED,
            "Session Scheduled",
            f"Your consultation session with {consultant.full_name} has been scheduled for {session_date} at {session_time}.",
            {
                "sessionId": training_session.id,
                "consultantName": consultant.full_name,
                "sessionDate": session_date,
                "sessionTime": session_time,
                "duration": duration,
            },
            NotificationPriority.NORMAL,
        )
        self.send_notification(
            consultant.id,
            NotificationType.NEW_BOOKING,
            "New Session Booking",
            f"New consultation session booked with {student.full_name} on {session_date} at {session_time}.",
            {
                "sessionId": training_session.id,
                "studentName": student.full_name,
                "sessionDate": session_date,
                "sessionTime": session_time,
                "duration": duration,
            },
            NotificationPriority.NORMAL,
        )

        return self.schedule_session_reminders(training_session, now=now)

    def schedule_session_reminders(
        self, training_session: models.TrainingSession, now: Optional[datetime] = None
    ) -> List[models.ScheduledNotification]:
        """Schedule the student's 24h/2h/15min reminders still ahead of `now`."""
        start = training_session.scheduled_start
        session_date = start.strftime("%Y-%m-%d")
        session_time = start.strftime("%H:%M UTC")
        now = to_utc_naive(now) or utcnow()
        scheduled = []
        for lead, reminder_type, wording in SESSION_REMINDERS:
            send_at = start - lead
            if send_at <= now:
                continue
            scheduled.append(
                self.schedule_notification(
                    NotificationRequest(
                        user_id=training_session.student_id,
                        type=reminder_type,
                        title="Session Reminder",
                        message=f"Your consultation session starts {wording}.",
                        data={"sessionId": training_session.id, "sessionDate": session_date, "sessionTime": session_time},
                        priority=NotificationPriority.HIGH,
                    ),
                    send_at,
                )
            )
        logger.info("session_reminders_scheduled session_id=%s count=%d", training_session.id, len(scheduled))
        return scheduled

    def cancel_session_reminders(self, training_session: models.TrainingSession) -> int:
        """Cancel the pending reminders of a session; returns how many."""
        cancelled = 0
        for item in self.scheduled_repo.list_for_user(training_session.student_id):
            if item.status == models.ScheduledStatus.PENDING.value and (item.data or {}).get("sessionId") == training_session.id:
                self.scheduled_repo.set_status(item, models.ScheduledStatus.CANCELLED.value)
                cancelled += 1
        return cancelled

    def send_milestone_notification(self, user_id: int, milestone_name: str, hours_completed: float, milestone: Optional[str] = None):
        return self.send_notification(
            user_id,
            NotificationType.MILESTONE_REACHED,
            "Milestone Achieved!",
            f"Congratulations! You've reached {milestone_name} with {hours_completed:g} hours completed.",
            {"milestone": milestone, "milestoneName": milestone_name, "hoursCompleted": hours_completed},
            NotificationPriority.NORMAL,
        )

    def send_certification_eligible_notification(self, user_id: int):
        return self.send_notification(
            user_id,
            NotificationType.CERTIFICATION_ELIGIBLE,
            "Certification Eligible!",
            "Great news! You've completed all requirements and are now eligible for certification.",
            {},
            NotificationPriority.HIGH,
        )

    def send_document_notification(
        self,
        user_id: int,
        document_name: str,
        approved: bool,
        feedback: Optional[str] = None,
        document_id: Optional[int] = None,
    ):
        if approved:
            ntype, title = NotificationType.DOCUMENT_APPROVED, "Document Approved"
            message = f'Your document "{document_name}" has been approved.'
        else:
            ntype, title = NotificationType.DOCUMENT_REJECTED, "Document Review Required"
            message = f'Your document "{document_name}" requires revisions.'
        return self.send_notification(
            user_id,
            ntype,
            title,
            message,
            {"documentId": document_id, "documentName": document_name, "feedback": feedback},
            NotificationPriority.NORMAL,
        )

    # -- queries and read state ---------------------------------------------

    def get_user_notifications(self, user_id: int, limit: int = 50, offset: int = 0) -> List[models.Notification]:
        """Return the user's notifications newest first."""
        return self.repo.list_for_user(user_id, max(0, limit), max(0, offset))

    def count_user_notifications(self, user_id: int) -> int:
        return self.repo.count_for_user(user_id)

    def get_unread_notification_count(self, user_id: int) -> int:
        return self.repo.count_unread(user_id)

    def get_notification(self, notification_id: int) -> models.Notification:
        notification = self.repo.get(notification_id)
        if not notification:
            raise NotFoundError("notification", notification_id)
        return notification

    def mark_notification_as_read(self, notification_id: int) -> models.Notification:
        """Mark one notification read. Repeating the call changes nothing."""
        notification = self.get_notification(notification_id)
        return self.repo.mark_read(notification, utcnow())

    def mark_all_notifications_as_read(self, user_id: int) -> int:
        """Mark every unread notification of the user read; returns the count changed."""
        if not self.user_repo.get(user_id):
            raise NotFoundError("user", user_id)
        changed = self.repo.mark_all_read(user_id, utcnow())
        logger.info("notifications_marked_read user_id=%s count=%d", user_id, changed)
        return changed

    # -- preferences ----------------------------------------------------------

    def get_preferences(self, user_id: int) -> Preferences:
        row = self.pref_repo.get_for_user(user_id)
        if not row:
            return Preferences(user_id=user_id)
        return Preferences(
            user_id=row.user_id,
            email_enabled=row.email_enabled,
            sms_enabled=row.sms_enabled,
            in_app_enabled=row.in_app_enabled,
            push_enabled=row.push_enabled,
            quiet_hours_enabled=row.quiet_hours_enabled,
            quiet_hours_start=row.quiet_hours_start,
            quiet_hours_end=row.quiet_hours_end,
            quiet_hours_timezone=row.quiet_hours_timezone,
            type_overrides=dict(row.type_overrides or {}),
        )

    def update_preferences(self, user_id: int, changes: Dict[str, Any]) -> Preferences:
        """Upsert preferences from a partial update.

        Accepted keys: `email_enabled`, `sms_enabled`, `in_app_enabled`,
        `push_enabled`, `quiet_hours` (dict with `enabled`, `start_time`,
        `end_time`, `timezone`) and `notification_types` (type -> channel
        flags).
        """
        if not self.user_repo.get(user_id):
            raise NotFoundError("user", user_id)
        row_changes: Dict[str, Any] = {}
        for key in ("email_enabled", "sms_enabled", "in_app_enabled", "push_enabled"):
            if changes.get(key) is not None:
                row_changes[key] = bool(changes[key])

        quiet = changes.get("quiet_hours")
        if quiet:
            if quiet.get("enabled") is not None:
                row_changes["quiet_hours_enabled"] = bool(quiet["enabled"])
            for src, dest in (("start_time", "quiet_hours_start"), ("end_time", "quiet_hours_end")):
                if quiet.get(src) is not None:
                    try:
                        parse_hhmm(quiet[src])
                    except ValueError as e:
                        raise ValidationError(str(e), field=f"quietHours.{src}")
                    row_changes[dest] = quiet[src]
            if quiet.get("timezone") is not None:
                try:
                    ZoneInfo(quiet["timezone"])
                except (ZoneInfoNotFoundError, ValueError):
                    raise ValidationError(f"unknown timezone: {quiet['timezone']!r}", field="quietHours.timezone")
                row_changes["quiet_hours_timezone"] = quiet["timezone"]

        types = changes.get("notification_types")
        if types:
            merged = dict(self.get_preferences(user_id).type_overrides)
            for type_key, flags in types.items():
                ntype = _coerce_enum(NotificationType, type_key, "type")
                unknown = set(flags) - set(CHANNELS)
                if unknown:
                    raise ValidationError(f"unknown channel(s): {', '.join(sorted(unknown))}", field="notificationTypes")
                merged[ntype.value] = {**merged.get(ntype.value, {}), **{k: bool(v) for k, v in flags.items()}}
            row_changes["type_overrides"] = merged

        self.pref_repo.upsert(user_id, row_changes)
        return self.get_preferences(user_id)

    # -- outbound channels ------------------------------------------------------

    def _deliver_outbound(self, user: models.User, notification: models.Notification, ntype: NotificationType) -> None:
        prefs = self.get_preferences(user.id)
        if is_in_quiet_hours(prefs):
            logger.info("outbound_skipped_quiet_hours notification_id=%s user_id=%s", notification.id, user.id)
            return
        channels = prefs.channels_for(ntype)
        template = TEMPLATES.get(ntype)
        data = {"firstName": user.first_name, **(notification.data or {})}
        if prefs.email_enabled and channels.get("email"):
            subject = template.subject if template else notification.title
            body = render_template(template.body, data) if template else notification.message
            self._log_delivery("email", user.email, notification, subject=subject, body=body)
        if prefs.sms_enabled and channels.get("sms") and user.phone:
            text = render_template(template.sms, data) if template and template.sms else notification.message
            self._log_delivery("sms", user.phone, notification, body=text)

    def _log_delivery(self, channel: str, to: str, notification: models.Notification, **content: str) -> None:
        # Vendor integrations (SMTP, SMS gateway) plug in here.
        logger.info(
            "outbound_%s %s",
            channel,
            json.dumps({"notification_id": notification.id, "to": to, **content}, ensure_ascii=True),
        )
