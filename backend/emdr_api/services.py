"""Business logic services used by HTTP controllers.

This module holds small service classes that coordinate repositories
and auxiliary logic. Services are intentionally thin: they perform
validation, execute domain logic and persist aggregates via
repositories. Notification construction lives in `notifications.py`;
the services here call into it whenever a domain event should reach a
user.
"""

import logging
import math
import re
import time
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

import jwt
from passlib.context import CryptContext
from sqlmodel import Session

from . import models, repositories
from .config import settings
from .errors import (
    AuthError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from .models import NotificationType, Role
from .notifications import NotificationRequest, NotificationService
from .utils.dates import isoformat, to_utc_naive, utcnow, week_start
from .utils.storage import save_upload

logger = logging.getLogger("emdr_api.services")

PWD_CTX = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MIN_PASSWORD_LENGTH = 8
RESET_TOKEN_TYPE = "password-reset"

REQUIRED_HOURS = 40
DEFAULT_WEEKLY_HOURS = 2.0
DEFAULT_SESSION_MINUTES = 60


def _enum_value(enum_cls, value, field: str) -> str:
    try:
        return enum_cls(value).value
    except ValueError:
        raise ValidationError(f"invalid {field}: {value!r}", field=field)


def ensure_participant(session: models.TrainingSession, user: models.User) -> None:
    """Raise unless `user` is the student, the consultant or an admin."""
    if user.role == Role.ADMIN.value:
        return
    if user.id not in (session.student_id, session.consultant_id):
        raise PermissionDeniedError("not a participant of this session")


def serialize_user(user: models.User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "firstName": user.first_name,
        "lastName": user.last_name,
        "phone": user.phone,
        "role": user.role,
        "status": user.status,
        "certificationStatus": user.certification_status,
        "createdAt": isoformat(user.created_at),
    }


def session_duration_hours(s: models.TrainingSession) -> float:
    """Duration in hours, from actual times when both are known."""
    if s.actual_start and s.actual_end:
        start, end = s.actual_start, s.actual_end
    else:
        start, end = s.scheduled_start, s.scheduled_end
    return max((end - start).total_seconds(), 0) / 3600.0


def _session_date(s: models.TrainingSession) -> datetime:
    return s.actual_end or s.scheduled_end


def serialize_session(s: models.TrainingSession, names: Optional[Dict[int, str]] = None) -> dict:
    names = names or {}
    return {
        "id": s.id,
        "studentId": s.student_id,
        "consultantId": s.consultant_id,
        "consultantName": names.get(s.consultant_id),
        "scheduledStart": isoformat(s.scheduled_start),
        "scheduledEnd": isoformat(s.scheduled_end),
        "actualStart": isoformat(s.actual_start),
        "actualEnd": isoformat(s.actual_end),
        "status": s.status,
        "durationHours": round(session_duration_hours(s), 2),
        "consultantVerifiedAt": isoformat(s.consultant_verified_at),
        "studentVerifiedAt": isoformat(s.student_verified_at),
        "rating": s.rating,
        "notes": s.student_notes,
    }


def serialize_document(d: models.StudentDocument) -> dict:
    return {
        "id": d.id,
        "studentId": d.student_id,
        "documentType": d.document_type,
        "fileName": d.file_name,
        "fileSize": d.file_size_bytes,
        "mimeType": d.mime_type,
        "reviewStatus": d.review_status,
        "reviewedBy": d.reviewed_by,
        "reviewedAt": isoformat(d.reviewed_at),
        "reviewNotes": d.review_notes,
        "versionNumber": d.version_number,
        "uploadedAt": isoformat(d.uploaded_at),
    }


class AuthService:
    """Authentication related operations (register, login, password reset)."""
    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)

    def register(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        role: str = Role.STUDENT.value,
        phone: Optional[str] = None,
    ) -> models.User:
        """Create a new user with a hashed password.

        Raises `ValidationError` for a malformed email, a short password or
        an unknown role, and `ConflictError` when the email is taken.
        """
        email = (email or "").strip().lower()
        if not EMAIL_RE.match(email):
            raise ValidationError("invalid email address", field="email")
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"password must be at least {MIN_PASSWORD_LENGTH} characters", field="password")
        if not (first_name or "").strip() or not (last_name or "").strip():
            raise ValidationError("first and last name are required", field="firstName")
        role = _enum_value(Role, role, "role")
        if self.user_repo.get_by_email(email):
            raise ConflictError("a user with this email already exists")
        user = self.user_repo.create(
            models.User(
                email=email,
                password_hash=PWD_CTX.hash(password),
                first_name=first_name.strip(),
                last_name=last_name.strip(),
                phone=phone,
                role=role,
                certification_status=models.CertificationStatus.ENROLLED.value if role == Role.STUDENT.value else None,
            )
        )
        logger.info("user_registered user_id=%s role=%s", user.id, role)
        self._notify_admins(user)
        return user

    def _notify_admins(self, user: models.User) -> None:
        admins = [a for a in self.user_repo.list_by_roles([Role.ADMIN.value]) if a.id != user.id]
        if not admins:
            return
        NotificationService(self.session).send_bulk_notifications(
            NotificationRequest(
                user_id=a.id,
                type=NotificationType.USER_REGISTRATION,
                title="New User Registration",
                message=f"{user.full_name} registered as {user.role.lower()}.",
                data={"userId": user.id, "role": user.role},
                priority=models.NotificationPriority.LOW,
            )
            for a in admins
        )

    def create_access_token(self, user: models.User) -> str:
        expire = utcnow() + timedelta(hours=settings.JWT_EXPIRE_HOURS)
        payload = {
            "user_id": user.id,
            "email": user.email,
            "role": user.role,
            "exp": expire,
        }
        return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)

    def authenticate(self, email: str, password: str):
        """Verify credentials and return `(token, user)`.

        Unknown email, wrong password and non-active accounts all raise
        `AuthError`.
        """
        user = self.user_repo.get_by_email(email or "")
        if not user or not PWD_CTX.verify(password or "", user.password_hash):
            raise AuthError("invalid credentials")
        if user.status != models.AccountStatus.ACTIVE.value:
            raise AuthError("account is not active")
        return self.create_access_token(user), user

    def create_reset_token(self, email: str) -> Optional[str]:
        """Return a short-lived reset token, or None for an unknown email."""
        user = self.user_repo.get_by_email(email or "")
        if not user:
            logger.info("password_reset_requested unknown_email")
            return None
        expire = utcnow() + timedelta(minutes=settings.RESET_TOKEN_EXPIRE_MINUTES)
        payload = {"user_id": user.id, "email": user.email, "type": RESET_TOKEN_TYPE, "exp": expire}
        logger.info("password_reset_requested user_id=%s", user.id)
        return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)

    def reset_password(self, token: str, new_password: str) -> models.User:
        if not new_password or len(new_password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"password must be at least {MIN_PASSWORD_LENGTH} characters", field="password")
        try:
            payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
        except jwt.ExpiredSignatureError:
            raise ValidationError("reset token expired", field="token")
        except jwt.InvalidTokenError:
            raise ValidationError("invalid reset token", field="token")
        if payload.get("type") != RESET_TOKEN_TYPE:
            raise ValidationError("invalid reset token", field="token")
        user = self.user_repo.get(payload.get("user_id"))
        if not user:
            raise ValidationError("invalid reset token", field="token")
        user.password_hash = PWD_CTX.hash(new_password)
        user = self.user_repo.save(user)
        NotificationService(self.session).send_notification(
            user.id,
            NotificationType.SECURITY_ALERT,
            "Password Changed",
            "Your password was reset. If this wasn't you, contact support immediately.",
            priority=models.NotificationPriority.HIGH,
        )
        return user


class ProgressService:
    """Hours, milestones and weekly trends for a student's certification track."""

    MILESTONES = (
        # (type, hours threshold, in-progress floor, name, description)
        ("FIRST_SESSION", 0, None, "First Session", "Complete your first consultation session"),
        ("TEN_HOURS", 10, 0, "10 Hours", "Complete 10 hours of consultation"),
        ("TWENTY_HOURS", 20, 10, "20 Hours", "Complete 20 hours of consultation"),
        ("THIRTY_HOURS", 30, 20, "30 Hours", "Complete 30 hours of consultation"),
        ("FORTY_HOURS", 40, 30, "40 Hours", "Complete 40 hours of consultation"),
        ("CERTIFICATION_READY", 40, 35, "Certification Ready", "Ready for certification"),
    )

    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)
        self.session_repo = repositories.TrainingSessionRepository(session)
        self.notification_repo = repositories.NotificationRepository(session)

    def _sessions(self, student_id: int, start: Optional[datetime] = None, end: Optional[datetime] = None):
        sessions = self.session_repo.list_for_student(student_id)
        if start:
            sessions = [s for s in sessions if s.scheduled_start >= start]
        if end:
            sessions = [s for s in sessions if s.scheduled_start <= end]
        return sessions

    @staticmethod
    def _is_verified(s: models.TrainingSession) -> bool:
        return s.status == models.SessionStatus.COMPLETED.value and s.consultant_verified_at is not None

    def consultant_names(self, sessions) -> Dict[int, str]:
        names = {}
        for consultant_id in {s.consultant_id for s in sessions}:
            consultant = self.user_repo.get(consultant_id)
            names[consultant_id] = consultant.full_name if consultant else "Unknown"
        return names

    @staticmethod
    def _weekly_average(verified) -> float:
        if not verified:
            return DEFAULT_WEEKLY_HOURS
        total = sum(session_duration_hours(s) for s in verified)
        first = min(s.actual_start or s.scheduled_start for s in verified)
        last = max(_session_date(s) for s in verified)
        weeks = max(1.0, (last - first).total_seconds() / (7 * 24 * 3600))
        return total / weeks or DEFAULT_WEEKLY_HOURS

    @staticmethod
    def _weekly_progress(verified) -> List[dict]:
        weeks: Dict = {}
        for s in verified:
            key = week_start(_session_date(s))
            entry = weeks.setdefault(key, {"hours": 0.0, "sessions": 0, "ratings": []})
            entry["hours"] += session_duration_hours(s)
            entry["sessions"] += 1
            if s.rating:
                entry["ratings"].append(s.rating)
        out = []
        previous = None
        for key in sorted(weeks):
            entry = weeks[key]
            trend = "stable"
            if previous is not None and entry["hours"] > previous:
                trend = "increasing"
            elif previous is not None and entry["hours"] < previous:
                trend = "decreasing"
            previous = entry["hours"]
            ratings = entry["ratings"]
            out.append({
                "weekStart": key.isoformat(),
                "weekEnd": (key + timedelta(days=6)).isoformat(),
                "hoursCompleted": round(entry["hours"], 2),
                "sessionsCompleted": entry["sessions"],
                "averageRating": round(sum(ratings) / len(ratings), 2) if ratings else 0,
                "trend": trend,
            })
        return out[-12:]

    @staticmethod
    def _achieved_at(verified_oldest_first, target_hours: float) -> Optional[str]:
        total = 0.0
        for s in verified_oldest_first:
            total += session_duration_hours(s)
            if total >= target_hours:
                return isoformat(_session_date(s))
        return None

    def _milestones(self, hours: float, verified) -> List[dict]:
        oldest_first = sorted(verified, key=_session_date)
        out = []
        for mtype, threshold, floor, name, description in self.MILESTONES:
            if mtype == "FIRST_SESSION":
                reached = bool(verified)
                in_progress = False
                achieved = isoformat(_session_date(oldest_first[0])) if reached else None
            else:
                reached = hours >= threshold
                in_progress = not reached and hours > floor
                achieved = self._achieved_at(oldest_first, threshold) if reached else None
            status = "MILESTONE_REACHED" if reached else "IN_PROGRESS" if in_progress else "NOT_STARTED"
            out.append({
                "type": mtype,
                "status": status,
                "hoursRequired": threshold,
                "achievedAt": achieved,
                "name": name,
                "description": description,
            })
        return out

    @staticmethod
    def _next_milestone(hours: float, weekly_average: float) -> Optional[dict]:
        for mtype, threshold, _, name, description in ProgressService.MILESTONES[:5]:
            if threshold > hours:
                remaining = threshold - hours
                weeks = math.ceil(remaining / weekly_average)
                return {
                    "type": mtype,
                    "name": name,
                    "description": description,
                    "hoursRequired": threshold,
                    "hoursRemaining": round(remaining, 2),
                    "estimatedDate": (utcnow() + timedelta(weeks=weeks)).date().isoformat(),
                }
        return None

    @staticmethod
    def _consultant_distribution(verified, names: Dict[int, str]) -> List[dict]:
        total = sum(session_duration_hours(s) for s in verified)
        by_consultant: Dict[int, dict] = {}
        for s in verified:
            entry = by_consultant.setdefault(
                s.consultant_id,
                {"consultantId": s.consultant_id, "consultantName": names.get(s.consultant_id), "sessionsCount": 0, "totalHours": 0.0, "ratings": []},
            )
            entry["sessionsCount"] += 1
            entry["totalHours"] += session_duration_hours(s)
            if s.rating:
                entry["ratings"].append(s.rating)
        out = []
        for entry in by_consultant.values():
            ratings = entry.pop("ratings")
            entry["averageRating"] = round(sum(ratings) / len(ratings), 2) if ratings else 0
            entry["percentage"] = round(entry["totalHours"] / total * 100, 2) if total else 0
            entry["totalHours"] = round(entry["totalHours"], 2)
            out.append(entry)
        return sorted(out, key=lambda e: e["totalHours"], reverse=True)

    @staticmethod
    def _current_streak(verified) -> int:
        cutoff = utcnow() - timedelta(days=7)
        return sum(1 for s in verified if _session_date(s) >= cutoff)

    def get_progress(self, student_id: int, start: Optional[datetime] = None, end: Optional[datetime] = None) -> dict:
        """Compute the full progress overview for one student."""
        if not self.user_repo.get(student_id):
            raise NotFoundError("student", student_id)
        sessions = self._sessions(student_id, start, end)
        verified = [s for s in sessions if self._is_verified(s)]
        pending = [
            s for s in sessions
            if s.status in (models.SessionStatus.SCHEDULED.value, models.SessionStatus.CONFIRMED.value, models.SessionStatus.IN_PROGRESS.value)
        ]
        verified_hours = sum(session_duration_hours(s) for s in verified)
        pending_hours = sum((s.scheduled_end - s.scheduled_start).total_seconds() / 3600.0 for s in pending)
        weekly_average = self._weekly_average(verified)
        remaining = max(REQUIRED_HOURS - verified_hours, 0)
        weeks_left = math.ceil(remaining / weekly_average) if remaining else 0
        if remaining == 0:
            estimated = utcnow().date()
        elif verified:
            estimated = (max(_session_date(s) for s in verified) + timedelta(weeks=weeks_left)).date()
        else:
            estimated = (utcnow() + timedelta(weeks=math.ceil(REQUIRED_HOURS / DEFAULT_WEEKLY_HOURS))).date()
        names = self.consultant_names(sessions)
        average_minutes = (verified_hours / len(verified) * 60) if verified else DEFAULT_SESSION_MINUTES
        return {
            "studentId": student_id,
            "totalVerifiedHours": round(verified_hours, 2),
            "totalPendingHours": round(pending_hours, 2),
            "totalProjectedHours": round(verified_hours + weekly_average * weeks_left, 2),
            "completionPercentage": round(min(verified_hours / REQUIRED_HOURS * 100, 100), 2),
            "remainingHours": round(remaining, 2),
            "estimatedCompletionDate": estimated.isoformat(),
            "weeklyProgress": self._weekly_progress(verified),
            "milestoneStatus": self._milestones(verified_hours, verified),
            "consultantDistribution": self._consultant_distribution(verified, names),
            "sessionHistory": [serialize_session(s, names) for s in sessions],
            "currentStreak": self._current_streak(verified),
            "averageSessionLength": round(average_minutes, 1),
            "lastSessionDate": isoformat(max(_session_date(s) for s in verified)) if verified else None,
            "nextMilestone": self._next_milestone(verified_hours, weekly_average),
        }

    def get_milestones(self, student_id: int) -> List[dict]:
        return self.get_progress(student_id)["milestoneStatus"]

    def get_weekly_progress(self, student_id: int, weeks: int = 12) -> List[dict]:
        weekly = self.get_progress(student_id)["weeklyProgress"]
        return weekly[-weeks:] if weeks > 0 else []

    def get_analytics(self, student_id: int, start: Optional[datetime] = None, end: Optional[datetime] = None) -> dict:
        start, end = to_utc_naive(start), to_utc_naive(end)
        if start and end and start > end:
            raise ValidationError("start must be before end", field="startDate")
        progress = self.get_progress(student_id, start, end)
        weekly = progress["weeklyProgress"]
        return {
            "totalSessions": len(progress["sessionHistory"]),
            "averageSessionLength": progress["averageSessionLength"],
            "completionRate": progress["completionPercentage"],
            "weeklyAverage": round(sum(w["hoursCompleted"] for w in weekly) / len(weekly), 2) if weekly else 0,
            "consultantCount": len(progress["consultantDistribution"]),
            "currentStreak": progress["currentStreak"],
            "estimatedCompletion": progress["estimatedCompletionDate"],
        }

    def get_session_history(self, student_id: int, statuses: Sequence[str] = (), limit: int = 20, offset: int = 0) -> dict:
        return StudentService(self.session).get_student_sessions(student_id, statuses, limit, offset)

    def refresh_progress(self, student_id: int) -> dict:
        """Recompute progress and notify newly reached milestones.

        Each milestone is announced at most once per student, as is
        certification eligibility.
        """
        progress = self.get_progress(student_id)
        notifier = NotificationService(self.session)
        announced = {
            (n.data or {}).get("milestone")
            for n in self.notification_repo.list_by_type(student_id, NotificationType.MILESTONE_REACHED.value)
        }
        sent = 0
        hours = progress["totalVerifiedHours"]
        for milestone in progress["milestoneStatus"]:
            if milestone["status"] != "MILESTONE_REACHED" or milestone["type"] in announced:
                continue
            if milestone["type"] == "CERTIFICATION_READY":
                continue
            notifier.send_milestone_notification(
                student_id, milestone["name"], hours, milestone=milestone["type"]
            )
            sent += 1
        if hours >= REQUIRED_HOURS and not self.notification_repo.list_by_type(
            student_id, NotificationType.CERTIFICATION_ELIGIBLE.value
        ):
            notifier.send_certification_eligible_notification(student_id)
            student = self.user_repo.get(student_id)
            if student.role == Role.STUDENT.value:
                student.certification_status = models.CertificationStatus.READY_FOR_CERTIFICATION.value
                self.user_repo.save(student)
            sent += 1
        logger.info("progress_refreshed student_id=%s hours=%s notifications=%d", student_id, hours, sent)
        return {"progress": progress, "notificationsSent": sent}


class StudentService:
    """Student-facing views over sessions and certification status."""
    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)
        self.session_repo = repositories.TrainingSessionRepository(session)

    def get_student(self, student_id: int) -> models.User:
        student = self.user_repo.get(student_id)
        if not student or student.role != Role.STUDENT.value:
            raise NotFoundError("student", student_id)
        return student

    def get_student_progress(self, student_id: int) -> dict:
        self.get_student(student_id)
        progress = ProgressService(self.session).get_progress(student_id)
        keys = (
            "studentId", "totalVerifiedHours", "totalPendingHours", "totalProjectedHours",
            "completionPercentage", "remainingHours", "milestoneStatus", "consultantDistribution",
            "nextMilestone",
        )
        return {k: progress[k] for k in keys}

    def get_student_sessions(self, student_id: int, statuses: Sequence[str] = (), limit: int = 20, offset: int = 0) -> dict:
        self.get_student(student_id)
        statuses = [_enum_value(models.SessionStatus, s, "status") for s in statuses]
        sessions = self.session_repo.list_for_student(student_id, statuses, limit, offset)
        total = self.session_repo.count_for_student(student_id, statuses)
        names = ProgressService(self.session).consultant_names(sessions)
        return {
            "sessions": [serialize_session(s, names) for s in sessions],
            "total": total,
            "hasMore": offset + len(sessions) < total,
        }

    ADMIN_ONLY_STATUSES = (
        models.CertificationStatus.CONSULTATION_ACCESS_GRANTED.value,
        models.CertificationStatus.READY_FOR_CERTIFICATION.value,
        models.CertificationStatus.CERTIFIED.value,
        models.CertificationStatus.SUSPENDED.value,
    )

    def update_student_status(self, student_id: int, status: str, actor: models.User) -> models.User:
        """Set a certification status; granting access or certification is reserved for admins."""
        student = self.get_student(student_id)
        status = _enum_value(models.CertificationStatus, status, "status")
        if status in self.ADMIN_ONLY_STATUSES and actor.role != Role.ADMIN.value:
            raise PermissionDeniedError(f"only admins can set {status}")
        student.certification_status = status
        return self.user_repo.save(student)


class SchedulingService:
    """Book consultation sessions and move them through their lifecycle."""

    MIN_NOTICE = timedelta(hours=24)
    MAX_DURATION_MINUTES = 240
    BLOCKING_STATUSES = (
        models.SessionStatus.SCHEDULED.value,
        models.SessionStatus.CONFIRMED.value,
        models.SessionStatus.RESCHEDULED.value,
    )
    RESCHEDULABLE_STATUSES = BLOCKING_STATUSES + (models.SessionStatus.TECHNICAL_ISSUE.value,)
    # COMPLETED, CANCELLED and NO_SHOW are terminal; RESCHEDULED is only
    # reached through `reschedule_session`.
    TRANSITIONS = {
        models.SessionStatus.SCHEDULED.value: {"CONFIRMED", "IN_PROGRESS", "COMPLETED", "CANCELLED", "NO_SHOW"},
        models.SessionStatus.CONFIRMED.value: {"IN_PROGRESS", "COMPLETED", "CANCELLED", "NO_SHOW"},
        models.SessionStatus.RESCHEDULED.value: {"CONFIRMED", "IN_PROGRESS", "COMPLETED", "CANCELLED", "NO_SHOW"},
        models.SessionStatus.IN_PROGRESS.value: {"COMPLETED", "TECHNICAL_ISSUE", "CANCELLED"},
        models.SessionStatus.TECHNICAL_ISSUE.value: {"IN_PROGRESS", "COMPLETED", "CANCELLED"},
    }
    CONSULTANT_ONLY = {models.SessionStatus.COMPLETED.value, models.SessionStatus.NO_SHOW.value}

    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)
        self.session_repo = repositories.TrainingSessionRepository(session)

    def get_session(self, session_id: int) -> models.TrainingSession:
        training_session = self.session_repo.get(session_id)
        if not training_session:
            raise NotFoundError("session", session_id)
        return training_session

    def book_session(
        self,
        student_id: int,
        consultant_id: int,
        start: datetime,
        duration_minutes: int = DEFAULT_SESSION_MINUTES,
        now: Optional[datetime] = None,
    ) -> models.TrainingSession:
        """Book a session and fan out the booking notifications."""
        student = self.user_repo.get(student_id)
        if not student or student.role != Role.STUDENT.value:
            raise NotFoundError("student", student_id)
        consultant = self.user_repo.get(consultant_id)
        if not consultant or consultant.role != Role.CONSULTANT.value:
            raise NotFoundError("consultant", consultant_id)
        now = to_utc_naive(now) or utcnow()
        start = to_utc_naive(start)
        end = self._check_slot(consultant_id, start, duration_minutes, now)
        training_session = self.session_repo.create(
            models.TrainingSession(
                student_id=student_id,
                consultant_id=consultant_id,
                scheduled_start=start,
                scheduled_end=end,
            )
        )
        logger.info("session_booked session_id=%s student_id=%s consultant_id=%s", training_session.id, student_id, consultant_id)
        NotificationService(self.session).send_session_notifications(training_session.id, now=now)
        return training_session

    def _check_slot(
        self,
        consultant_id: int,
        start: datetime,
        duration_minutes: int,
        now: datetime,
        ignore_session_id: Optional[int] = None,
    ) -> datetime:
        """Validate notice, duration and consultant availability; return the end time."""
        if not 0 < duration_minutes <= self.MAX_DURATION_MINUTES:
            raise ValidationError(f"duration must be between 1 and {self.MAX_DURATION_MINUTES} minutes", field="duration")
        if start - now < self.MIN_NOTICE:
            raise ValidationError("sessions must be booked at least 24 hours in advance", field="scheduledStart")
        end = start + timedelta(minutes=duration_minutes)
        clashes = [
            s for s in self.session_repo.list_overlapping(consultant_id, start, end, self.BLOCKING_STATUSES)
            if s.id != ignore_session_id
        ]
        if clashes:
            raise ConflictError("consultant is already booked for this time slot")
        return end

    def reschedule_session(
        self,
        session_id: int,
        actor: models.User,
        new_start: datetime,
        duration_minutes: Optional[int] = None,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> models.TrainingSession:
        """Move a live session to a new slot.

        Pending reminders for the old slot are cancelled, both participants
        get `SESSION_RESCHEDULED` and reminders are scheduled for the new
        slot. The duration is kept unless a new one is given.
        """
        training_session = self.get_session(session_id)
        ensure_participant(training_session, actor)
        if training_session.status not in self.RESCHEDULABLE_STATUSES:
            raise ConflictError(f"a {training_session.status} session cannot be rescheduled")
        if duration_minutes is None:
            duration_minutes = round((training_session.scheduled_end - training_session.scheduled_start).total_seconds() / 60)
        now = to_utc_naive(now) or utcnow()
        new_start = to_utc_naive(new_start)
        new_end = self._check_slot(training_session.consultant_id, new_start, duration_minutes, now, training_session.id)

        previous = training_session.scheduled_start
        training_session.scheduled_start = new_start
        training_session.scheduled_end = new_end
        training_session.status = models.SessionStatus.RESCHEDULED.value
        if reason:
            note = f"Rescheduled: {reason}"
            training_session.student_notes = f"{training_session.student_notes}\n{note}" if training_session.student_notes else note
        training_session = self.session_repo.save(training_session)
        logger.info("session_rescheduled session_id=%s from=%s to=%s", training_session.id, isoformat(previous), isoformat(new_start))

        notifier = NotificationService(self.session)
        notifier.cancel_session_reminders(training_session)
        old_when = previous.strftime("%Y-%m-%d %H:%M UTC")
        new_when = new_start.strftime("%Y-%m-%d %H:%M UTC")
        message = f"Your consultation session on {old_when} has moved to {new_when}."
        if reason:
            message += f" Reason: {reason}"
        notifier.send_bulk_notifications(
            NotificationRequest(
                user_id=uid,
                type=NotificationType.SESSION_RESCHEDULED,
                title="Session Rescheduled",
                message=message,
                data={
                    "sessionId": training_session.id,
                    "previousStart": isoformat(previous),
                    "scheduledStart": isoformat(new_start),
                    "duration": duration_minutes,
                    "reason": reason,
                },
                priority=models.NotificationPriority.HIGH,
            )
            for uid in (training_session.student_id, training_session.consultant_id)
        )
        notifier.schedule_session_reminders(training_session, now=now)
        return training_session

    def update_session_status(
        self,
        session_id: int,
        status: str,
        actor: models.User,
        actual_start: Optional[datetime] = None,
        actual_end: Optional[datetime] = None,
    ) -> models.TrainingSession:
        """Apply one lifecycle transition.

        Only transitions listed in `TRANSITIONS` are accepted; completed,
        cancelled and no-show sessions are final, so their actual times
        cannot change once a consultant has verified them.
        """
        training_session = self.get_session(session_id)
        ensure_participant(training_session, actor)
        status = _enum_value(models.SessionStatus, status, "status")
        if status not in self.TRANSITIONS.get(training_session.status, ()):
            raise ConflictError(f"cannot move a {training_session.status} session to {status}")
        if status in self.CONSULTANT_ONLY and actor.id != training_session.consultant_id and actor.role != Role.ADMIN.value:
            raise PermissionDeniedError(f"only the consultant can mark a session {status}")
        now = utcnow()
        if status == models.SessionStatus.IN_PROGRESS.value:
            training_session.actual_start = to_utc_naive(actual_start) or training_session.actual_start or now
        elif status == models.SessionStatus.COMPLETED.value:
            training_session.actual_start = (
                to_utc_naive(actual_start) or training_session.actual_start or training_session.scheduled_start
            )
            training_session.actual_end = to_utc_naive(actual_end) or training_session.actual_end or now
            if training_session.actual_end <= training_session.actual_start:
                raise ValidationError("actual end must be after actual start", field="actualEnd")
        training_session.status = status
        training_session = self.session_repo.save(training_session)
        self._notify_status_change(training_session)
        return training_session

    def _notify_status_change(self, training_session: models.TrainingSession) -> None:
        notifier = NotificationService(self.session)
        when = training_session.scheduled_start.strftime("%Y-%m-%d %H:%M UTC")
        data = {"sessionId": training_session.id}
        if training_session.status == models.SessionStatus.CANCELLED.value:
            notifier.send_bulk_notifications(
                NotificationRequest(
                    user_id=uid,
                    type=NotificationType.SESSION_CANCELLED,
                    title="Session Cancelled",
                    message=f"The consultation session on {when} has been cancelled.",
                    data=data,
                    priority=models.NotificationPriority.HIGH,
                )
                for uid in (training_session.student_id, training_session.consultant_id)
            )
            notifier.cancel_session_reminders(training_session)
        elif training_session.status == models.SessionStatus.COMPLETED.value:
            student = self.user_repo.get(training_session.student_id)
            notifier.send_notification(
                training_session.consultant_id,
                NotificationType.SESSION_VERIFICATION_REQUIRED,
                "Session Verification Required",
                f"Please verify your session with {student.full_name} on {when}.",
                {**data, "studentName": student.full_name},
            )
            notifier.send_notification(
                training_session.student_id,
                NotificationType.SESSION_COMPLETED,
                "Session Completed",
                f"Your consultation session on {when} is complete.",
                data,
            )

    def verify_session(
        self,
        session_id: int,
        actor: models.User,
        rating: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> models.TrainingSession:
        """Stamp the verifier's side of a completed session.

        Consultant verification makes the hours count, so it triggers a
        progress refresh for the student.
        """
        training_session = self.get_session(session_id)
        ensure_participant(training_session, actor)
        if training_session.status != models.SessionStatus.COMPLETED.value:
            raise ValidationError("only completed sessions can be verified", field="status")
        now = utcnow()
        if actor.id == training_session.consultant_id or actor.role == Role.ADMIN.value:
            training_session.consultant_verified_at = training_session.consultant_verified_at or now
        if actor.id == training_session.student_id:
            if rating is not None and not 1 <= rating <= 5:
                raise ValidationError("rating must be between 1 and 5", field="rating")
            training_session.student_verified_at = training_session.student_verified_at or now
            if rating is not None:
                training_session.rating = rating
            if notes is not None:
                training_session.student_notes = notes
        training_session = self.session_repo.save(training_session)
        if training_session.consultant_verified_at:
            ProgressService(self.session).refresh_progress(training_session.student_id)
        return training_session


class DocumentService:
    """Upload, review and list certification documents."""

    ALLOWED_MIME_TYPES = (
        "application/pdf",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "text/plain",
        "image/jpeg",
        "image/png",
    )
    MAX_FILE_NAME_LENGTH = 255
    REVIEW_OUTCOMES = (
        models.ReviewStatus.UNDER_REVIEW.value,
        models.ReviewStatus.APPROVED.value,
        models.ReviewStatus.REJECTED.value,
        models.ReviewStatus.NEEDS_REVISION.value,
    )
    REQUIREMENTS = (
        ("consultationLog", models.DocumentType.CONSULTATION_LOG, True),
        ("evaluationForm", models.DocumentType.EVALUATION_FORM, True),
        ("reflectionPaper", models.DocumentType.REFLECTION_PAPER, True),
        ("caseStudy", models.DocumentType.CASE_STUDY, True),
        ("additionalRequirements", models.DocumentType.ADDITIONAL_REQUIREMENT, False),
    )

    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)
        self.doc_repo = repositories.DocumentRepository(session)

    def upload_document(
        self,
        student_id: int,
        document_type: str,
        file_name: str,
        content: bytes,
        mime_type: str,
    ) -> models.StudentDocument:
        student = self.user_repo.get(student_id)
        if not student or student.role != Role.STUDENT.value:
            raise NotFoundError("student", student_id)
        document_type = _enum_value(models.DocumentType, document_type, "documentType")
        if not file_name:
            raise ValidationError("file name is required", field="file")
        if len(file_name) > self.MAX_FILE_NAME_LENGTH:
            raise ValidationError("file name is too long", field="file")
        if mime_type not in self.ALLOWED_MIME_TYPES:
            raise ValidationError("file type not supported; upload PDF, Word, text or image files", field="file")
        if not content:
            raise ValidationError("file is empty", field="file")
        if len(content) > settings.MAX_UPLOAD_BYTES:
            raise ValidationError(f"file exceeds the {settings.MAX_UPLOAD_BYTES // (1024 * 1024)}MB limit", field="file")

        stored = save_upload(student_id, file_name, content)
        document = self.doc_repo.create(
            models.StudentDocument(
                student_id=student_id,
                document_type=document_type,
                file_name=file_name,
                file_size_bytes=len(content),
                mime_type=mime_type,
                file_path=str(stored),
                version_number=self.doc_repo.latest_version(student_id, document_type) + 1,
            )
        )
        logger.info("document_uploaded document_id=%s student_id=%s version=%s", document.id, student_id, document.version_number)
        NotificationService(self.session).send_notification(
            student_id,
            NotificationType.DOCUMENT_UPLOADED,
            "Document Uploaded",
            f'Your document "{file_name}" was uploaded and is awaiting review.',
            {"documentId": document.id, "documentName": file_name, "documentType": document_type},
            models.NotificationPriority.LOW,
        )
        return document

    def review_document(self, document_id: int, reviewer: models.User, status: str, notes: Optional[str] = None) -> models.StudentDocument:
        if reviewer.role not in (Role.CONSULTANT.value, Role.ADMIN.value):
            raise PermissionDeniedError("only consultants and admins can review documents")
        document = self.doc_repo.get(document_id)
        if not document:
            raise NotFoundError("document", document_id)
        status = _enum_value(models.ReviewStatus, status, "status")
        if status not in self.REVIEW_OUTCOMES:
            raise ValidationError(f"invalid review status: {status!r}", field="status")
        document.review_status = status
        document.reviewed_by = reviewer.id
        document.reviewed_at = utcnow()
        document.review_notes = notes
        document = self.doc_repo.save(document)

        if status != models.ReviewStatus.UNDER_REVIEW.value:
            NotificationService(self.session).send_document_notification(
                document.student_id,
                document.file_name,
                approved=status == models.ReviewStatus.APPROVED.value,
                feedback=notes,
                document_id=document.id,
            )
        return document

    def get_student_documents(
        self,
        student_id: int,
        document_types: Sequence[str] = (),
        review_statuses: Sequence[str] = (),
        limit: int = 20,
        offset: int = 0,
    ) -> dict:
        types = [_enum_value(models.DocumentType, t, "documentType") for t in document_types]
        statuses = [_enum_value(models.ReviewStatus, s, "status") for s in review_statuses]
        documents = self.doc_repo.list_for_student(student_id, types, statuses, limit, offset)
        total = self.doc_repo.count_for_student(student_id, types, statuses)
        return {
            "documents": [serialize_document(d) for d in documents],
            "total": total,
            "hasMore": offset + len(documents) < total,
        }

    def get_document_requirements_status(self, student_id: int) -> dict:
        """Summarize which required document types are submitted and approved."""
        documents = self.doc_repo.list_for_student(student_id)
        out = {}
        for key, document_type, required in self.REQUIREMENTS:
            # newest first, so the first match is the latest version
            latest = next((d for d in documents if d.document_type == document_type.value), None)
            out[key] = {
                "required": required,
                "documentType": document_type.value,
                "submitted": latest is not None,
                "approved": latest is not None and latest.review_status == models.ReviewStatus.APPROVED.value,
                "latestVersion": latest.version_number if latest else None,
                "reviewStatus": latest.review_status if latest else None,
            }
        return out


class VideoService:
    """Video room bookkeeping for consultation sessions."""

    QUALITY_PRESETS = {
        models.VideoQuality.SD.value: {"video": "480p", "audio": "medium", "bandwidth": "low", "frameRate": 24, "bitrate": 500000},
        models.VideoQuality.HD.value: {"video": "720p", "audio": "high", "bandwidth": "medium", "frameRate": 30, "bitrate": 1500000},
        models.VideoQuality.FULL_HD.value: {"video": "1080p", "audio": "high", "bandwidth": "high", "frameRate": 30, "bitrate": 3000000},
    }

    def __init__(self, session: Session):
        self.session = session
        self.session_repo = repositories.TrainingSessionRepository(session)
        self.video_repo = repositories.VideoRepository(session)

    def serialize_room(self, room: models.VideoRoom) -> dict:
        active = self.video_repo.list_participants(room, active_only=True)
        return {
            "id": room.id,
            "sessionId": room.session_id,
            "roomId": room.room_id,
            "joinUrl": f"/video/session/{room.session_id}",
            "guestUrl": f"/video/join/{room.room_id}",
            "recordingEnabled": room.recording_enabled,
            "quality": room.quality,
            "qualitySettings": self.QUALITY_PRESETS[room.quality],
            "startTime": isoformat(room.created_at),
            "endTime": isoformat(room.ended_at),
            "maxParticipants": room.max_participants,
            "currentParticipants": len(active),
            "status": room.status,
        }

    def _new_room_id(self, session_id: int) -> str:
        stamp = int(time.time() * 1000)
        while self.video_repo.get_room(f"room_{session_id}_{stamp}"):
            stamp += 1
        return f"room_{session_id}_{stamp}"

    def create_room(
        self,
        session_id: int,
        actor: models.User,
        recording_enabled: bool = True,
        quality: str = models.VideoQuality.HD.value,
        max_participants: int = 2,
    ) -> models.VideoRoom:
        training_session = self.session_repo.get(session_id)
        if not training_session:
            raise NotFoundError("session", session_id)
        ensure_participant(training_session, actor)
        quality = _enum_value(models.VideoQuality, quality, "quality")
        if max_participants < 2:
            raise ValidationError("a room needs at least 2 participants", field="maxParticipants")
        room = self.video_repo.create_room(
            models.VideoRoom(
                session_id=session_id,
                room_id=self._new_room_id(session_id),
                recording_enabled=recording_enabled,
                quality=quality,
                max_participants=max_participants,
            )
        )
        logger.info("video_room_created room_id=%s session_id=%s", room.room_id, session_id)
        return room

    def _get_room(self, room_id: str) -> models.VideoRoom:
        room = self.video_repo.get_room(room_id)
        if not room:
            raise NotFoundError("video room", room_id)
        return room

    def join_room(self, room_id: str, user: models.User) -> models.VideoParticipant:
        """Add `user` to the room; joining twice returns the existing presence."""
        room = self._get_room(room_id)
        if room.status != models.RoomStatus.ACTIVE.value:
            raise ConflictError("video room has ended")
        ensure_participant(self.session_repo.get(room.session_id), user)
        existing = self.video_repo.get_active_participant(room, user.id)
        if existing:
            return existing
        if len(self.video_repo.list_participants(room, active_only=True)) >= room.max_participants:
            raise ConflictError("video room is full")
        participant = self.video_repo.add_participant(
            models.VideoParticipant(room_pk=room.id, user_id=user.id, role=user.role.lower())
        )
        training_session = self.session_repo.get(room.session_id)
        if training_session.status in SchedulingService.RESCHEDULABLE_STATUSES:
            training_session.status = models.SessionStatus.IN_PROGRESS.value
            training_session.actual_start = training_session.actual_start or participant.join_time
            self.session_repo.save(training_session)
        return participant

    def leave_room(self, room_id: str, user: models.User) -> models.VideoRoom:
        room = self._get_room(room_id)
        participant = self.video_repo.get_active_participant(room, user.id)
        if not participant:
            raise NotFoundError("participant", user.id)
        participant.is_active = False
        participant.leave_time = utcnow()
        self.video_repo.save_participant(participant)
        if not self.video_repo.list_participants(room, active_only=True):
            room.status = models.RoomStatus.ENDED.value
            room.ended_at = participant.leave_time
            room = self.video_repo.save_room(room)
            logger.info("video_room_ended room_id=%s", room.room_id)
        return room

    def get_video_session(self, session_id: int) -> Optional[models.VideoRoom]:
        return self.video_repo.latest_room_for_session(session_id)

    def get_session_analytics(self, session_id: int, now: Optional[datetime] = None) -> dict:
        """Summarize room usage and per-user presence for one session.

        Presence still open at `now` counts up to `now`.
        """
        training_session = self.session_repo.get(session_id)
        if not training_session:
            raise NotFoundError("session", session_id)
        now = to_utc_naive(now) or utcnow()
        rooms = self.video_repo.list_rooms_for_session(session_id)
        activity: Dict[int, dict] = {}
        for room in rooms:
            for p in self.video_repo.list_participants(room):
                entry = activity.setdefault(p.user_id, {"userId": p.user_id, "role": p.role, "joins": 0, "totalMinutes": 0.0})
                entry["joins"] += 1
                entry["totalMinutes"] += ((p.leave_time or now) - p.join_time).total_seconds() / 60
        for entry in activity.values():
            entry["totalMinutes"] = round(entry["totalMinutes"], 1)

        scheduled = (training_session.scheduled_end - training_session.scheduled_start).total_seconds() / 60
        actual = None
        if training_session.actual_start and training_session.actual_end:
            actual = round((training_session.actual_end - training_session.actual_start).total_seconds() / 60, 1)
        latest = rooms[-1] if rooms else None
        return {
            "sessionId": session_id,
            "roomCount": len(rooms),
            "latestRoomId": latest.room_id if latest else None,
            "quality": latest.quality if latest else None,
            "recordingEnabled": latest.recording_enabled if latest else None,
            "scheduledDuration": round(scheduled, 1),
            "actualDuration": actual,
            "participantActivity": sorted(activity.values(), key=lambda e: e["userId"]),
        }
