"""Repository classes encapsulating database operations.

Each repository is small and focused on a single aggregate (users,
notifications, preferences, sessions, documents, video rooms).
Repositories return SQLModel objects and perform commits/refreshes
where appropriate.
"""

from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import func, update
from sqlmodel import Session, select

from . import models
from .utils.dates import utcnow


class UserRepository:
    """CRUD operations for `User` objects."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, user: models.User) -> models.User:
        """Persist a new user and return the managed instance."""
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def save(self, user: models.User) -> models.User:
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def get_by_email(self, email: str) -> Optional[models.User]:
        """Return a `User` by email (case-insensitive) or `None` if not found."""
        stmt = select(models.User).where(func.lower(models.User.email) == email.strip().lower())
        return self.session.exec(stmt).first()

    def get(self, user_id: int) -> Optional[models.User]:
        """Get a `User` by primary key."""
        return self.session.get(models.User, user_id)

    def list_by_roles(self, roles: Sequence[str]) -> List[models.User]:
        stmt = select(models.User).where(models.User.role.in_(list(roles)))
        return self.session.exec(stmt).all()


class NotificationRepository:
    """Persistence and read-state transitions for in-app notifications."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, notification: models.Notification) -> models.Notification:
        self.session.add(notification)
        self.session.commit()
        self.session.refresh(notification)
        return notification

    def get(self, notification_id: int) -> Optional[models.Notification]:
        return self.session.get(models.Notification, notification_id)

    def list_for_user(self, user_id: int, limit: int, offset: int) -> List[models.Notification]:
        """Return a page of the user's notifications, newest first."""
        stmt = (
            select(models.Notification)
            .where(models.Notification.user_id == user_id)
            .order_by(models.Notification.created_at.desc(), models.Notification.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return self.session.exec(stmt).all()

    def list_by_type(self, user_id: int, notification_type: str) -> List[models.Notification]:
        stmt = select(models.Notification).where(
            models.Notification.user_id == user_id,
            models.Notification.type == notification_type,
        )
        return self.session.exec(stmt).all()

    def count_for_user(self, user_id: int) -> int:
        stmt = select(func.count()).select_from(models.Notification).where(models.Notification.user_id == user_id)
        return int(self.session.exec(stmt).one())

    def count_unread(self, user_id: int) -> int:
        """Count the user's notifications whose read flag is still False."""
        stmt = select(func.count()).select_from(models.Notification).where(
            models.Notification.user_id == user_id,
            models.Notification.read == False,  # noqa: E712
        )
        return int(self.session.exec(stmt).one())

    def mark_read(self, notification: models.Notification, when: datetime) -> models.Notification:
        """Flip one notification to read; an already-read row is left untouched."""
        if notification.read:
            return notification
        notification.read = True
        notification.read_at = when
        self.session.add(notification)
        self.session.commit()
        self.session.refresh(notification)
        return notification

    def mark_all_read(self, user_id: int, when: datetime) -> int:
        """Mark every unread notification of `user_id` as read in one statement.

        Returns the number of rows changed (0 when nothing was unread).
        """
        stmt = (
            update(models.Notification)
            .where(
                models.Notification.user_id == user_id,
                models.Notification.read == False,  # noqa: E712
            )
            .values(read=True, read_at=when)
        )
        result = self.session.exec(stmt)
        self.session.commit()
        return result.rowcount or 0


class ScheduledNotificationRepository:
    """Pending reminders and their delivery state."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, item: models.ScheduledNotification) -> models.ScheduledNotification:
        self.session.add(item)
        self.session.commit()
        self.session.refresh(item)
        return item

    def list_due(self, now: datetime) -> List[models.ScheduledNotification]:
        stmt = (
            select(models.ScheduledNotification)
            .where(
                models.ScheduledNotification.status == models.ScheduledStatus.PENDING.value,
                models.ScheduledNotification.scheduled_for <= now,
            )
            .order_by(models.ScheduledNotification.scheduled_for)
        )
        return self.session.exec(stmt).all()

    def list_for_user(self, user_id: int) -> List[models.ScheduledNotification]:
        stmt = (
            select(models.ScheduledNotification)
            .where(models.ScheduledNotification.user_id == user_id)
            .order_by(models.ScheduledNotification.scheduled_for)
        )
        return self.session.exec(stmt).all()

    def set_status(self, item: models.ScheduledNotification, status: str, when: Optional[datetime] = None) -> None:
        item.status = status
        if status == models.ScheduledStatus.SENT.value:
            item.sent_at = when or utcnow()
        self.session.add(item)
        self.session.commit()


class PreferenceRepository:
    """Upsert and lookup of per-user notification preferences."""
    def __init__(self, session: Session):
        self.session = session

    def get_for_user(self, user_id: int) -> Optional[models.NotificationPreference]:
        stmt = select(models.NotificationPreference).where(models.NotificationPreference.user_id == user_id)
        return self.session.exec(stmt).first()

    def upsert(self, user_id: int, changes: dict) -> models.NotificationPreference:
        """Create the preference row if missing, then apply `changes`."""
        pref = self.get_for_user(user_id)
        if pref is None:
            pref = models.NotificationPreference(user_id=user_id)
        for key, value in changes.items():
            setattr(pref, key, value)
        pref.updated_at = utcnow()
        self.session.add(pref)
        self.session.commit()
        self.session.refresh(pref)
        return pref


class TrainingSessionRepository:
    """Consultation sessions for students and consultants."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, training_session: models.TrainingSession) -> models.TrainingSession:
        self.session.add(training_session)
        self.session.commit()
        self.session.refresh(training_session)
        return training_session

    def save(self, training_session: models.TrainingSession) -> models.TrainingSession:
        return self.create(training_session)

    def get(self, session_id: int) -> Optional[models.TrainingSession]:
        return self.session.get(models.TrainingSession, session_id)

    def _student_filter(self, student_id: int, statuses: Optional[Sequence[str]]):
        stmt = select(models.TrainingSession).where(models.TrainingSession.student_id == student_id)
        if statuses:
            stmt = stmt.where(models.TrainingSession.status.in_(list(statuses)))
        return stmt

    def list_for_student(
        self,
        student_id: int,
        statuses: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[models.TrainingSession]:
        """Return the student's sessions, most recent scheduled start first."""
        stmt = self._student_filter(student_id, statuses).order_by(
            models.TrainingSession.scheduled_start.desc(), models.TrainingSession.id.desc()
        )
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        return self.session.exec(stmt).all()

    def count_for_student(self, student_id: int, statuses: Optional[Sequence[str]] = None) -> int:
        stmt = select(func.count()).select_from(models.TrainingSession).where(
            models.TrainingSession.student_id == student_id
        )
        if statuses:
            stmt = stmt.where(models.TrainingSession.status.in_(list(statuses)))
        return int(self.session.exec(stmt).one())

    def list_overlapping(self, consultant_id: int, start: datetime, end: datetime, statuses: Sequence[str]) -> List[models.TrainingSession]:
        """Return the consultant's sessions in `statuses` that overlap [start, end)."""
        stmt = select(models.TrainingSession).where(
            models.TrainingSession.consultant_id == consultant_id,
            models.TrainingSession.status.in_(list(statuses)),
            models.TrainingSession.scheduled_start < end,
            models.TrainingSession.scheduled_end > start,
        )
        return self.session.exec(stmt).all()


class DocumentRepository:
    """Uploaded student documents."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, document: models.StudentDocument) -> models.StudentDocument:
        self.session.add(document)
        self.session.commit()
        self.session.refresh(document)
        return document

    def save(self, document: models.StudentDocument) -> models.StudentDocument:
        return self.create(document)

    def get(self, document_id: int) -> Optional[models.StudentDocument]:
        return self.session.get(models.StudentDocument, document_id)

    def list_for_student(
        self,
        student_id: int,
        document_types: Optional[Sequence[str]] = None,
        review_statuses: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[models.StudentDocument]:
        stmt = select(models.StudentDocument).where(models.StudentDocument.student_id == student_id)
        if document_types:
            stmt = stmt.where(models.StudentDocument.document_type.in_(list(document_types)))
        if review_statuses:
            stmt = stmt.where(models.StudentDocument.review_status.in_(list(review_statuses)))
        stmt = stmt.order_by(models.StudentDocument.uploaded_at.desc(), models.StudentDocument.id.desc())
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        return self.session.exec(stmt).all()

    def count_for_student(
        self,
        student_id: int,
        document_types: Optional[Sequence[str]] = None,
        review_statuses: Optional[Sequence[str]] = None,
    ) -> int:
        stmt = select(func.count()).select_from(models.StudentDocument).where(
            models.StudentDocument.student_id == student_id
        )
        if document_types:
            stmt = stmt.where(models.StudentDocument.document_type.in_(list(document_types)))
        if review_statuses:
            stmt = stmt.where(models.StudentDocument.review_status.in_(list(review_statuses)))
        return int(self.session.exec(stmt).one())

    def latest_version(self, student_id: int, document_type: str) -> int:
        """Return the highest version number for a student/type pair (0 if none)."""
        stmt = select(func.max(models.StudentDocument.version_number)).where(
            models.StudentDocument.student_id == student_id,
            models.StudentDocument.document_type == document_type,
        )
        return int(self.session.exec(stmt).one() or 0)


class VideoRepository:
    """Video rooms and their participants."""
    def __init__(self, session: Session):
        self.session = session

    def create_room(self, room: models.VideoRoom) -> models.VideoRoom:
        self.session.add(room)
        self.session.commit()
        self.session.refresh(room)
        return room

    def save_room(self, room: models.VideoRoom) -> models.VideoRoom:
        return self.create_room(room)

    def get_room(self, room_id: str) -> Optional[models.VideoRoom]:
        stmt = select(models.VideoRoom).where(models.VideoRoom.room_id == room_id)
        return self.session.exec(stmt).first()

    def latest_room_for_session(self, session_id: int) -> Optional[models.VideoRoom]:
        stmt = (
            select(models.VideoRoom)
            .where(models.VideoRoom.session_id == session_id)
            .order_by(models.VideoRoom.created_at.desc(), models.VideoRoom.id.desc())
        )
        return self.session.exec(stmt).first()

    def list_rooms_for_session(self, session_id: int) -> List[models.VideoRoom]:
        stmt = (
            select(models.VideoRoom)
            .where(models.VideoRoom.session_id == session_id)
            .order_by(models.VideoRoom.created_at, models.VideoRoom.id)
        )
        return self.session.exec(stmt).all()

    def list_participants(self, room: models.VideoRoom, active_only: bool = False) -> List[models.VideoParticipant]:
        stmt = select(models.VideoParticipant).where(models.VideoParticipant.room_pk == room.id)
        if active_only:
            stmt = stmt.where(models.VideoParticipant.is_active == True)  # noqa: E712
        return self.session.exec(stmt).all()

    def get_active_participant(self, room: models.VideoRoom, user_id: int) -> Optional[models.VideoParticipant]:
        stmt = select(models.VideoParticipant).where(
            models.VideoParticipant.room_pk == room.id,
            models.VideoParticipant.user_id == user_id,
            models.VideoParticipant.is_active == True,  # noqa: E712
        )
        return self.session.exec(stmt).first()

    def add_participant(self, participant: models.VideoParticipant) -> models.VideoParticipant:
        self.session.add(participant)
        self.session.commit()
        self.session.refresh(participant)
        return participant

    def save_participant(self, participant: models.VideoParticipant) -> models.VideoParticipant:
        return self.add_participant(participant)
