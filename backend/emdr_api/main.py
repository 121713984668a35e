"""FastAPI application entrypoint and HTTP controllers.

This module defines the HTTP endpoints of the EMDR training platform
backend. Controllers are intentionally thin: they accept requests,
authenticate, delegate to one service operation and return JSON.

Endpoints implemented:
- POST /auth/register, POST /auth/login, GET /auth/me
- POST /auth/forgot-password, POST /auth/reset-password
- GET/POST/PUT /notifications, POST /notifications/session
- GET/PUT /notifications/preferences
- GET /students/me/progress, GET /students/me/sessions, PUT /students/me/status
- GET /students/{id}/progress, GET /students/{id}/sessions
- POST /sessions, GET /sessions/{id}, PUT /sessions/{id}/status
- POST /sessions/{id}/reschedule, POST /sessions/{id}/verify
- GET /documents, GET /documents/requirements
- POST /documents/upload, POST /documents/{id}/review
- GET /progress/overview|milestones|weekly|analytics|sessions, POST /progress/refresh
- POST /video/rooms, POST /video/rooms/{roomId}/join|leave
- GET /video/sessions/{sessionId}, GET /video/sessions/{sessionId}/analytics
- GET/POST /test/webhook (dev only)
- GET /health
"""

import json
import logging
import time
import uuid
from datetime import datetime
from typing import Annotated, Optional

from fastapi import Body, Depends, FastAPI, File, Form, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from sqlmodel import Session

from . import models, repositories, services
from .auth import ensure_self_or_admin, get_current_user, require_roles
from .config import settings
from .database import create_db_and_tables, get_session
from .errors import AppError, ErrorKind, HTTP_STATUS, NotFoundError, PermissionDeniedError, ValidationError
from .models import Role
from .notifications import NotificationService, serialize_notification
from .schemas import (
    DocumentReviewIn,
    ForgotPasswordIn,
    LoginIn,
    MarkAllReadRequest,
    MarkReadRequest,
    NotificationIn,
    PreferencesUpdate,
    RegisterIn,
    ResetPasswordIn,
    SessionCreate,
    SessionNotificationIn,
    SessionReschedule,
    SessionStatusUpdate,
    SessionVerifyIn,
    StudentStatusUpdate,
    VideoRoomCreate,
    WebhookTestIn,
)
from .utils import webhooks
from .utils.dates import isoformat
from .utils.pagination import parse_page, split_csv

app = FastAPI(title="EMDR Training Platform API")
logger = logging.getLogger("emdr_api.api")
if not logger.handlers:
    logging.basicConfig(level=settings.LOG_LEVEL)

# Wide-open CORS keeps local frontends working without extra config in dev.
if settings.ALLOW_DEV_CORS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

create_db_and_tables()

NOTIFICATION_PAGE_SIZE = 50
DEFAULT_PAGE_SIZE = 20


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    request.state.request_id = req_id
    started = time.perf_counter()
    response: Response
    try:
        response = await call_next(request)
    except Exception:
        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
        logger.exception(
            "request_failed %s",
            json.dumps(
                {
                    "request_id": req_id,
                    "path": request.url.path,
                    "method": request.method,
                    "duration_ms": elapsed_ms,
                    "client": request.client.host if request.client else "unknown",
                },
                ensure_ascii=True,
            ),
        )
        raise
    response.headers["X-Request-ID"] = req_id
    elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
    logger.info(
        "request_done %s",
        json.dumps(
            {
                "request_id": req_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": response.status_code,
                "duration_ms": elapsed_ms,
                "client": request.client.host if request.client else "unknown",
            },
            ensure_ascii=True,
        ),
    )
    return response


def _error_response(request: Request, status_code: int, code: str, message: str, extra: Optional[dict] = None):
    content = {"error": message, "code": code, "requestId": getattr(request.state, "request_id", None)}
    if extra:
        content["details"] = extra
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("app_error code=%s message=%s", exc.code, exc.message)
    return _error_response(request, exc.status_code, exc.code, exc.message, exc.extra)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = first.get("msg", "invalid request")
    if location:
        message = f"{location}: {message}"
    return _error_response(request, HTTP_STATUS[ErrorKind.VALIDATION], ErrorKind.VALIDATION.value, message)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("unhandled_error path=%s", request.url.path, exc_info=exc)
    return _error_response(request, HTTP_STATUS[ErrorKind.INTERNAL], ErrorKind.INTERNAL.value, "internal server error")


def _ensure_can_view_student(user: models.User, student_id: Optional[int]) -> int:
    """Students see themselves; consultants and admins may look at any student."""
    if student_id is None or student_id == user.id:
        return user.id
    if user.role in (Role.CONSULTANT.value, Role.ADMIN.value):
        return student_id
    raise PermissionDeniedError("cannot view another student's data")


# -- auth -------------------------------------------------------------------

@app.post('/auth/register', status_code=201)
def register(payload: RegisterIn, db: Session = Depends(get_session)):
    """Register a new user and return it together with an access token."""
    auth = services.AuthService(db)
    user = auth.register(
        payload.email, payload.password, payload.first_name, payload.last_name, payload.role, payload.phone
    )
    return {'user': services.serialize_user(user), 'access_token': auth.create_access_token(user)}


@app.post('/auth/login')
def login(payload: LoginIn, db: Session = Depends(get_session)):
    """Authenticate a user and return a signed JWT token.

    The token contains `user_id`, `email` and `role` and is signed using
    the configured JWT secret.
    """
    token, user = services.AuthService(db).authenticate(payload.email, payload.password)
    return {'access_token': token, 'token_type': 'bearer', 'user': services.serialize_user(user)}


@app.get('/auth/me')
def me(user: models.User = Depends(get_current_user)):
    return services.serialize_user(user)


@app.post('/auth/forgot-password')
def forgot_password(payload: ForgotPasswordIn, db: Session = Depends(get_session)):
    """Start a password reset without revealing whether the email exists."""
    token = services.AuthService(db).create_reset_token(payload.email)
    out = {'message': 'If an account with that email exists, a password reset link has been sent.'}
    if token and settings.is_dev:
        out['resetToken'] = token
    return out


@app.post('/auth/reset-password')
def reset_password(payload: ResetPasswordIn, db: Session = Depends(get_session)):
    services.AuthService(db).reset_password(payload.token, payload.password)
    return {'success': True, 'message': 'Password has been reset successfully'}


# -- notifications ------------------------------------------------------------

@app.get('/notifications')
def list_notifications(
    user_id: Optional[int] = Query(None, alias='userId'),
    limit: Optional[str] = None,
    offset: Optional[str] = None,
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
):
    """Return a page of notifications (newest first) plus the unread count.

    Malformed `limit`/`offset` values fall back to 50/0.
    """
    target = ensure_self_or_admin(user, user_id)
    limit_n, offset_n = parse_page(limit, offset, NOTIFICATION_PAGE_SIZE)
    svc = NotificationService(db)
    items = svc.get_user_notifications(target, limit_n, offset_n)
    total = svc.count_user_notifications(target)
    return {
        'notifications': [serialize_notification(n) for n in items],
        'unreadCount': svc.get_unread_notification_count(target),
        'pagination': {
            'limit': limit_n,
            'offset': offset_n,
            'total': total,
            'hasMore': offset_n + len(items) < total,
        },
    }


@app.post('/notifications')
def create_notification(payload: NotificationIn, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    require_roles(user, Role.CONSULTANT, Role.ADMIN)
    NotificationService(db).send_notification(
        payload.user_id, payload.type, payload.title, payload.message, payload.data, payload.priority
    )
    return {'success': True}


@app.put('/notifications')
def update_notifications(
    payload: Annotated[MarkReadRequest | MarkAllReadRequest, Body(discriminator='action')],
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
):
    """Mark one notification, or all of a user's notifications, as read."""
    svc = NotificationService(db)
    if isinstance(payload, MarkReadRequest):
        notification = svc.get_notification(payload.notification_id)
        ensure_self_or_admin(user, notification.user_id)
        svc.mark_notification_as_read(notification.id)
    else:
        svc.mark_all_notifications_as_read(ensure_self_or_admin(user, payload.user_id))
    return {'success': True}


@app.post('/notifications/session')
def session_notifications(payload: SessionNotificationIn, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    training_session = services.SchedulingService(db).get_session(payload.session_id)
    services.ensure_participant(training_session, user)
    NotificationService(db).send_session_notifications(training_session.id)
    return {'success': True, 'message': 'Session notifications sent successfully'}


@app.get('/notifications/preferences')
def get_preferences(
    user_id: Optional[int] = Query(None, alias='userId'),
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
):
    target = ensure_self_or_admin(user, user_id)
    return NotificationService(db).get_preferences(target).to_dict()


@app.put('/notifications/preferences')
def update_preferences(
    payload: PreferencesUpdate,
    user_id: Optional[int] = Query(None, alias='userId'),
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
):
    target = ensure_self_or_admin(user, user_id)
    prefs = NotificationService(db).update_preferences(target, payload.model_dump(exclude_none=True))
    return prefs.to_dict()


# -- students ---------------------------------------------------------------

@app.get('/students/me/progress')
def my_progress(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return services.StudentService(db).get_student_progress(user.id)


@app.get('/students/me/sessions')
def my_sessions(
    status: Optional[str] = None,
    limit: Optional[str] = None,
    offset: Optional[str] = None,
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
):
    limit_n, offset_n = parse_page(limit, offset, DEFAULT_PAGE_SIZE)
    return services.StudentService(db).get_student_sessions(user.id, split_csv(status), limit_n, offset_n)


@app.put('/students/me/status')
def update_my_status(payload: StudentStatusUpdate, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    target = ensure_self_or_admin(user, payload.student_id)
    student = services.StudentService(db).update_student_status(target, payload.status, user)
    return services.serialize_user(student)


@app.get('/students/{student_id}/progress')
def student_progress(student_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    target = _ensure_can_view_student(user, student_id)
    return services.StudentService(db).get_student_progress(target)


@app.get('/students/{student_id}/sessions')
def student_sessions(
    student_id: int,
    status: Optional[str] = None,
    limit: Optional[str] = None,
    offset: Optional[str] = None,
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
):
    target = _ensure_can_view_student(user, student_id)
    limit_n, offset_n = parse_page(limit, offset, DEFAULT_PAGE_SIZE)
    return services.StudentService(db).get_student_sessions(target, split_csv(status), limit_n, offset_n)


# -- sessions ---------------------------------------------------------------

@app.post('/sessions', status_code=201)
def book_session(payload: SessionCreate, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Book a consultation session; students book for themselves."""
    if user.role == Role.STUDENT.value:
        student_id = ensure_self_or_admin(user, payload.student_id)
    elif user.role == Role.ADMIN.value:
        if payload.student_id is None:
            raise ValidationError("studentId is required", field="studentId")
        student_id = payload.student_id
    else:
        raise PermissionDeniedError("only students and admins can book sessions")
    training_session = services.SchedulingService(db).book_session(
        student_id, payload.consultant_id, payload.scheduled_start, payload.duration
    )
    return services.serialize_session(training_session)


@app.get('/sessions/{session_id}')
def get_training_session(session_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    training_session = services.SchedulingService(db).get_session(session_id)
    services.ensure_participant(training_session, user)
    return services.serialize_session(training_session)


@app.put('/sessions/{session_id}/status')
def update_session_status(session_id: int, payload: SessionStatusUpdate, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    training_session = services.SchedulingService(db).update_session_status(
        session_id, payload.status, user, payload.actual_start, payload.actual_end
    )
    return services.serialize_session(training_session)


@app.post('/sessions/{session_id}/reschedule')
def reschedule_session(session_id: int, payload: SessionReschedule, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Move a session to a new slot with the same booking rules as `POST /sessions`."""
    training_session = services.SchedulingService(db).reschedule_session(
        session_id, user, payload.scheduled_start, payload.duration, payload.reason
    )
    return services.serialize_session(training_session)


@app.post('/sessions/{session_id}/verify')
def verify_session(session_id: int, payload: SessionVerifyIn, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    training_session = services.SchedulingService(db).verify_session(session_id, user, payload.rating, payload.notes)
    return services.serialize_session(training_session)


# -- documents ----------------------------------------------------------------

@app.get('/documents')
def list_documents(
    student_id: Optional[int] = Query(None, alias='studentId'),
    document_type: Optional[str] = Query(None, alias='type'),
    status: Optional[str] = None,
    limit: Optional[str] = None,
    offset: Optional[str] = None,
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
):
    target = _ensure_can_view_student(user, student_id)
    limit_n, offset_n = parse_page(limit, offset, DEFAULT_PAGE_SIZE)
    return services.DocumentService(db).get_student_documents(
        target, split_csv(document_type), split_csv(status), limit_n, offset_n
    )


@app.get('/documents/requirements')
def document_requirements(
    student_id: Optional[int] = Query(None, alias='studentId'),
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
):
    target = _ensure_can_view_student(user, student_id)
    return services.DocumentService(db).get_document_requirements_status(target)


@app.post('/documents/upload', status_code=201)
def upload_document(
    file: UploadFile = File(...),
    document_type: str = Form(..., alias='documentType'),
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
):
    """Upload one certification document for the authenticated student.

    Accepts PDF, Word, plain text, JPEG and PNG files up to
    `MAX_UPLOAD_BYTES`.
    """
    if not file.filename:
        raise ValidationError('no file', field='file')
    content = file.file.read(settings.MAX_UPLOAD_BYTES + 1)
    document = services.DocumentService(db).upload_document(
        user.id, document_type, file.filename, content, file.content_type or ''
    )
    return services.serialize_document(document)


@app.post('/documents/{document_id}/review')
def review_document(document_id: int, payload: DocumentReviewIn, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    require_roles(user, Role.CONSULTANT, Role.ADMIN)
    document = services.DocumentService(db).review_document(document_id, user, payload.status, payload.notes)
    return services.serialize_document(document)


# -- progress -----------------------------------------------------------------

@app.get('/progress/overview')
def progress_overview(
    student_id: Optional[int] = Query(None, alias='studentId'),
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
):
    return services.ProgressService(db).get_progress(_ensure_can_view_student(user, student_id))


@app.get('/progress/milestones')
def progress_milestones(
    student_id: Optional[int] = Query(None, alias='studentId'),
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
):
    return {'milestones': services.ProgressService(db).get_milestones(_ensure_can_view_student(user, student_id))}


@app.get('/progress/weekly')
def progress_weekly(
    student_id: Optional[int] = Query(None, alias='studentId'),
    weeks: Optional[str] = None,
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
):
    weeks_n, _ = parse_page(weeks, None, 12)
    target = _ensure_can_view_student(user, student_id)
    return {'weeklyProgress': services.ProgressService(db).get_weekly_progress(target, weeks_n)}


@app.get('/progress/analytics')
def progress_analytics(
    student_id: Optional[int] = Query(None, alias='studentId'),
    start_date: Optional[datetime] = Query(None, alias='startDate'),
    end_date: Optional[datetime] = Query(None, alias='endDate'),
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
):
    target = _ensure_can_view_student(user, student_id)
    return services.ProgressService(db).get_analytics(target, start_date, end_date)


@app.get('/progress/sessions')
def progress_sessions(
    student_id: Optional[int] = Query(None, alias='studentId'),
    status: Optional[str] = None,
    limit: Optional[str] = None,
    offset: Optional[str] = None,
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
):
    target = _ensure_can_view_student(user, student_id)
    limit_n, offset_n = parse_page(limit, offset, DEFAULT_PAGE_SIZE)
    return services.ProgressService(db).get_session_history(target, split_csv(status), limit_n, offset_n)


@app.post('/progress/refresh')
def progress_refresh(
    student_id: Optional[int] = Query(None, alias='studentId'),
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
):
    target = _ensure_can_view_student(user, student_id)
    return services.ProgressService(db).refresh_progress(target)


# -- video ------------------------------------------------------------------

@app.post('/video/rooms', status_code=201)
def create_video_room(payload: VideoRoomCreate, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    svc = services.VideoService(db)
    room = svc.create_room(payload.session_id, user, payload.recording_enabled, payload.quality, payload.max_participants)
    return svc.serialize_room(room)


@app.post('/video/rooms/{room_id}/join')
def join_video_room(room_id: str, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    svc = services.VideoService(db)
    participant = svc.join_room(room_id, user)
    room = repositories.VideoRepository(db).get_room(room_id)
    return {
        'room': svc.serialize_room(room),
        'participant': {
            'userId': participant.user_id,
            'role': participant.role,
            'joinTime': isoformat(participant.join_time),
            'isActive': participant.is_active,
        },
    }


@app.post('/video/rooms/{room_id}/leave')
def leave_video_room(room_id: str, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    svc = services.VideoService(db)
    return svc.serialize_room(svc.leave_room(room_id, user))


@app.get('/video/sessions/{session_id}')
def get_video_session(session_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    training_session = services.SchedulingService(db).get_session(session_id)
    services.ensure_participant(training_session, user)
    svc = services.VideoService(db)
    room = svc.get_video_session(session_id)
    if not room:
        raise NotFoundError("video room for session", session_id)
    return svc.serialize_room(room)


@app.get('/video/sessions/{session_id}/analytics')
def video_session_analytics(session_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    training_session = services.SchedulingService(db).get_session(session_id)
    services.ensure_participant(training_session, user)
    return services.VideoService(db).get_session_analytics(session_id)


# -- dev tooling ---------------------------------------------------------------

@app.get('/test/webhook')
def webhook_usage():
    if not settings.is_dev:
        raise NotFoundError("route")
    return webhooks.usage()


@app.post('/test/webhook')
def send_webhook(payload: WebhookTestIn):
    """Sign and replay a synthetic course-platform webhook (dev only)."""
    if not settings.is_dev:
        raise NotFoundError("route")
    return webhooks.send_test_webhook(payload.event, payload.test_data, payload.webhook_url)


@app.get("/health")
def health():
    """Lightweight health check for uptime monitoring."""
    return {"status": "ok"}
