import logging
from datetime import datetime, timedelta

import pytest
from sqlmodel import Session

from emdr_api import models, repositories
from emdr_api.database import engine
from emdr_api.errors import NotFoundError, ValidationError
from emdr_api.models import NotificationPriority, NotificationType
from emdr_api.notifications import (
    NotificationRequest,
    NotificationService,
    Preferences,
    is_in_quiet_hours,
    render_template,
)
from emdr_api.utils.dates import utcnow


def _book(db, student, consultant, start, minutes=60, status="SCHEDULED"):
    return repositories.TrainingSessionRepository(db).create(models.TrainingSession(
        student_id=student.id,
        consultant_id=consultant.id,
        scheduled_start=start,
        scheduled_end=start + timedelta(minutes=minutes),
        status=status,
    ))


def test_every_valid_type_and_priority_creates_one_unread(db, make_user):
    user = make_user()
    svc = NotificationService(db)
    expected = 0
    for ntype in NotificationType:
        for priority in NotificationPriority:
            n = svc.send_notification(user.id, ntype.value, 'Title', 'Body', {'k': 1}, priority.value)
            expected += 1
            assert n.read is False
            assert n.read_at is None
            assert n.type == ntype.value and n.priority == priority.value
            assert svc.count_user_notifications(user.id) == expected
    assert svc.get_unread_notification_count(user.id) == expected


def test_invalid_type_or_priority_creates_nothing(db, make_user):
    user = make_user()
    svc = NotificationService(db)
    with pytest.raises(ValidationError):
        svc.send_notification(user.id, 'NOT_A_TYPE', 'T', 'M')
    with pytest.raises(ValidationError):
        svc.send_notification(user.id, 'SYSTEM_UPDATE', 'T', 'M', priority='CRITICAL')
    with pytest.raises(ValidationError):
        svc.send_notification(user.id, 'SYSTEM_UPDATE', '  ', 'M')
    assert svc.count_user_notifications(user.id) == 0


def test_unknown_recipient_is_not_found(db):
    with pytest.raises(NotFoundError):
        NotificationService(db).send_notification(9999, 'SYSTEM_UPDATE', 'T', 'M')


def test_default_priority_is_normal(db, make_user):
    user = make_user()
    n = NotificationService(db).send_notification(user.id, NotificationType.SYSTEM_UPDATE, 'T', 'M')
    assert n.priority == 'NORMAL'


def test_mark_read_is_idempotent_and_keeps_first_timestamp(db, make_user):
    user = make_user()
    svc = NotificationService(db)
    n = svc.send_notification(user.id, 'SYSTEM_UPDATE', 'T', 'M')
    first = svc.mark_notification_as_read(n.id)
    assert first.read is True
    stamp = first.read_at
    assert stamp is not None
    again = svc.mark_notification_as_read(n.id)
    assert again.read is True
    assert again.read_at == stamp
    assert svc.get_unread_notification_count(user.id) == 0


def test_timestamps_survive_a_fresh_session(db, make_user):
    user = make_user()
    svc = NotificationService(db)
    n = svc.send_notification(user.id, 'SYSTEM_UPDATE', 'T', 'M')
    read = svc.mark_notification_as_read(n.id)
    start = datetime(2030, 5, 17, 9, 30, 15, 123456)
    booked = _book(db, user, make_user('CONSULTANT'), start, minutes=90)

    with Session(engine) as other:
        stored = other.get(models.Notification, n.id)
        assert stored.created_at == read.created_at
        assert stored.read_at == read.read_at
        assert stored.read_at.tzinfo is None
        session_row = other.get(models.TrainingSession, booked.id)
        assert session_row.scheduled_start == start
        assert session_row.scheduled_end == start + timedelta(minutes=90)
        assert session_row.scheduled_start.tzinfo is None


def test_mark_read_unknown_id(db):
    with pytest.raises(NotFoundError):
        NotificationService(db).mark_notification_as_read(12345)


def test_mark_all_read_counts_only_unread(db, make_user):
    user, other = make_user(), make_user()
    svc = NotificationService(db)
    ids = [svc.send_notification(user.id, 'SYSTEM_UPDATE', f'T{i}', 'M').id for i in range(3)]
    svc.send_notification(other.id, 'SYSTEM_UPDATE', 'T', 'M')
    svc.mark_notification_as_read(ids[0])
    assert svc.mark_all_notifications_as_read(user.id) == 2
    assert svc.get_unread_notification_count(user.id) == 0
    # nothing left to change, and other users are untouched
    assert svc.mark_all_notifications_as_read(user.id) == 0
    assert svc.get_unread_notification_count(other.id) == 1
    with pytest.raises(NotFoundError):
        svc.mark_all_notifications_as_read(9999)


def test_pagination_slices_are_disjoint_and_ordered(db, make_user):
    user = make_user()
    svc = NotificationService(db)
    for i in range(5):
        svc.send_notification(user.id, 'SYSTEM_UPDATE', f'T{i}', 'M')
    everything = [n.id for n in svc.get_user_notifications(user.id, limit=50, offset=0)]
    first = [n.id for n in svc.get_user_notifications(user.id, limit=2, offset=0)]
    second = [n.id for n in svc.get_user_notifications(user.id, limit=2, offset=2)]
    assert not set(first) & set(second)
    assert first + second == everything[:4]
    # newest first
    assert everything == sorted(everything, reverse=True)


def test_session_notifications_fan_out(db, make_user):
    student, consultant = make_user('STUDENT'), make_user('CONSULTANT')
    now = datetime(2030, 1, 1, 9, 0)
    s = _book(db, student, consultant, now + timedelta(days=3))
    svc = NotificationService(db)
    scheduled = svc.send_session_notifications(s.id, now=now)

    student_types = [n.type for n in svc.get_user_notifications(student.id)]
    consultant_types = [n.type for n in svc.get_user_notifications(consultant.id)]
    assert student_types == ['SESSION_SCHEDULED']
    assert consultant_types == ['NEW_BOOKING']

    assert [r.type for r in scheduled] == ['SESSION_REMINDER_24H', 'SESSION_REMINDER_2H', 'SESSION_REMINDER_15M']
    assert all(r.priority == 'HIGH' and r.user_id == student.id for r in scheduled)
    assert scheduled[0].scheduled_for == s.scheduled_start - timedelta(hours=24)
    assert scheduled[2].scheduled_for == s.scheduled_start - timedelta(minutes=15)

    data = svc.get_user_notifications(student.id)[0].data
    assert data['sessionId'] == s.id
    assert data['duration'] == 60


def test_session_notifications_skip_past_reminders(db, make_user):
    student, consultant = make_user('STUDENT'), make_user('CONSULTANT')
    now = datetime(2030, 1, 1, 9, 0)
    s = _book(db, student, consultant, now + timedelta(hours=1))
    scheduled = NotificationService(db).send_session_notifications(s.id, now=now)
    assert [r.type for r in scheduled] == ['SESSION_REMINDER_15M']


def test_session_notifications_errors(db, make_user):
    student, consultant = make_user('STUDENT'), make_user('CONSULTANT')
    svc = NotificationService(db)
    with pytest.raises(NotFoundError):
        svc.send_session_notifications(777)
    cancelled = _book(db, student, consultant, utcnow() + timedelta(days=2), status='CANCELLED')
    with pytest.raises(ValidationError):
        svc.send_session_notifications(cancelled.id)
    assert svc.count_user_notifications(student.id) == 0


def test_dispatch_due_notifications(db, make_user):
    user = make_user()
    svc = NotificationService(db)
    now = utcnow()
    due = svc.schedule_notification(NotificationRequest(user.id, 'SESSION_REMINDER_2H', 'Soon', 'Starts soon'), now - timedelta(minutes=1))
    later = svc.schedule_notification(NotificationRequest(user.id, 'SESSION_REMINDER_15M', 'Later', 'Later'), now + timedelta(hours=1))
    assert svc.dispatch_due_notifications(now) == 1
    assert svc.dispatch_due_notifications(now) == 0
    db.refresh(due)
    db.refresh(later)
    assert due.status == 'SENT' and due.sent_at is not None
    assert later.status == 'PENDING'
    assert [n.title for n in svc.get_user_notifications(user.id)] == ['Soon']


def test_schedule_validates_type(db, make_user):
    user = make_user()
    with pytest.raises(ValidationError):
        NotificationService(db).schedule_notification(NotificationRequest(user.id, 'NOPE', 'T', 'M'), utcnow())


def test_bulk_send(db, make_user):
    a, b = make_user(), make_user()
    sent = NotificationService(db).send_bulk_notifications([
        NotificationRequest(a.id, 'SYSTEM_MAINTENANCE', 'Down', 'Maintenance tonight'),
        NotificationRequest(b.id, 'SYSTEM_MAINTENANCE', 'Down', 'Maintenance tonight', priority='HIGH'),
    ])
    assert [n.user_id for n in sent] == [a.id, b.id]


def test_quiet_hours_overnight_window():
    prefs = Preferences(user_id=1, quiet_hours_enabled=True, quiet_hours_start='22:00', quiet_hours_end='08:00')
    day = datetime(2030, 6, 1)
    assert is_in_quiet_hours(prefs, day.replace(hour=23, minute=30))
    assert is_in_quiet_hours(prefs, day.replace(hour=7, minute=59))
    assert not is_in_quiet_hours(prefs, day.replace(hour=8, minute=0))
    assert not is_in_quiet_hours(prefs, day.replace(hour=12))
    prefs.quiet_hours_enabled = False
    assert not is_in_quiet_hours(prefs, day.replace(hour=23))


def test_quiet_hours_respects_timezone():
    prefs = Preferences(
        user_id=1, quiet_hours_enabled=True, quiet_hours_start='22:00', quiet_hours_end='23:00',
        quiet_hours_timezone='America/New_York',
    )
    # 02:30 UTC in June is 22:30 in New York (EDT)
    assert is_in_quiet_hours(prefs, datetime(2030, 6, 2, 2, 30))
    assert not is_in_quiet_hours(prefs, datetime(2030, 6, 1, 22, 30))


def test_preferences_defaults_and_update(db, make_user):
    user = make_user()
    svc = NotificationService(db)
    prefs = svc.get_preferences(user.id)
    assert prefs.email_enabled and not prefs.sms_enabled
    assert prefs.channels_for(NotificationType.SESSION_REMINDER_15M)['email'] is False

    updated = svc.update_preferences(user.id, {
        'sms_enabled': True,
        'quiet_hours': {'enabled': True, 'start_time': '21:30', 'timezone': 'Europe/London'},
        'notification_types': {'PROGRESS_UPDATE': {'email': True}},
    })
    assert updated.sms_enabled is True
    assert updated.quiet_hours_start == '21:30'
    assert updated.quiet_hours_end == '08:00'
    assert updated.channels_for(NotificationType.PROGRESS_UPDATE)['email'] is True
    assert svc.get_preferences(user.id).to_dict()['quietHours']['timezone'] == 'Europe/London'


@pytest.mark.parametrize('changes', [
    {'quiet_hours': {'start_time': '25:00'}},
    {'quiet_hours': {'end_time': 'noon'}},
    {'quiet_hours': {'timezone': 'Mars/Olympus'}},
    {'notification_types': {'NOT_A_TYPE': {'email': True}}},
    {'notification_types': {'SYSTEM_UPDATE': {'fax': True}}},
])
def test_preferences_reject_bad_values(db, make_user, changes):
    user = make_user()
    with pytest.raises(ValidationError):
        NotificationService(db).update_preferences(user.id, changes)


def test_render_template_keeps_unknown_placeholders():
    assert render_template('Hi {{firstName}} at {{time}}', {'firstName': 'Ana'}) == 'Hi Ana at {{time}}'


def test_outbound_channels_are_logged(db, make_user, caplog):
    user = make_user(phone='+15550001')
    svc = NotificationService(db)
    svc.update_preferences(user.id, {'sms_enabled': True})
    caplog.set_level(logging.INFO, logger='emdr_api.notifications')
    svc.send_notification(user.id, 'SESSION_REMINDER_24H', 'Reminder', 'Tomorrow', {'sessionTime': '10:00 UTC'})
    messages = [r.getMessage() for r in caplog.records]
    assert any(m.startswith('outbound_email') and 'Consultation Session Tomorrow' in m for m in messages)
    assert any(m.startswith('outbound_sms') and '10:00 UTC' in m for m in messages)


def test_quiet_hours_suppress_outbound_but_keep_record(db, make_user, caplog, monkeypatch):
    user = make_user()
    monkeypatch.setattr('emdr_api.notifications.is_in_quiet_hours', lambda prefs, now=None: True)
    caplog.set_level(logging.INFO, logger='emdr_api.notifications')
    svc = NotificationService(db)
    svc.send_notification(user.id, 'SYSTEM_UPDATE', 'T', 'M')
    messages = [r.getMessage() for r in caplog.records]
    assert not any(m.startswith('outbound_email') for m in messages)
    assert any(m.startswith('outbound_skipped_quiet_hours') for m in messages)
    assert svc.get_unread_notification_count(user.id) == 1
