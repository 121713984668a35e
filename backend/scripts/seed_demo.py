"""Seed a local database with demo users, sessions and notifications.
Usage: python scripts/seed_demo.py [--password PASSWORD]
"""
import sys
import argparse
import pathlib
from datetime import timedelta
# Ensure `backend/` is on sys.path so `emdr_api` imports work when running this script directly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
from sqlmodel import Session
from emdr_api import models, repositories, services
from emdr_api.database import engine, create_db_and_tables
from emdr_api.utils.dates import utcnow

DEMO_USERS = (
    ('admin@emdr.local', 'Ada', 'Admin', 'ADMIN'),
    ('consultant@emdr.local', 'Carl', 'Consultant', 'CONSULTANT'),
    ('student@emdr.local', 'Sara', 'Student', 'STUDENT'),
)


def main(password: str):
    """Create the demo accounts (skipping existing ones) and some history.

    The student gets three completed, consultant-verified two-hour
    sessions in the past and one booked session next week.
    """
    create_db_and_tables()
    with Session(engine) as session:
        users = repositories.UserRepository(session)
        auth = services.AuthService(session)
        by_role = {}
        for email, first, last, role in DEMO_USERS:
            user = users.get_by_email(email)
            if user:
                print(f'Exists: {email}')
            else:
                user = auth.register(email, password, first, last, role)
                print(f'Created {role.lower()}: {email}')
            by_role[role] = user

        student, consultant = by_role['STUDENT'], by_role['CONSULTANT']
        sessions = repositories.TrainingSessionRepository(session)
        if sessions.count_for_student(student.id):
            print('Sessions already seeded')
            return
        now = utcnow().replace(minute=0, second=0, microsecond=0)
        for weeks_ago in (3, 2, 1):
            start = now - timedelta(weeks=weeks_ago)
            end = start + timedelta(hours=2)
            sessions.create(models.TrainingSession(
                student_id=student.id,
                consultant_id=consultant.id,
                scheduled_start=start,
                scheduled_end=end,
                actual_start=start,
                actual_end=end,
                status=models.SessionStatus.COMPLETED.value,
                consultant_verified_at=end,
                student_verified_at=end,
                rating=5,
            ))
        services.SchedulingService(session).book_session(
            student.id, consultant.id, now + timedelta(days=7), duration_minutes=60
        )
        result = services.ProgressService(session).refresh_progress(student.id)
        print(f"Seeded sessions; verified hours {result['progress']['totalVerifiedHours']}, "
              f"notifications sent {result['notificationsSent']}")


if __name__ == '__main__':
    parser = argparse.ArgumentParser()
    parser.add_argument('--password', default='demo-password', help='Password for every demo account')
    args = parser.parse_args()
    main(args.password)
