"""Send every scheduled notification that is due. Meant to run from cron.
Usage: python scripts/dispatch_reminders.py
"""
import sys
import pathlib
import logging
# Ensure `backend/` is on sys.path so `emdr_api` imports work when running this script directly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
from sqlmodel import Session
from emdr_api.config import settings
from emdr_api.database import engine, create_db_and_tables
from emdr_api.notifications import NotificationService


def main() -> int:
    create_db_and_tables()
    with Session(engine) as session:
        sent = NotificationService(session).dispatch_due_notifications()
    print(f'Dispatched {sent} scheduled notification(s)')
    return sent


if __name__ == '__main__':
    logging.basicConfig(level=settings.LOG_LEVEL)
    main()
