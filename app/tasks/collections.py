from app.celery_app import celery_app
from app.db import SessionLocal
from app.services import dunning as dunning_service
from app.services.email import get_notifier


@celery_app.task(name="app.tasks.collections.run_dunning_reminders")
def run_dunning_reminders():
    session = SessionLocal()
    try:
        return dunning_service.run_due_attempts(session, get_notifier())
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
