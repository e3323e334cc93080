from celery import Celery
from celery.schedules import crontab

from app.config import settings

REPLAY_FAILED_EVENTS_EVERY_MINUTES = 15

celery_app = Celery("payflow_billing")
celery_app.conf.update(
    broker_url=settings.celery_broker_url,
    result_backend=settings.celery_result_backend,
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
)
celery_app.conf.beat_schedule = {
    "replay_failed_events": {
        "task": "app.tasks.events.replay_failed_events",
        "schedule": crontab(minute=f"*/{REPLAY_FAILED_EVENTS_EVERY_MINUTES}"),
    },
    "run_dunning_reminders": {
        "task": "app.tasks.collections.run_dunning_reminders",
        "schedule": crontab(minute=0),
    },
}
celery_app.autodiscover_tasks(["app.tasks"])
