"""Celery application driving reminder dispatch from beat.

Start beat and a worker with:
    celery -A app.celery_app worker -B -Q reminder -l info --concurrency=1
"""

from celery import Celery

from config import settings

BROKER_URL = settings.REDIS_URL

celery_app = Celery("reminder_dispatch", broker=BROKER_URL, backend=BROKER_URL)

# Global task settings
celery_app.conf.task_acks_late = True
celery_app.conf.task_reject_on_worker_lost = True
celery_app.conf.task_default_retry_delay = 30  # seconds

celery_app.conf.task_routes = {
    "app.workers.reminder.dispatch_due": {"queue": "reminder"},
}

# Beat schedule: one dispatch tick per interval; overlapping ticks are safe
celery_app.conf.beat_schedule = {
    "dispatch-due-reminders": {
        "task": "app.workers.reminder.dispatch_due",
        "schedule": settings.DISPATCH_INTERVAL_SECONDS,
    }
}

# --- Ensure tasks are registered ---
import app.workers.reminder  # noqa: E402,F401
