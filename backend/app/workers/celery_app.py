"""Celery application configuration."""

from celery import Celery
from celery.schedules import crontab

from app.core.config import settings

# Create Celery application
celery_app = Celery(
    "planora",
    broker=str(settings.REDIS_URL),
    backend=str(settings.REDIS_URL),
    include=["app.workers.tasks"],
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=900,  # 15 minutes max per task
    task_soft_time_limit=840,
    worker_prefetch_multiplier=1,  # Fetch one task at a time
    worker_max_tasks_per_child=200,
    beat_schedule_filename="/tmp/celerybeat-schedule",  # Celery Beat schedule file
)


# Celery Beat schedule
celery_app.conf.beat_schedule = {
    "sweep-expired-trials": {
        "task": "app.workers.tasks.sweep_expired_trials",
        "schedule": crontab(hour=settings.TRIAL_SWEEP_HOUR, minute=0),
    },
    "retry-pending-webhooks": {
        "task": "app.workers.tasks.retry_pending_webhooks",
        "schedule": crontab(minute=f"*/{settings.WEBHOOK_RETRY_INTERVAL_MINUTES}"),
    },
    "sync-all-payments": {
        "task": "app.workers.tasks.sync_all_payments",
        "schedule": crontab(hour=settings.PAYMENT_SYNC_HOUR, minute=30),
    },
}

if __name__ == "__main__":
    celery_app.start()
