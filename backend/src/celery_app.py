"""Celery application configuration.

Celery only runs periodic maintenance. Export jobs themselves are claimed from
the job store by the export worker, not delivered through the broker.
"""

from celery import Celery
from celery.schedules import crontab

from src.config import get_settings

settings = get_settings()

celery_app = Celery(
    "interview_studio",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["src.tasks.maintenance_task"],
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
    worker_prefetch_multiplier=1,
    task_acks_late=True,
)

celery_app.conf.beat_schedule = {
    "cleanup-expired-exports": {
        "task": "src.tasks.maintenance_task.cleanup_expired_exports",
        "schedule": crontab(minute=0),  # hourly
    },
    "reclaim-stale-jobs": {
        "task": "src.tasks.maintenance_task.reclaim_stale_jobs",
        "schedule": 300.0,  # every 5 minutes
    },
}
