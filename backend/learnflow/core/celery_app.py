from celery import Celery
from celery.schedules import crontab

from learnflow.core.config import settings

celery_app = Celery("learnflow", broker=settings.REDIS_URL, backend=settings.REDIS_URL)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    beat_schedule={
        "cleanup-expired-jobs": {
            "task": "learnflow.tasks.maintenance_tasks.cleanup_expired_jobs",
            "schedule": crontab(minute=0, hour=3),
        },
        "cleanup-quota-usage-logs": {
            "task": "learnflow.tasks.maintenance_tasks.cleanup_quota_usage_logs",
            "schedule": crontab(minute=30, hour=3, day_of_week=0),
        },
    },
)

celery_app.conf.imports = ("learnflow.tasks.maintenance_tasks",)
