"""
Maintenance Background Tasks

Periodic cleanup of finished video jobs and old quota usage logs.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional
import logging

from learnflow.core.celery_app import celery_app
from learnflow.core.config import settings
from learnflow.db.session import SessionLocal
from learnflow.services.jobs.registry import SqlJobRegistry
from learnflow.services.quota.usage_store import SqlUsageStore

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=3)
def cleanup_expired_jobs(self, days_old: Optional[int] = None):
    """Delete completed and failed jobs older than the retention window"""
    days = days_old if days_old is not None else settings.JOB_RETENTION_DAYS
    cutoff = datetime.now(timezone.utc) - timedelta(days=days)

    try:
        registry = SqlJobRegistry(SessionLocal)
        deleted = asyncio.run(registry.purge_terminal(cutoff))
        logger.info(f"Cleaned up {deleted} video jobs older than {days} days")
        return {"deleted": deleted, "cutoff": cutoff.isoformat()}

    except Exception as e:
        logger.error(f"Failed to clean up expired jobs: {e}")

        if self.request.retries < self.max_retries:
            raise self.retry(countdown=60 * (2 ** self.request.retries))

        return {"error": str(e), "deleted": 0}


@celery_app.task(bind=True, max_retries=3)
def cleanup_quota_usage_logs(self, days_old: Optional[int] = None):
    """Delete quota usage log rows older than the retention window"""
    days = days_old if days_old is not None else settings.QUOTA_LOG_RETENTION_DAYS
    cutoff = datetime.now(timezone.utc) - timedelta(days=days)

    try:
        deleted = SqlUsageStore(SessionLocal).purge_usage_logs(cutoff)
        logger.info(f"Cleaned up {deleted} quota usage logs older than {days} days")
        return {"deleted": deleted, "cutoff": cutoff.isoformat()}

    except Exception as e:
        logger.error(f"Failed to clean up quota usage logs: {e}")

        if self.request.retries < self.max_retries:
            raise self.retry(countdown=60 * (2 ** self.request.retries))

        return {"error": str(e), "deleted": 0}
