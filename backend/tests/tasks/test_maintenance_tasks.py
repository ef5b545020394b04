"""
Tests for the periodic maintenance tasks.
"""

from datetime import datetime, timedelta, timezone

import pytest
from celery.exceptions import Retry

from learnflow.core.celery_app import celery_app
from learnflow.core.exceptions import StoreUnavailableError
from learnflow.models.job import VideoProcess
from learnflow.models.quota import QuotaUsageLog
from learnflow.schemas.job import JobStatus
from learnflow.tasks.maintenance_tasks import cleanup_expired_jobs, cleanup_quota_usage_logs
from tests.factories import JobRecordFactory


@pytest.fixture
def task_sessions(mocker, session_factory):
    mocker.patch("learnflow.tasks.maintenance_tasks.SessionLocal", session_factory)
    return session_factory


def finished_job(db_session, when: datetime) -> str:
    job = JobRecordFactory(status=JobStatus.FAILED, error="Extract video info failed: unavailable",
                           created_at=when, updated_at=when, completed_at=when)
    db_session.add(VideoProcess(
        job_id=job.job_id,
        subject_id=job.subject_id,
        youtube_url=job.youtube_url,
        status=job.status.value,
        progress=job.progress,
        error=job.error,
        created_at=job.created_at,
        updated_at=job.updated_at,
        completed_at=job.completed_at,
    ))
    db_session.commit()
    return job.job_id


@pytest.mark.celery
class TestMaintenanceTasks:
    """Test cleanup tasks against the test database."""

    def test_cleanup_expired_jobs(self, task_sessions, db_session):
        now = datetime.now(timezone.utc)
        old_job = finished_job(db_session, now - timedelta(days=45))
        recent_job = finished_job(db_session, now - timedelta(days=2))

        result = cleanup_expired_jobs.apply(kwargs={"days_old": 30}).get()

        assert result["deleted"] == 1
        remaining = {row.job_id for row in db_session.query(VideoProcess).all()}
        assert remaining == {recent_job}
        assert old_job not in remaining

    def test_cleanup_quota_usage_logs(self, task_sessions, db_session):
        now = datetime.now(timezone.utc)
        db_session.add_all([
            QuotaUsageLog(subject_id="u1", quota_type="shares", amount=1, created_at=now - timedelta(days=120)),
            QuotaUsageLog(subject_id="u1", quota_type="shares", amount=1, created_at=now - timedelta(days=10)),
        ])
        db_session.commit()

        result = cleanup_quota_usage_logs.apply(kwargs={"days_old": 90}).get()

        assert result["deleted"] == 1
        assert db_session.query(QuotaUsageLog).count() == 1

    def test_cleanup_retries_on_store_failure(self, mocker, task_sessions):
        mocker.patch(
            "learnflow.tasks.maintenance_tasks.SqlUsageStore.purge_usage_logs",
            side_effect=StoreUnavailableError("db down"),
        )
        retry = mocker.patch.object(cleanup_quota_usage_logs, "retry", side_effect=Retry())

        with pytest.raises(Retry):
            cleanup_quota_usage_logs()

        retry.assert_called_once_with(countdown=60)

    def test_beat_schedule(self):
        schedule = celery_app.conf.beat_schedule

        assert schedule["cleanup-expired-jobs"]["task"] == "learnflow.tasks.maintenance_tasks.cleanup_expired_jobs"
        assert "cleanup-quota-usage-logs" in schedule
