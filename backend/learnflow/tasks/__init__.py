from .maintenance_tasks import cleanup_expired_jobs, cleanup_quota_usage_logs
