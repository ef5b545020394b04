from .job import JobStatus, JobRecord, JobStatusResponse, JobResultResponse
from .quota import QuotaType, PlanType, QuotaMetadata, QuotaCheckResult, QuotaReservation, QuotaUsageSnapshot
