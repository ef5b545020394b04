"""
Pydantic schemas for quota accounting
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel, Field


class QuotaType(str, Enum):
    VIDEO_PROCESSING = "video_processing"
    VIDEO_DURATION_MINUTES = "video_duration_minutes"
    STORAGE_BYTES = "storage_bytes"
    SHARES = "shares"
    EXPORTS = "exports"
    API_CALLS = "api_calls"


class PlanType(str, Enum):
    FREE = "free"
    PRO = "pro"
    MAX = "max"


class QuotaMetadata(BaseModel):
    """Typed details attached to a quota check or usage record"""
    video_duration_minutes: Optional[float] = Field(None, ge=0, alias="videoDurationMinutes")
    file_size_bytes: Optional[int] = Field(None, ge=0, alias="fileSizeBytes")
    video_id: Optional[str] = Field(None, max_length=32, alias="videoId")

    class Config:
        extra = "forbid"
        frozen = True
        populate_by_name = True


class QuotaUsageSnapshot(BaseModel):
    subject_id: str
    quota_type: QuotaType
    used_amount: int
    max_amount: int  # 0 means unlimited
    reserved_amount: int = 0
    period_start: datetime
    period_end: datetime

    @property
    def unlimited(self) -> bool:
        return self.max_amount == 0

    @property
    def percentage(self) -> float:
        if self.unlimited:
            return 0.0
        return round(100.0 * self.used_amount / self.max_amount, 2)


class QuotaReservation(BaseModel):
    """Amount held against a quota for an admitted but unfinished operation"""
    key: str
    subject_id: str
    quota_type: QuotaType
    amount: int
    expires_at: int  # epoch milliseconds

    class Config:
        frozen = True


class QuotaCheckResult(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    current_usage: Optional[QuotaUsageSnapshot] = None
    upgrade_required: bool = False
    suggested_plan: Optional[PlanType] = None
    reservation: Optional[QuotaReservation] = None
    # denied because the quota store could not be read, not because of usage
    unavailable: bool = False


class QuotaAlertRecord(BaseModel):
    id: int
    subject_id: str
    quota_type: QuotaType
    alert_type: str
    threshold_percentage: int
    current_usage: int
    max_amount: int
    is_read: bool
    created_at: datetime

    class Config:
        from_attributes = True


# API payloads

class QuotaCheckRequest(BaseModel):
    quotaType: QuotaType
    amount: int = Field(1, ge=1)
    metadata: Optional[QuotaMetadata] = None


class QuotaRecordRequest(BaseModel):
    quotaType: QuotaType
    amount: int = Field(..., ge=1)
    resourceId: Optional[str] = None
    resourceType: Optional[str] = Field(None, max_length=64)
    metadata: Optional[QuotaMetadata] = None


class QuotaUsageResponse(BaseModel):
    quotaType: QuotaType
    usedAmount: int
    maxAmount: int
    reservedAmount: int = 0
    percentage: float
    unlimited: bool
    periodStart: datetime
    periodEnd: datetime

    @classmethod
    def from_snapshot(cls, usage: QuotaUsageSnapshot) -> "QuotaUsageResponse":
        return cls(
            quotaType=usage.quota_type,
            usedAmount=usage.used_amount,
            maxAmount=usage.max_amount,
            reservedAmount=usage.reserved_amount,
            percentage=usage.percentage,
            unlimited=usage.unlimited,
            periodStart=usage.period_start,
            periodEnd=usage.period_end,
        )


class QuotaCheckResponse(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    currentUsage: Optional[QuotaUsageResponse] = None
    upgradeRequired: bool = False
    suggestedPlan: Optional[PlanType] = None

    @classmethod
    def from_result(cls, result: QuotaCheckResult) -> "QuotaCheckResponse":
        return cls(
            allowed=result.allowed,
            reason=result.reason,
            currentUsage=QuotaUsageResponse.from_snapshot(result.current_usage) if result.current_usage else None,
            upgradeRequired=result.upgrade_required,
            suggestedPlan=result.suggested_plan,
        )


class QuotaUsageListResponse(BaseModel):
    plan: PlanType
    data: List[QuotaUsageResponse]


class QuotaPlanResponse(BaseModel):
    planType: PlanType
    limits: Dict[QuotaType, int]
    maxVideoDurationMinutes: int
    maxFileSizeBytes: int


class QuotaPlansResponse(BaseModel):
    data: List[QuotaPlanResponse]


class SubscriptionResponse(BaseModel):
    planType: PlanType
    nextPlan: Optional[PlanType] = None


class UpgradeRequest(BaseModel):
    planType: PlanType


class QuotaAlertResponse(BaseModel):
    id: int
    quotaType: QuotaType
    alertType: str
    thresholdPercentage: int
    currentUsage: int
    maxAmount: int
    isRead: bool
    createdAt: datetime

    @classmethod
    def from_record(cls, alert: QuotaAlertRecord) -> "QuotaAlertResponse":
        return cls(
            id=alert.id,
            quotaType=alert.quota_type,
            alertType=alert.alert_type,
            thresholdPercentage=alert.threshold_percentage,
            currentUsage=alert.current_usage,
            maxAmount=alert.max_amount,
            isRead=alert.is_read,
            createdAt=alert.created_at,
        )


class QuotaAlertsResponse(BaseModel):
    data: List[QuotaAlertResponse]


class MarkAlertsReadRequest(BaseModel):
    alertIds: List[int] = Field(..., min_length=1)
