from datetime import datetime
from enum import Enum
from pydantic import BaseModel, Field
from typing import List, Optional


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class JobRecord(BaseModel):
    """Immutable snapshot of a video processing job"""
    job_id: str
    subject_id: str
    youtube_url: str
    video_id: Optional[str] = None
    status: JobStatus = JobStatus.PENDING
    progress: int = Field(0, ge=0, le=100)
    current_step: Optional[str] = None
    estimated_time_remaining: Optional[int] = None
    error: Optional[str] = None
    result_ref: Optional[str] = None
    processing_time: Optional[float] = None
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        frozen = True
        from_attributes = True


class JobStatusResponse(BaseModel):
    processId: str
    status: JobStatus
    progress: int
    currentStep: Optional[str] = None
    estimatedTimeRemaining: Optional[int] = None
    error: Optional[str] = None
    createdAt: datetime
    updatedAt: datetime


class JobResultResponse(BaseModel):
    processId: str
    status: JobStatus
    resultRef: str
    processingTime: Optional[float] = None
    completedAt: Optional[datetime] = None


class JobHistoryItem(BaseModel):
    processId: str
    youtubeUrl: str
    videoId: Optional[str] = None
    status: JobStatus
    progress: int
    error: Optional[str] = None
    resultRef: Optional[str] = None
    createdAt: datetime
    completedAt: Optional[datetime] = None


class JobHistoryResponse(BaseModel):
    data: List[JobHistoryItem]


class JobStatsResponse(BaseModel):
    total: int
    pending: int
    processing: int
    completed: int
    failed: int
    averageProcessingTime: Optional[float] = None
