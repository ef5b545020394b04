"""
Pydantic schemas for blacklisting and resubmission cooldowns
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field


class BlacklistType(str, Enum):
    IP = "ip"
    USER = "user"


class BlacklistRecord(BaseModel):
    id: int
    entry_type: BlacklistType
    value: str
    reason: Optional[str] = None
    expires_at: Optional[datetime] = None
    is_active: bool
    created_by: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True
        frozen = True


class BlockCheckResult(BaseModel):
    blocked: bool
    entry_type: Optional[BlacklistType] = None
    reason: Optional[str] = None


class CooldownCheckResult(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    retry_after: Optional[int] = None
    process_count: int = 0


# API payloads

class BlacklistRequest(BaseModel):
    type: BlacklistType
    value: str = Field(..., min_length=1, max_length=255)
    reason: Optional[str] = Field(None, max_length=500)
    expiresAt: Optional[datetime] = None


class BlacklistRemoveRequest(BaseModel):
    type: BlacklistType
    value: str = Field(..., min_length=1, max_length=255)


class BlacklistEntryResponse(BaseModel):
    id: int
    type: BlacklistType
    value: str
    reason: Optional[str] = None
    expiresAt: Optional[datetime] = None
    createdBy: Optional[str] = None
    createdAt: datetime

    @classmethod
    def from_record(cls, record: BlacklistRecord) -> "BlacklistEntryResponse":
        return cls(
            id=record.id,
            type=record.entry_type,
            value=record.value,
            reason=record.reason,
            expiresAt=record.expires_at,
            createdBy=record.created_by,
            createdAt=record.created_at,
        )


class BlacklistListResponse(BaseModel):
    data: List[BlacklistEntryResponse]
