import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, status
from pydantic import BaseModel

from learnflow.api.deps import get_container, verify_admin_key
from learnflow.core.container import ServiceContainer
from learnflow.core.exceptions import NotFoundError, ValidationError
from learnflow.schemas.abuse import (
    BlacklistEntryResponse, BlacklistListResponse, BlacklistRemoveRequest, BlacklistRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(verify_admin_key)])


class RateLimitResetRequest(BaseModel):
    userId: Optional[str] = None
    ip: Optional[str] = None


@router.post("/rate-limits/reset")
async def reset_rate_limits(
    payload: RateLimitResetRequest,
    container: ServiceContainer = Depends(get_container),
):
    """
    Clear every rate limit window held by a user and/or an address
    """
    if not payload.userId and not payload.ip:
        raise ValidationError("userId or ip is required")

    deleted = 0
    if payload.userId:
        deleted += await container.rate_limiter.reset_user(payload.userId)
    if payload.ip:
        deleted += await container.rate_limiter.reset_address(payload.ip)

    logger.info(f"Admin reset {deleted} rate limit counters (user={payload.userId}, ip={payload.ip})")
    return {"reset": deleted}


@router.get("/blacklist", response_model=BlacklistListResponse)
async def list_blacklist(container: ServiceContainer = Depends(get_container)):
    entries = await container.guard.list_blocks()
    return BlacklistListResponse(data=[BlacklistEntryResponse.from_record(e) for e in entries])


@router.post("/blacklist", response_model=BlacklistEntryResponse, status_code=status.HTTP_201_CREATED)
async def add_to_blacklist(
    payload: BlacklistRequest,
    x_admin_user: Optional[str] = Header(None),
    container: ServiceContainer = Depends(get_container),
):
    """
    Block an address or account, permanently or until `expiresAt`
    """
    record = await container.guard.block(
        payload.type, payload.value, reason=payload.reason,
        expires_at=payload.expiresAt, created_by=x_admin_user or "admin",
    )
    return BlacklistEntryResponse.from_record(record)


@router.post("/blacklist/remove")
async def remove_from_blacklist(
    payload: BlacklistRemoveRequest,
    container: ServiceContainer = Depends(get_container),
):
    removed = await container.guard.unblock(payload.type, payload.value)
    if not removed:
        raise NotFoundError("Blacklist entry not found")
    return {"removed": removed}
