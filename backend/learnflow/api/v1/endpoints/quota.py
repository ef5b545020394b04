"""
Quota API Endpoints

Usage checks, usage recording, plan information and quota alerts for the
current subject.
"""

import logging

from fastapi import APIRouter, Depends, Query

from learnflow.api.deps import get_container, get_current_subject, get_current_user_id, rate_limit
from learnflow.core.container import ServiceContainer
from learnflow.schemas.quota import (
    MarkAlertsReadRequest, QuotaAlertResponse, QuotaAlertsResponse, QuotaCheckRequest,
    QuotaCheckResponse, QuotaPlanResponse, QuotaPlansResponse, QuotaRecordRequest,
    QuotaUsageListResponse, QuotaUsageResponse, SubscriptionResponse, UpgradeRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(rate_limit("moderate"))])


@router.post("/check", response_model=QuotaCheckResponse)
async def check_quota(
    payload: QuotaCheckRequest,
    subject_id: str = Depends(get_current_subject),
    container: ServiceContainer = Depends(get_container),
):
    result = await container.ledger.check(subject_id, payload.quotaType, payload.amount, payload.metadata)
    return QuotaCheckResponse.from_result(result)


@router.get("/usage", response_model=QuotaUsageListResponse)
async def get_usage(
    subject_id: str = Depends(get_current_subject),
    container: ServiceContainer = Depends(get_container),
):
    plan, usage = await container.ledger.get_all_usage(subject_id)
    return QuotaUsageListResponse(plan=plan, data=[QuotaUsageResponse.from_snapshot(u) for u in usage])


@router.post("/usage/record", response_model=QuotaUsageResponse)
async def record_usage(
    payload: QuotaRecordRequest,
    user_id: str = Depends(get_current_user_id),
    container: ServiceContainer = Depends(get_container),
):
    """
    Charge usage directly, bypassing the limit check
    """
    usage = await container.ledger.record(
        user_id,
        payload.quotaType,
        payload.amount,
        resource_id=payload.resourceId,
        resource_type=payload.resourceType,
        metadata=payload.metadata,
    )
    return QuotaUsageResponse.from_snapshot(usage)


@router.get("/plans", response_model=QuotaPlansResponse)
async def list_plans(container: ServiceContainer = Depends(get_container)):
    return QuotaPlansResponse(data=[
        QuotaPlanResponse(
            planType=plan.plan_type,
            limits=plan.limits,
            maxVideoDurationMinutes=plan.max_video_duration_minutes,
            maxFileSizeBytes=plan.max_file_size_bytes,
        )
        for plan in container.plans.all()
    ])


@router.get("/subscription", response_model=SubscriptionResponse)
async def get_subscription(
    subject_id: str = Depends(get_current_subject),
    container: ServiceContainer = Depends(get_container),
):
    plan = await container.ledger.get_plan(subject_id)
    return SubscriptionResponse(planType=plan.plan_type, nextPlan=container.plans.next_plan(plan.plan_type))


@router.post(
    "/upgrade",
    response_model=SubscriptionResponse,
    dependencies=[Depends(rate_limit("plan_change_ip")), Depends(rate_limit("plan_change"))],
)
async def upgrade_plan(
    payload: UpgradeRequest,
    user_id: str = Depends(get_current_user_id),
    container: ServiceContainer = Depends(get_container),
):
    plan_type = await container.ledger.change_plan(user_id, payload.planType)
    return SubscriptionResponse(planType=plan_type, nextPlan=container.plans.next_plan(plan_type))


@router.get("/alerts", response_model=QuotaAlertsResponse)
async def list_alerts(
    unread_only: bool = Query(False, alias="unreadOnly"),
    subject_id: str = Depends(get_current_subject),
    container: ServiceContainer = Depends(get_container),
):
    alerts = await container.ledger.list_alerts(subject_id, unread_only=unread_only)
    return QuotaAlertsResponse(data=[QuotaAlertResponse.from_record(a) for a in alerts])


@router.post("/alerts/read")
async def mark_alerts_read(
    payload: MarkAlertsReadRequest,
    subject_id: str = Depends(get_current_subject),
    container: ServiceContainer = Depends(get_container),
):
    updated = await container.ledger.mark_alerts_read(subject_id, payload.alertIds)
    return {"updated": updated}
