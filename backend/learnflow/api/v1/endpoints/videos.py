import logging

from fastapi import APIRouter, Depends, Query, Request, Response, status
from slowapi.util import get_remote_address

from learnflow.api.deps import admission_error, get_container, get_current_subject, rate_limit
from learnflow.core.container import ServiceContainer
from learnflow.core.exceptions import JobNotFoundError, NotFoundError
from learnflow.core.rate_limiting import resolve_user_id
from learnflow.schemas.job import (
    JobHistoryItem, JobHistoryResponse, JobRecord, JobResultResponse, JobStatsResponse,
    JobStatus, JobStatusResponse,
)
from learnflow.schemas.video import ProcessVideoRequest, ProcessVideoResponse
from learnflow.services.admission import OperationKind

logger = logging.getLogger(__name__)

router = APIRouter()


async def _load_job(container: ServiceContainer, process_id: str) -> JobRecord:
    record = await container.registry.get(process_id)
    if record is None:
        raise JobNotFoundError()
    return record


@router.post("/process", response_model=ProcessVideoResponse, status_code=status.HTTP_202_ACCEPTED)
async def process_video(
    payload: ProcessVideoRequest,
    request: Request,
    response: Response,
    subject_id: str = Depends(get_current_subject),
    container: ServiceContainer = Depends(get_container),
):
    """
    Admit a video processing request and start the job in the background
    """
    decision = await container.gateway.admit(
        subject_id,
        OperationKind.VIDEO_PROCESSING,
        get_remote_address(request),
        user_id=resolve_user_id(request),
        resource_url=payload.youtubeUrl,
    )
    if not decision.allowed:
        raise admission_error(decision)

    options = payload.options.model_dump() if payload.options else {}
    record = await container.orchestrator.submit(
        subject_id, payload.youtubeUrl, options=options, reservation=decision.reservation
    )
    response.headers.update(decision.headers)

    return ProcessVideoResponse(
        processId=record.job_id,
        estimatedTime=container.orchestrator.total_estimated_time,
        message="Video processing has started.",
    )


@router.get("/history", response_model=JobHistoryResponse, dependencies=[Depends(rate_limit("moderate"))])
async def get_history(
    limit: int = Query(20, ge=1, le=100),
    subject_id: str = Depends(get_current_subject),
    container: ServiceContainer = Depends(get_container),
):
    """
    Most recent video jobs of the current subject
    """
    records = await container.registry.list_for_subject(subject_id, limit=limit)
    return JobHistoryResponse(data=[
        JobHistoryItem(
            processId=r.job_id,
            youtubeUrl=r.youtube_url,
            videoId=r.video_id,
            status=r.status,
            progress=r.progress,
            error=r.error,
            resultRef=r.result_ref,
            createdAt=r.created_at,
            completedAt=r.completed_at,
        )
        for r in records
    ])


@router.get("/stats", response_model=JobStatsResponse, dependencies=[Depends(rate_limit("moderate"))])
async def get_stats(
    subject_id: str = Depends(get_current_subject),
    container: ServiceContainer = Depends(get_container),
):
    stats = await container.registry.stats(subject_id)
    return JobStatsResponse(
        total=stats["total"],
        pending=stats["pending"],
        processing=stats["processing"],
        completed=stats["completed"],
        failed=stats["failed"],
        averageProcessingTime=stats["average_processing_time"],
    )


@router.get("/{process_id}/status", response_model=JobStatusResponse, dependencies=[Depends(rate_limit("lenient"))])
async def get_video_status(
    process_id: str,
    container: ServiceContainer = Depends(get_container),
):
    """
    Get the status of a video processing job
    """
    record = await _load_job(container, process_id)
    return JobStatusResponse(
        processId=record.job_id,
        status=record.status,
        progress=record.progress,
        currentStep=record.current_step,
        estimatedTimeRemaining=record.estimated_time_remaining,
        error=record.error,
        createdAt=record.created_at,
        updatedAt=record.updated_at,
    )


@router.get("/{process_id}/result", response_model=JobResultResponse, dependencies=[Depends(rate_limit("lenient"))])
async def get_video_result(
    process_id: str,
    container: ServiceContainer = Depends(get_container),
):
    """
    Get the result of a completed video processing job
    """
    record = await _load_job(container, process_id)
    if record.status != JobStatus.COMPLETED:
        raise NotFoundError("Result not available")
    return JobResultResponse(
        processId=record.job_id,
        status=record.status,
        resultRef=record.result_ref,
        processingTime=record.processing_time,
        completedAt=record.completed_at,
    )
