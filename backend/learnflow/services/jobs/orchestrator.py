"""
Video processing orchestrator

Drives each admitted job through the fixed step list in its own asyncio
task. Steps run strictly in order; a failure or timeout ends the job as
failed. Quota is charged only once the job is completed, and the admission
reservation is always handed back when the task ends.
"""

import asyncio
import math
import time
import uuid
from typing import Any, Dict, Optional, Tuple
import logging

from learnflow.core.exceptions import StoreUnavailableError
from learnflow.schemas.job import JobRecord
from learnflow.schemas.quota import QuotaMetadata, QuotaReservation, QuotaType
from learnflow.services.jobs.registry import JobRegistry
from learnflow.services.jobs.steps import (
    PROCESSING_STEPS, PipelineContext, PipelineStep, StepExecutor, StepFailure,
    estimated_time_remaining,
)
from learnflow.services.quota.ledger import QuotaLedger
from learnflow.services.youtube import extract_video_id

logger = logging.getLogger(__name__)


class VideoProcessingOrchestrator:
    def __init__(
        self,
        registry: JobRegistry,
        executor: StepExecutor,
        ledger: QuotaLedger,
        steps: Tuple[PipelineStep, ...] = PROCESSING_STEPS,
        step_timeouts: Optional[Dict[str, float]] = None,
        default_timeout: float = 120,
    ):
        self.registry = registry
        self.executor = executor
        self.ledger = ledger
        self.steps = steps
        self.step_timeouts = step_timeouts or {}
        self.default_timeout = default_timeout
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def total_estimated_time(self) -> int:
        return estimated_time_remaining(self.steps, 0)

    @property
    def active_jobs(self) -> int:
        return len(self._tasks)

    def timeout_for(self, step: PipelineStep) -> float:
        return self.step_timeouts.get(step.id, self.default_timeout)

    async def submit(
        self,
        subject_id: str,
        youtube_url: str,
        options: Optional[Dict[str, Any]] = None,
        reservation: Optional[QuotaReservation] = None,
    ) -> JobRecord:
        """Create the job, enter its first step and start it in the background"""
        job_id = str(uuid.uuid4())
        video_id = extract_video_id(youtube_url)
        try:
            await self.registry.create(self.registry.new_record(job_id, subject_id, youtube_url, video_id))
            record = await self.registry.mark_step(job_id, self.steps[0].id, self.total_estimated_time)
        except Exception:
            await self.ledger.release(reservation)
            raise

        context = PipelineContext(
            job_id=job_id,
            subject_id=subject_id,
            youtube_url=youtube_url,
            video_id=video_id,
            options=options or {},
        )
        task = asyncio.create_task(self._run(context, reservation), name=f"video-job-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job_id, None))

        logger.info(f"Started video job {job_id} for {subject_id}")
        return record

    async def _run(self, context: PipelineContext, reservation: Optional[QuotaReservation]) -> None:
        job_id = context.job_id
        started = time.monotonic()
        try:
            result_ref = await self._execute(context)
            completed = await self.registry.complete(
                job_id, result_ref, round(time.monotonic() - started, 2)
            )
            logger.info(f"Video job {job_id} completed in {completed.processing_time}s")
            await self._charge(context)
        except StepFailure as e:
            logger.warning(f"Video job {job_id} failed at {e.step_id}: {e.message}")
            await self._fail(job_id, e.message)
        except asyncio.CancelledError:
            await self._fail(job_id, "Processing interrupted by service shutdown")
            raise
        except Exception as e:
            logger.exception(f"Video job {job_id} crashed: {e}")
            await self._fail(job_id, "Unexpected processing error")
        finally:
            await self.ledger.release(reservation)

    async def _execute(self, context: PipelineContext) -> str:
        total = len(self.steps)
        result_ref = None
        duration = None

        for index, step in enumerate(self.steps):
            await self.registry.mark_step(context.job_id, step.id, estimated_time_remaining(self.steps, index))
            timeout = self.timeout_for(step)
            try:
                outcome = await asyncio.wait_for(self.executor.run(step, context), timeout=timeout)
            except asyncio.TimeoutError:
                raise StepFailure(step.id, f"{step.name} timed out after {timeout:g} seconds")
            except StepFailure:
                raise
            except Exception as e:
                raise StepFailure(step.id, f"{step.name} failed: {e}") from e

            context.artifacts.update(outcome.artifacts)
            if outcome.video_duration_minutes is not None:
                duration = outcome.video_duration_minutes
                context.artifacts["video_duration_minutes"] = duration
            if outcome.result_ref:
                result_ref = outcome.result_ref

            if step.id == "extract_info" and duration is not None:
                await self._validate_duration(context, step, duration)

            if index + 1 < total:
                await self.registry.set_progress(
                    context.job_id,
                    round(100 * (index + 1) / total),
                    estimated_time_remaining(self.steps, index + 1),
                )

        return result_ref or f"results/{context.job_id}"

    async def _validate_duration(self, context: PipelineContext, step: PipelineStep, minutes: float) -> None:
        plan = await self.ledger.get_plan(context.subject_id)
        limit = plan.max_video_duration_minutes
        if limit and minutes > limit:
            raise StepFailure(
                step.id,
                f"Video is {minutes:.0f} minutes long, the {plan.plan_type.value} plan allows up to {limit} minutes",
            )

    async def _charge(self, context: PipelineContext) -> None:
        duration = context.artifacts.get("video_duration_minutes")
        metadata = QuotaMetadata(video_duration_minutes=duration, video_id=context.video_id)
        try:
            await self.ledger.record(
                context.subject_id, QuotaType.VIDEO_PROCESSING, 1,
                resource_id=context.job_id, resource_type="video_process", metadata=metadata,
            )
            if duration:
                await self.ledger.record(
                    context.subject_id, QuotaType.VIDEO_DURATION_MINUTES, max(1, math.ceil(duration)),
                    resource_id=context.job_id, resource_type="video_process", metadata=metadata,
                )
        except StoreUnavailableError as e:
            logger.error(f"Failed to record quota usage for job {context.job_id}: {e}")

    async def _fail(self, job_id: str, error: str) -> None:
        try:
            await self.registry.fail(job_id, error)
        except Exception as e:
            logger.error(f"Could not mark job {job_id} failed: {e}")

    async def drain(self) -> None:
        """Wait for every running job to finish"""
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            logger.info(f"Cancelling {len(tasks)} running video jobs")
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.executor.close()
