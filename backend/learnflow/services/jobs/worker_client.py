"""
HTTP client for the external processing worker
"""

from typing import Any, Dict, Optional
import logging

import httpx
from tenacity import (
    AsyncRetrying, RetryError, retry_if_exception_type, stop_after_attempt, wait_exponential,
)

from learnflow.services.jobs.steps import PipelineContext, PipelineStep, StepExecutor, StepFailure, StepOutcome

logger = logging.getLogger(__name__)


class WorkerUnavailableError(Exception):
    """Transport failure or 5xx from the worker; retried"""


class WorkerServiceExecutor(StepExecutor):
    """Posts each step to `{base_url}/steps/{step_id}`"""

    def __init__(
        self,
        base_url: str,
        timeout: float = 60,
        max_retries: int = 3,
        retry_wait=None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=10)
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            headers={"User-Agent": "LearnFlow/1.0"},
        )

    def _payload(self, context: PipelineContext) -> Dict[str, Any]:
        return {
            "jobId": context.job_id,
            "youtubeUrl": context.youtube_url,
            "videoId": context.video_id,
            "options": context.options,
            "artifacts": context.artifacts,
        }

    async def _post(self, step: PipelineStep, context: PipelineContext) -> httpx.Response:
        try:
            response = await self._client.post(f"/steps/{step.id}", json=self._payload(context))
        except httpx.TransportError as e:
            raise WorkerUnavailableError(f"{type(e).__name__}: {e}") from e
        if response.status_code >= 500:
            raise WorkerUnavailableError(f"worker returned {response.status_code}")
        return response

    async def run(self, step: PipelineStep, context: PipelineContext) -> StepOutcome:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_retries),
                wait=self.retry_wait,
                retry=retry_if_exception_type(WorkerUnavailableError),
            ):
                with attempt:
                    response = await self._post(step, context)
        except RetryError as e:
            cause = e.last_attempt.exception()
            logger.error(f"Worker unavailable for step {step.id} of job {context.job_id}: {cause}")
            raise StepFailure(step.id, f"{step.name} failed: processing worker unavailable") from cause

        if response.status_code >= 400:
            raise StepFailure(step.id, f"{step.name} failed: {self._error_message(response)}")

        data = response.json()
        if data.get("success") is False:
            raise StepFailure(step.id, f"{step.name} failed: {data.get('error') or 'unknown error'}")

        return StepOutcome(
            artifacts=data.get("artifacts") or {},
            video_duration_minutes=data.get("videoDurationMinutes"),
            result_ref=data.get("resultRef"),
        )

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return f"worker returned {response.status_code}"
        if isinstance(body, dict):
            return str(body.get("error") or body.get("detail") or f"worker returned {response.status_code}")
        return f"worker returned {response.status_code}"

    async def close(self) -> None:
        await self._client.aclose()
