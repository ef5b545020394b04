import json

import httpx
import pytest
from tenacity import wait_none

from learnflow.services.jobs.steps import PROCESSING_STEPS, PipelineContext, StepFailure
from learnflow.services.jobs.worker_client import WorkerServiceExecutor

EXTRACT_INFO = PROCESSING_STEPS[0]


def make_executor(handler, max_retries: int = 3) -> WorkerServiceExecutor:
    client = httpx.AsyncClient(base_url="http://worker", transport=httpx.MockTransport(handler))
    return WorkerServiceExecutor("http://worker", max_retries=max_retries, retry_wait=wait_none(), client=client)


@pytest.fixture
def context():
    return PipelineContext(
        job_id="job-1",
        subject_id="user-1",
        youtube_url="https://youtu.be/dQw4w9WgXcQ",
        video_id="dQw4w9WgXcQ",
        options={"language": "en"},
    )


@pytest.mark.unit
class TestWorkerServiceExecutor:
    """Test the HTTP step executor against a mocked worker."""

    async def test_successful_step(self, context):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={
                "success": True,
                "artifacts": {"title": "Lecture 1"},
                "videoDurationMinutes": 14.5,
            })

        executor = make_executor(handler)
        outcome = await executor.run(EXTRACT_INFO, context)

        assert outcome.artifacts == {"title": "Lecture 1"}
        assert outcome.video_duration_minutes == 14.5
        assert outcome.result_ref is None
        assert requests[0].url.path == "/steps/extract_info"
        body = json.loads(requests[0].content)
        assert body["jobId"] == "job-1"
        assert body["videoId"] == "dQw4w9WgXcQ"
        assert body["options"] == {"language": "en"}

    async def test_retries_server_errors(self, context):
        responses = iter([
            httpx.Response(503),
            httpx.Response(502),
            httpx.Response(200, json={"success": True, "resultRef": "results/job-1.json"}),
        ])
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return next(responses)

        outcome = await make_executor(handler).run(EXTRACT_INFO, context)

        assert len(calls) == 3
        assert outcome.result_ref == "results/job-1.json"

    async def test_gives_up_after_max_retries(self, context):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(500)

        with pytest.raises(StepFailure) as exc_info:
            await make_executor(handler).run(EXTRACT_INFO, context)

        assert len(calls) == 3
        assert exc_info.value.step_id == "extract_info"
        assert "processing worker unavailable" in exc_info.value.message

    async def test_connection_errors_are_retried(self, context):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(StepFailure):
            await make_executor(handler, max_retries=2).run(EXTRACT_INFO, context)

        assert len(calls) == 2

    async def test_client_errors_are_not_retried(self, context):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(422, json={"error": "Video unavailable"})

        with pytest.raises(StepFailure) as exc_info:
            await make_executor(handler).run(EXTRACT_INFO, context)

        assert len(calls) == 1
        assert exc_info.value.message == "Extract video info failed: Video unavailable"

    async def test_reported_failure(self, context):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"success": False, "error": "No captions"})

        with pytest.raises(StepFailure) as exc_info:
            await make_executor(handler).run(EXTRACT_INFO, context)

        assert "No captions" in exc_info.value.message

    async def test_close_releases_client(self):
        executor = make_executor(lambda request: httpx.Response(200, json={}))

        await executor.close()

        assert executor._client.is_closed
