import asyncio

import pytest

from learnflow.core.exceptions import StoreUnavailableError
from learnflow.schemas.job import JobStatus
from learnflow.schemas.quota import QuotaType
from learnflow.services.jobs.orchestrator import VideoProcessingOrchestrator
from learnflow.services.jobs.registry import InMemoryJobRegistry
from learnflow.services.jobs.steps import STEP_IDS
from learnflow.services.quota.ledger import QuotaLedger
from tests.factories import ScriptedExecutor, youtube_url

SUBJECT = "user-7"


@pytest.fixture
def registry(clock):
    return InMemoryJobRegistry(clock=clock)


@pytest.fixture
def orchestrator(registry, executor, ledger):
    return VideoProcessingOrchestrator(
        registry,
        executor,
        ledger,
        step_timeouts={"transcribe": 0.05},
        default_timeout=5,
    )


async def reserve(ledger: QuotaLedger):
    result = await ledger.check_and_reserve(SUBJECT, QuotaType.VIDEO_PROCESSING)
    assert result.allowed
    return result.reservation


async def used(ledger: QuotaLedger, quota_type: QuotaType = QuotaType.VIDEO_PROCESSING) -> int:
    return (await ledger.get_usage(SUBJECT, quota_type)).used_amount


@pytest.mark.db
class TestVideoProcessingOrchestrator:
    """Test the job pipeline end to end with a scripted executor."""

    async def test_submit_enters_first_step(self, orchestrator, executor: ScriptedExecutor):
        gate = executor.hold("extract_info")

        record = await orchestrator.submit(SUBJECT, youtube_url())

        assert record.status == JobStatus.PROCESSING
        assert record.current_step == "extract_info"
        assert record.progress == 0
        assert record.estimated_time_remaining == orchestrator.total_estimated_time == 180
        assert orchestrator.active_jobs == 1

        gate.set()
        await orchestrator.drain()
        assert orchestrator.active_jobs == 0

    async def test_completed_job_is_charged_once(self, orchestrator, registry, ledger, executor):
        reservation = await reserve(ledger)

        record = await orchestrator.submit(SUBJECT, youtube_url(), reservation=reservation)
        await orchestrator.drain()

        done = await registry.get(record.job_id)
        assert done.status == JobStatus.COMPLETED
        assert done.progress == 100
        assert done.result_ref == f"results/{record.job_id}.json"
        assert done.error is None
        assert executor.calls == list(STEP_IDS)
        assert await used(ledger) == 1
        assert await used(ledger, QuotaType.VIDEO_DURATION_MINUTES) == 12
        usage = await ledger.get_usage(SUBJECT, QuotaType.VIDEO_PROCESSING)
        assert usage.reserved_amount == 0

    async def test_step_timeout_fails_job_without_charge(self, orchestrator, registry, ledger, executor):
        executor.delays["transcribe"] = 1
        reservation = await reserve(ledger)

        record = await orchestrator.submit(SUBJECT, youtube_url(), reservation=reservation)
        await orchestrator.drain()

        failed = await registry.get(record.job_id)
        assert failed.status == JobStatus.FAILED
        assert "timed out" in failed.error
        assert failed.result_ref is None
        assert failed.current_step == "transcribe"
        assert "analyze_content" not in executor.calls
        assert await used(ledger) == 0
        assert (await ledger.get_usage(SUBJECT, QuotaType.VIDEO_PROCESSING)).reserved_amount == 0

    async def test_step_failure_stops_pipeline(self, orchestrator, registry, ledger, executor):
        executor.failures["analyze_content"] = "Content analysis failed: model error"

        record = await orchestrator.submit(SUBJECT, youtube_url())
        await orchestrator.drain()

        failed = await registry.get(record.job_id)
        assert failed.status == JobStatus.FAILED
        assert failed.error == "Content analysis failed: model error"
        assert executor.calls[-1] == "analyze_content"
        assert await used(ledger) == 0

    async def test_unexpected_executor_error_is_reported(self, mocker, orchestrator, registry, executor):
        mocker.patch.object(executor, "run", side_effect=RuntimeError("socket closed"))

        record = await orchestrator.submit(SUBJECT, youtube_url())
        await orchestrator.drain()

        failed = await registry.get(record.job_id)
        assert failed.status == JobStatus.FAILED
        assert failed.error == "Extract video info failed: socket closed"

    async def test_video_longer_than_plan_allows(self, orchestrator, registry, ledger, executor):
        executor.duration_minutes = 45

        record = await orchestrator.submit(SUBJECT, youtube_url())
        await orchestrator.drain()

        failed = await registry.get(record.job_id)
        assert failed.status == JobStatus.FAILED
        assert "up to 30 minutes" in failed.error
        assert executor.calls == ["extract_info"]
        assert await used(ledger) == 0

    async def test_progress_is_monotonic(self, mocker, orchestrator, registry):
        spy = mocker.spy(registry, "set_progress")

        record = await orchestrator.submit(SUBJECT, youtube_url())
        await orchestrator.drain()

        reported = [c.args[1] for c in spy.call_args_list]
        assert reported == sorted(reported)
        assert reported == [17, 33, 50, 67, 83]
        assert (await registry.get(record.job_id)).progress == 100

    async def test_charge_failure_keeps_job_completed(self, mocker, orchestrator, registry, ledger):
        mocker.patch.object(ledger, "record", side_effect=StoreUnavailableError("db down"))

        record = await orchestrator.submit(SUBJECT, youtube_url())
        await orchestrator.drain()

        assert (await registry.get(record.job_id)).status == JobStatus.COMPLETED

    async def test_shutdown_fails_running_jobs(self, orchestrator, registry, ledger, executor):
        executor.hold("extract_audio")
        reservation = await reserve(ledger)

        record = await orchestrator.submit(SUBJECT, youtube_url(), reservation=reservation)
        while "extract_audio" not in executor.calls:
            await asyncio.sleep(0)
        await orchestrator.shutdown()

        failed = await registry.get(record.job_id)
        assert failed.status == JobStatus.FAILED
        assert "shutdown" in failed.error
        assert executor.closed is True
        assert await used(ledger) == 0
        assert (await ledger.get_usage(SUBJECT, QuotaType.VIDEO_PROCESSING)).reserved_amount == 0

    async def test_jobs_run_independently(self, orchestrator, registry, executor):
        gate = executor.hold("extract_info")
        first = await orchestrator.submit(SUBJECT, youtube_url())
        second = await orchestrator.submit("user-8", youtube_url())

        assert orchestrator.active_jobs == 2
        gate.set()
        await orchestrator.drain()

        assert (await registry.get(first.job_id)).status == JobStatus.COMPLETED
        assert (await registry.get(second.job_id)).status == JobStatus.COMPLETED
