import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
import uuid

import factory
from faker import Faker

from learnflow.schemas.job import JobRecord, JobStatus
from learnflow.schemas.quota import QuotaMetadata
from learnflow.services.jobs.steps import PipelineContext, PipelineStep, StepExecutor, StepFailure, StepOutcome

fake = Faker()

# 2026-10-15 12:00:00 UTC, aligned to 15 minute windows
CLOCK_START = datetime(2026, 10, 15, 12, 0, 0, tzinfo=timezone.utc).timestamp()


class FakeClock:
    """Manually advanced wall clock in epoch seconds"""

    def __init__(self, start: float = CLOCK_START):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds

    def set(self, when: datetime) -> None:
        self.value = when.timestamp()


def youtube_url() -> str:
    video_id = fake.pystr(min_chars=11, max_chars=11)
    return f"https://www.youtube.com/watch?v={video_id}"


class JobRecordFactory(factory.Factory):
    """Factory for creating JobRecord snapshots."""

    class Meta:
        model = JobRecord

    job_id = factory.LazyFunction(lambda: str(uuid.uuid4()))
    subject_id = factory.LazyFunction(lambda: str(fake.random_int(min=1, max=999999)))
    youtube_url = factory.LazyFunction(youtube_url)
    video_id = None
    status = JobStatus.PENDING
    progress = 0
    created_at = factory.LazyFunction(lambda: datetime.fromtimestamp(CLOCK_START, tz=timezone.utc))
    updated_at = factory.LazyAttribute(lambda obj: obj.created_at)


class QuotaMetadataFactory(factory.Factory):
    """Factory for creating QuotaMetadata."""

    class Meta:
        model = QuotaMetadata

    video_duration_minutes = factory.LazyFunction(lambda: float(fake.random_int(min=1, max=25)))
    file_size_bytes = None
    video_id = factory.LazyFunction(lambda: fake.pystr(min_chars=11, max_chars=11))


class ScriptedExecutor(StepExecutor):
    """Step executor whose behaviour per step is set up by the test"""

    def __init__(
        self,
        failures: Optional[Dict[str, str]] = None,
        delays: Optional[Dict[str, float]] = None,
        duration_minutes: Optional[float] = 12.0,
    ):
        self.failures = failures or {}
        self.delays = delays or {}
        self.duration_minutes = duration_minutes
        self.gates: Dict[str, asyncio.Event] = {}
        self.calls: List[str] = []
        self.closed = False

    def hold(self, step_id: str) -> asyncio.Event:
        """Block `step_id` until the returned event is set"""
        self.gates[step_id] = asyncio.Event()
        return self.gates[step_id]

    async def run(self, step: PipelineStep, context: PipelineContext) -> StepOutcome:
        self.calls.append(step.id)
        if step.id in self.gates:
            await self.gates[step.id].wait()
        if step.id in self.delays:
            await asyncio.sleep(self.delays[step.id])
        if step.id in self.failures:
            raise StepFailure(step.id, self.failures[step.id])
        if step.id == "extract_info":
            return StepOutcome(
                artifacts={"title": fake.sentence()},
                video_duration_minutes=self.duration_minutes,
            )
        if step.id == "finalize":
            return StepOutcome(result_ref=f"results/{context.job_id}.json")
        return StepOutcome(artifacts={step.id: "done"})

    async def close(self) -> None:
        self.closed = True
