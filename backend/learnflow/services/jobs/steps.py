"""
Processing pipeline steps and the executor interface that runs them
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple


@dataclass(frozen=True)
class PipelineStep:
    id: str
    name: str
    estimated_duration: int  # seconds


PROCESSING_STEPS: Tuple[PipelineStep, ...] = (
    PipelineStep("extract_info", "Extract video info", 10),
    PipelineStep("extract_audio", "Extract audio", 30),
    PipelineStep("transcribe", "Transcribe audio", 40),
    PipelineStep("analyze_content", "Analyze content", 60),
    PipelineStep("generate_knowledge_graph", "Generate knowledge graph", 30),
    PipelineStep("finalize", "Finalize", 10),
)

STEP_IDS = tuple(step.id for step in PROCESSING_STEPS)


def estimated_time_remaining(steps: Tuple[PipelineStep, ...], index: int) -> int:
    """Seconds left counting the step at `index` and everything after it"""
    return sum(step.estimated_duration for step in steps[index:])


class StepFailure(Exception):
    """A pipeline step reported failure or could not be reached"""
    def __init__(self, step_id: str, message: str):
        self.step_id = step_id
        self.message = message
        super().__init__(message)


@dataclass
class PipelineContext:
    job_id: str
    subject_id: str
    youtube_url: str
    video_id: Optional[str] = None
    options: Dict[str, Any] = field(default_factory=dict)
    artifacts: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StepOutcome:
    artifacts: Dict[str, Any] = field(default_factory=dict)
    video_duration_minutes: Optional[float] = None
    result_ref: Optional[str] = None


class StepExecutor(ABC):
    """Runs one pipeline step against whatever does the actual work"""

    @abstractmethod
    async def run(self, step: PipelineStep, context: PipelineContext) -> StepOutcome:
        """Raise StepFailure when the step cannot complete"""

    async def close(self) -> None:
        return None
