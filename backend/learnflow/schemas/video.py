"""
Pydantic schemas for video processing requests
"""

from typing import Literal, Optional
from pydantic import BaseModel, Field, validator

from learnflow.services.youtube import is_valid_youtube_url


class ProcessVideoOptions(BaseModel):
    language: str = Field("en", min_length=2, max_length=10, description="Transcript language")
    outputFormat: Literal["concise", "standard", "detailed"] = Field("standard", description="Summary detail level")
    includeTimestamps: bool = Field(True, description="Keep timestamps in the transcript")

    class Config:
        extra = "forbid"


class ProcessVideoRequest(BaseModel):
    youtubeUrl: str = Field(..., description="YouTube video URL")
    options: Optional[ProcessVideoOptions] = None

    @validator("youtubeUrl")
    def validate_youtube_url(cls, v: str) -> str:
        v = v.strip()
        if not is_valid_youtube_url(v):
            raise ValueError("Invalid YouTube URL")
        return v


class ProcessVideoResponse(BaseModel):
    processId: str
    status: Literal["accepted"] = "accepted"
    estimatedTime: int
    message: str
