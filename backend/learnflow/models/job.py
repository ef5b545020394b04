from sqlalchemy import Column, Integer, Float, String, DateTime, Text, Index
from sqlalchemy.sql import func
from learnflow.db.session import Base


class VideoProcess(Base):
    __tablename__ = "video_processes"

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(String(36), unique=True, nullable=False, index=True)
    subject_id = Column(String, nullable=False, index=True)
    youtube_url = Column(String, nullable=False)
    video_id = Column(String(32))
    status = Column(String(16), nullable=False, default="pending")  # pending, processing, completed, failed
    progress = Column(Integer, nullable=False, default=0)
    current_step = Column(String(64))
    estimated_time_remaining = Column(Integer)
    error = Column(Text)
    result_ref = Column(String)
    processing_time = Column(Float)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_video_processes_subject_created", "subject_id", "created_at"),
    )
