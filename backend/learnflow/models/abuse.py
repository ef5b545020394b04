from sqlalchemy import Column, Integer, String, DateTime, Boolean, UniqueConstraint, Index
from sqlalchemy.sql import func
from learnflow.db.session import Base


class BlacklistEntry(Base):
    """Blocked address or account"""
    __tablename__ = "blacklist"

    id = Column(Integer, primary_key=True, index=True)
    entry_type = Column(String(8), nullable=False)  # ip, user
    value = Column(String, nullable=False)
    reason = Column(String)
    expires_at = Column(DateTime(timezone=True))  # null means permanent
    is_active = Column(Boolean, nullable=False, default=True)
    created_by = Column(String)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_blacklist_lookup", "entry_type", "value", "is_active"),
    )


class VideoCooldown(Base):
    """Last time a subject submitted a given video URL"""
    __tablename__ = "video_processing_cooldowns"

    id = Column(Integer, primary_key=True, index=True)
    subject_id = Column(String, nullable=False)
    url_hash = Column(String(64), nullable=False)
    last_processed_at = Column(DateTime(timezone=True), nullable=False)
    process_count = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        UniqueConstraint("subject_id", "url_hash", name="uq_video_cooldown_subject_url"),
    )
