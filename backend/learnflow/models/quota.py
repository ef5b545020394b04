from sqlalchemy import Column, Integer, BigInteger, String, DateTime, JSON, Boolean, UniqueConstraint, Index
from sqlalchemy.sql import func
from learnflow.db.session import Base


class QuotaUsage(Base):
    """Usage of one quota dimension by one subject in one billing period"""
    __tablename__ = "quota_usage"

    id = Column(Integer, primary_key=True, index=True)
    subject_id = Column(String, nullable=False, index=True)
    quota_type = Column(String(32), nullable=False)
    period_start = Column(DateTime(timezone=True), nullable=False)
    period_end = Column(DateTime(timezone=True), nullable=False)
    used_amount = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("subject_id", "quota_type", "period_start", name="uq_quota_usage_period"),
    )


class QuotaUsageLog(Base):
    __tablename__ = "quota_usage_logs"

    id = Column(Integer, primary_key=True, index=True)
    subject_id = Column(String, nullable=False, index=True)
    quota_type = Column(String(32), nullable=False)
    amount = Column(BigInteger, nullable=False)
    resource_id = Column(String)
    resource_type = Column(String(64))
    metadata_json = Column("metadata", JSON)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_quota_usage_logs_created", "created_at"),
    )


class QuotaAlert(Base):
    __tablename__ = "quota_alerts"

    id = Column(Integer, primary_key=True, index=True)
    subject_id = Column(String, nullable=False, index=True)
    quota_type = Column(String(32), nullable=False)
    alert_type = Column(String(16), nullable=False)  # warning, limit_reached
    threshold_percentage = Column(Integer, nullable=False)
    current_usage = Column(BigInteger, nullable=False)
    max_amount = Column(BigInteger, nullable=False)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class UserSubscription(Base):
    __tablename__ = "user_subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    subject_id = Column(String, unique=True, nullable=False, index=True)
    plan_type = Column(String(16), nullable=False, default="free")  # free, pro, max
    status = Column(String(16), nullable=False, default="active")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
