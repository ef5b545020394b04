"""
SQL persistence for quota usage, usage logs, alerts and subscriptions
"""

from datetime import datetime
from typing import Callable, Dict, List, Optional
import logging

from sqlalchemy import and_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from learnflow.core.exceptions import StoreUnavailableError
from learnflow.models.quota import QuotaAlert, QuotaUsage, QuotaUsageLog, UserSubscription
from learnflow.schemas.quota import PlanType, QuotaAlertRecord, QuotaMetadata, QuotaType

logger = logging.getLogger(__name__)


class SqlUsageStore:
    """Quota tables behind a session factory"""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def _period_filter(self, subject_id: str, quota_type: QuotaType, period_start: datetime):
        return and_(
            QuotaUsage.subject_id == subject_id,
            QuotaUsage.quota_type == quota_type.value,
            QuotaUsage.period_start == period_start,
        )

    def get_used(self, subject_id: str, quota_type: QuotaType, period_start: datetime) -> int:
        db = self.session_factory()
        try:
            row = db.query(QuotaUsage.used_amount).filter(
                self._period_filter(subject_id, quota_type, period_start)
            ).first()
            return int(row[0]) if row else 0
        except SQLAlchemyError as e:
            logger.error(f"Failed to read quota usage for {subject_id}/{quota_type.value}: {e}")
            raise StoreUnavailableError("Quota store unavailable") from e
        finally:
            db.close()

    def list_used(self, subject_id: str, period_start: datetime) -> Dict[QuotaType, int]:
        db = self.session_factory()
        try:
            rows = db.query(QuotaUsage.quota_type, QuotaUsage.used_amount).filter(
                QuotaUsage.subject_id == subject_id,
                QuotaUsage.period_start == period_start,
            ).all()
            return {QuotaType(quota_type): int(used) for quota_type, used in rows}
        except SQLAlchemyError as e:
            logger.error(f"Failed to list quota usage for {subject_id}: {e}")
            raise StoreUnavailableError("Quota store unavailable") from e
        finally:
            db.close()

    def _increment(self, db: Session, subject_id: str, quota_type: QuotaType,
                   period_start: datetime, period_end: datetime, amount: int) -> None:
        result = db.execute(
            update(QuotaUsage)
            .where(self._period_filter(subject_id, quota_type, period_start))
            .values(used_amount=QuotaUsage.used_amount + amount)
        )
        if result.rowcount == 0:
            db.add(QuotaUsage(
                subject_id=subject_id,
                quota_type=quota_type.value,
                period_start=period_start,
                period_end=period_end,
                used_amount=amount,
            ))
            db.flush()

    def record_usage(
        self,
        subject_id: str,
        quota_type: QuotaType,
        amount: int,
        period_start: datetime,
        period_end: datetime,
        resource_id: Optional[str] = None,
        resource_type: Optional[str] = None,
        metadata: Optional[QuotaMetadata] = None,
    ) -> int:
        """Atomically add `amount` to the period row and log it. Returns the new total."""
        db = self.session_factory()
        try:
            for attempt in range(2):
                try:
                    self._increment(db, subject_id, quota_type, period_start, period_end, amount)
                    break
                except IntegrityError:
                    # Another writer created the period row first
                    db.rollback()
                    if attempt:
                        raise

            db.add(QuotaUsageLog(
                subject_id=subject_id,
                quota_type=quota_type.value,
                amount=amount,
                resource_id=resource_id,
                resource_type=resource_type,
                metadata_json=metadata.model_dump(exclude_none=True) if metadata else None,
            ))
            db.commit()

            row = db.query(QuotaUsage.used_amount).filter(
                self._period_filter(subject_id, quota_type, period_start)
            ).first()
            return int(row[0]) if row else amount
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to record quota usage for {subject_id}/{quota_type.value}: {e}")
            raise StoreUnavailableError("Quota store unavailable") from e
        finally:
            db.close()

    def purge_usage_logs(self, older_than: datetime) -> int:
        db = self.session_factory()
        try:
            deleted = db.query(QuotaUsageLog).filter(
                QuotaUsageLog.created_at < older_than
            ).delete(synchronize_session=False)
            db.commit()
            return deleted
        except SQLAlchemyError as e:
            db.rollback()
            raise StoreUnavailableError("Quota store unavailable") from e
        finally:
            db.close()

    # Subscriptions

    def get_plan(self, subject_id: str) -> PlanType:
        db = self.session_factory()
        try:
            sub = db.query(UserSubscription).filter(
                UserSubscription.subject_id == subject_id,
                UserSubscription.status == "active",
            ).first()
            return PlanType(sub.plan_type) if sub else PlanType.FREE
        except SQLAlchemyError as e:
            logger.error(f"Failed to read subscription for {subject_id}: {e}")
            raise StoreUnavailableError("Subscription store unavailable") from e
        finally:
            db.close()

    def set_plan(self, subject_id: str, plan_type: PlanType) -> None:
        db = self.session_factory()
        try:
            sub = db.query(UserSubscription).filter(UserSubscription.subject_id == subject_id).first()
            if sub is None:
                db.add(UserSubscription(subject_id=subject_id, plan_type=plan_type.value, status="active"))
            else:
                sub.plan_type = plan_type.value
                sub.status = "active"
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to update subscription for {subject_id}: {e}")
            raise StoreUnavailableError("Subscription store unavailable") from e
        finally:
            db.close()

    # Alerts

    def has_recent_alert(self, subject_id: str, quota_type: QuotaType, alert_type: str, since: datetime) -> bool:
        db = self.session_factory()
        try:
            return db.query(QuotaAlert.id).filter(
                QuotaAlert.subject_id == subject_id,
                QuotaAlert.quota_type == quota_type.value,
                QuotaAlert.alert_type == alert_type,
                QuotaAlert.is_read.is_(False),
                QuotaAlert.created_at >= since,
            ).first() is not None
        finally:
            db.close()

    def add_alert(self, subject_id: str, quota_type: QuotaType, alert_type: str,
                  threshold: int, current_usage: int, max_amount: int, created_at: datetime) -> None:
        db = self.session_factory()
        try:
            db.add(QuotaAlert(
                subject_id=subject_id,
                quota_type=quota_type.value,
                alert_type=alert_type,
                threshold_percentage=threshold,
                current_usage=current_usage,
                max_amount=max_amount,
                created_at=created_at,
            ))
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    def list_alerts(self, subject_id: str, unread_only: bool = False, limit: int = 50) -> List[QuotaAlertRecord]:
        db = self.session_factory()
        try:
            query = db.query(QuotaAlert).filter(QuotaAlert.subject_id == subject_id)
            if unread_only:
                query = query.filter(QuotaAlert.is_read.is_(False))
            rows = query.order_by(QuotaAlert.created_at.desc(), QuotaAlert.id.desc()).limit(limit).all()
            return [QuotaAlertRecord.model_validate(row) for row in rows]
        except SQLAlchemyError as e:
            raise StoreUnavailableError("Quota store unavailable") from e
        finally:
            db.close()

    def mark_alerts_read(self, subject_id: str, alert_ids: List[int]) -> int:
        db = self.session_factory()
        try:
            updated = db.query(QuotaAlert).filter(
                QuotaAlert.subject_id == subject_id,
                QuotaAlert.id.in_(alert_ids),
            ).update({QuotaAlert.is_read: True}, synchronize_session=False)
            db.commit()
            return updated
        except SQLAlchemyError as e:
            db.rollback()
            raise StoreUnavailableError("Quota store unavailable") from e
        finally:
            db.close()
