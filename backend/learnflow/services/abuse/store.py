"""
SQL persistence for blacklist entries and video resubmission cooldowns
"""

from datetime import datetime
from typing import Callable, List, Optional, Tuple
import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from learnflow.core.exceptions import StoreUnavailableError
from learnflow.models.abuse import BlacklistEntry, VideoCooldown
from learnflow.schemas.abuse import BlacklistRecord, BlacklistType
from learnflow.services.jobs.registry import as_utc

logger = logging.getLogger(__name__)


class SqlAbuseStore:
    """Blacklist and cooldown tables behind a session factory"""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    # Blacklist

    def find_block(self, entry_type: BlacklistType, value: str, now: datetime) -> Optional[BlacklistRecord]:
        """Active, unexpired entry for `value`, if any"""
        db = self.session_factory()
        try:
            rows = db.query(BlacklistEntry).filter(
                BlacklistEntry.entry_type == entry_type.value,
                BlacklistEntry.value == value,
                BlacklistEntry.is_active.is_(True),
            ).all()
            for row in rows:
                expires_at = as_utc(row.expires_at)
                if expires_at is None or expires_at > now:
                    return BlacklistRecord.model_validate(row)
            return None
        except SQLAlchemyError as e:
            logger.error(f"Failed to read blacklist for {entry_type.value}:{value}: {e}")
            raise StoreUnavailableError("Blacklist store unavailable") from e
        finally:
            db.close()

    def add_block(self, entry_type: BlacklistType, value: str, reason: Optional[str],
                  expires_at: Optional[datetime], created_by: Optional[str], created_at: datetime) -> BlacklistRecord:
        db = self.session_factory()
        try:
            row = BlacklistEntry(
                entry_type=entry_type.value,
                value=value,
                reason=reason,
                expires_at=expires_at,
                is_active=True,
                created_by=created_by,
                created_at=created_at,
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            return BlacklistRecord.model_validate(row)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to blacklist {entry_type.value}:{value}: {e}")
            raise StoreUnavailableError("Blacklist store unavailable") from e
        finally:
            db.close()

    def deactivate(self, entry_type: BlacklistType, value: str) -> int:
        db = self.session_factory()
        try:
            updated = db.query(BlacklistEntry).filter(
                BlacklistEntry.entry_type == entry_type.value,
                BlacklistEntry.value == value,
                BlacklistEntry.is_active.is_(True),
            ).update({BlacklistEntry.is_active: False}, synchronize_session=False)
            db.commit()
            return updated
        except SQLAlchemyError as e:
            db.rollback()
            raise StoreUnavailableError("Blacklist store unavailable") from e
        finally:
            db.close()

    def list_active(self, limit: int = 100) -> List[BlacklistRecord]:
        db = self.session_factory()
        try:
            rows = db.query(BlacklistEntry).filter(
                BlacklistEntry.is_active.is_(True)
            ).order_by(BlacklistEntry.created_at.desc(), BlacklistEntry.id.desc()).limit(limit).all()
            return [BlacklistRecord.model_validate(row) for row in rows]
        except SQLAlchemyError as e:
            raise StoreUnavailableError("Blacklist store unavailable") from e
        finally:
            db.close()

    # Cooldowns

    def last_processing(self, subject_id: str, url_hash: str) -> Optional[Tuple[datetime, int]]:
        db = self.session_factory()
        try:
            row = db.query(VideoCooldown).filter(
                VideoCooldown.subject_id == subject_id,
                VideoCooldown.url_hash == url_hash,
            ).first()
            return (as_utc(row.last_processed_at), row.process_count) if row else None
        except SQLAlchemyError as e:
            logger.error(f"Failed to read cooldown for {subject_id}: {e}")
            raise StoreUnavailableError("Cooldown store unavailable") from e
        finally:
            db.close()

    def record_processing(self, subject_id: str, url_hash: str, at: datetime) -> int:
        """Stamp the submission time and return how often the video was submitted"""
        db = self.session_factory()
        try:
            for attempt in range(2):
                try:
                    row = db.query(VideoCooldown).filter(
                        VideoCooldown.subject_id == subject_id,
                        VideoCooldown.url_hash == url_hash,
                    ).first()
                    if row is None:
                        row = VideoCooldown(subject_id=subject_id, url_hash=url_hash,
                                            last_processed_at=at, process_count=1)
                        db.add(row)
                    else:
                        row.last_processed_at = at
                        row.process_count += 1
                    db.commit()
                    return row.process_count
                except IntegrityError:
                    # Another writer created the row first
                    db.rollback()
                    if attempt:
                        raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to record cooldown for {subject_id}: {e}")
            raise StoreUnavailableError("Cooldown store unavailable") from e
        finally:
            db.close()
