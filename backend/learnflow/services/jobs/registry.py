"""
Job registry

Stores the lifecycle of video processing jobs. Every write goes through
`JobStateMachine.apply`, which rejects illegal transitions, keeps progress
monotonic and advances `updated_at`. Readers get frozen `JobRecord`
snapshots, so polling never waits on the writer.
"""

import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
import logging

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from learnflow.core.counter_store import Clock
from learnflow.core.exceptions import InvalidTransitionError, JobNotFoundError, StoreUnavailableError
from learnflow.models.job import VideoProcess
from learnflow.schemas.job import JobRecord, JobStatus

logger = logging.getLogger(__name__)

TERMINAL = (JobStatus.COMPLETED, JobStatus.FAILED)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class JobStateMachine:
    """Validates and applies job state transitions"""

    VALID_TRANSITIONS = {
        JobStatus.PENDING: {JobStatus.PROCESSING, JobStatus.FAILED},
        JobStatus.PROCESSING: {JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED},
        JobStatus.COMPLETED: set(),
        JobStatus.FAILED: set(),
    }

    @classmethod
    def can_transition(cls, current: JobStatus, new: JobStatus) -> bool:
        return new in cls.VALID_TRANSITIONS.get(current, set())

    @classmethod
    def apply(cls, record: JobRecord, now: datetime, status: Optional[JobStatus] = None, **changes: Any) -> JobRecord:
        if record.status.is_terminal:
            raise InvalidTransitionError(f"Job {record.job_id} is already {record.status.value}")

        new_status = status or record.status
        if new_status != record.status and not cls.can_transition(record.status, new_status):
            raise InvalidTransitionError(
                f"Invalid transition for job {record.job_id}: {record.status.value} -> {new_status.value}"
            )

        if "progress" in changes:
            changes["progress"] = max(record.progress, changes["progress"])

        if now <= record.updated_at:
            now = record.updated_at + timedelta(microseconds=1)

        changes["status"] = new_status
        changes["updated_at"] = now
        if new_status == JobStatus.PROCESSING and record.started_at is None:
            changes["started_at"] = now
        if new_status in TERMINAL:
            changes["completed_at"] = now
        if new_status != JobStatus.FAILED:
            changes["error"] = None
        if new_status != JobStatus.COMPLETED:
            changes["result_ref"] = None

        return record.model_copy(update=changes)


class JobRegistry(ABC):
    def __init__(self, clock: Clock = time.time):
        self.clock = clock

    def now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc)

    def new_record(self, job_id: str, subject_id: str, youtube_url: str, video_id: Optional[str] = None) -> JobRecord:
        now = self.now()
        return JobRecord(
            job_id=job_id,
            subject_id=subject_id,
            youtube_url=youtube_url,
            video_id=video_id,
            created_at=now,
            updated_at=now,
        )

    @staticmethod
    def _check_new(record: JobRecord) -> None:
        if record.status != JobStatus.PENDING:
            raise InvalidTransitionError(f"Job {record.job_id} must start as pending")

    @abstractmethod
    async def create(self, record: JobRecord) -> JobRecord:
        ...

    @abstractmethod
    async def get(self, job_id: str) -> Optional[JobRecord]:
        ...

    @abstractmethod
    async def _update(self, job_id: str, status: Optional[JobStatus] = None, **changes: Any) -> JobRecord:
        ...

    @abstractmethod
    async def list_for_subject(self, subject_id: str, limit: int = 20) -> List[JobRecord]:
        ...

    @abstractmethod
    async def stats(self, subject_id: Optional[str] = None) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def purge_terminal(self, older_than: datetime) -> int:
        ...

    async def mark_step(self, job_id: str, step: str, estimated_time_remaining: Optional[int] = None) -> JobRecord:
        """Enter `step`, moving the job to processing (idempotent)"""
        return await self._update(
            job_id,
            status=JobStatus.PROCESSING,
            current_step=step,
            estimated_time_remaining=estimated_time_remaining,
        )

    async def set_progress(self, job_id: str, progress: int, estimated_time_remaining: Optional[int] = None) -> JobRecord:
        return await self._update(
            job_id,
            progress=min(100, max(0, progress)),
            estimated_time_remaining=estimated_time_remaining,
        )

    async def complete(self, job_id: str, result_ref: str, processing_time: Optional[float] = None) -> JobRecord:
        return await self._update(
            job_id,
            status=JobStatus.COMPLETED,
            progress=100,
            result_ref=result_ref,
            processing_time=processing_time,
            estimated_time_remaining=0,
        )

    async def fail(self, job_id: str, error: str) -> JobRecord:
        return await self._update(
            job_id,
            status=JobStatus.FAILED,
            error=error or "Processing failed",
            estimated_time_remaining=None,
        )

    @staticmethod
    def summarize(records: List[JobRecord]) -> Dict[str, Any]:
        counts = {status.value: 0 for status in JobStatus}
        times = []
        for record in records:
            counts[record.status.value] += 1
            if record.status == JobStatus.COMPLETED and record.processing_time is not None:
                times.append(record.processing_time)
        return {
            "total": len(records),
            **counts,
            "average_processing_time": round(sum(times) / len(times), 2) if times else None,
        }


class InMemoryJobRegistry(JobRegistry):
    """Copy-on-write job map for single-instance deployments"""

    def __init__(self, clock: Clock = time.time, result_ttl: Optional[timedelta] = None):
        super().__init__(clock)
        self._jobs: Dict[str, JobRecord] = {}
        self._lock = threading.Lock()
        self.result_ttl = result_ttl

    async def create(self, record: JobRecord) -> JobRecord:
        self._check_new(record)
        if self.result_ttl is not None:
            await self.purge_terminal(self.now() - self.result_ttl)
        with self._lock:
            if record.job_id in self._jobs:
                raise InvalidTransitionError(f"Job {record.job_id} already exists")
            self._jobs[record.job_id] = record
        return record

    async def get(self, job_id: str) -> Optional[JobRecord]:
        return self._jobs.get(job_id)

    async def _update(self, job_id: str, status: Optional[JobStatus] = None, **changes: Any) -> JobRecord:
        with self._lock:
            record = self._jobs.get(job_id)
            if record is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            updated = JobStateMachine.apply(record, self.now(), status, **changes)
            self._jobs[job_id] = updated
        return updated

    async def list_for_subject(self, subject_id: str, limit: int = 20) -> List[JobRecord]:
        records = [r for r in list(self._jobs.values()) if r.subject_id == subject_id]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records[:limit]

    async def stats(self, subject_id: Optional[str] = None) -> Dict[str, Any]:
        records = list(self._jobs.values())
        if subject_id is not None:
            records = [r for r in records if r.subject_id == subject_id]
        return self.summarize(records)

    async def purge_terminal(self, older_than: datetime) -> int:
        with self._lock:
            expired = [
                job_id for job_id, r in self._jobs.items()
                if r.status.is_terminal and r.updated_at < older_than
            ]
            for job_id in expired:
                del self._jobs[job_id]
        if expired:
            logger.info(f"Purged {len(expired)} finished jobs")
        return len(expired)


_RECORD_FIELDS = [
    "subject_id", "youtube_url", "video_id", "status", "progress", "current_step",
    "estimated_time_remaining", "error", "result_ref", "processing_time",
    "created_at", "updated_at", "started_at", "completed_at",
]


class SqlJobRegistry(JobRegistry):
    """Job records in the video_processes table, queried from the threadpool"""

    def __init__(self, session_factory: Callable[[], Session], clock: Clock = time.time):
        super().__init__(clock)
        self.session_factory = session_factory

    @staticmethod
    def _to_record(row: VideoProcess) -> JobRecord:
        return JobRecord(
            job_id=row.job_id,
            subject_id=row.subject_id,
            youtube_url=row.youtube_url,
            video_id=row.video_id,
            status=JobStatus(row.status),
            progress=row.progress or 0,
            current_step=row.current_step,
            estimated_time_remaining=row.estimated_time_remaining,
            error=row.error,
            result_ref=row.result_ref,
            processing_time=row.processing_time,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
            started_at=as_utc(row.started_at),
            completed_at=as_utc(row.completed_at),
        )

    @staticmethod
    def _write(row: VideoProcess, record: JobRecord) -> None:
        for name in _RECORD_FIELDS:
            value = getattr(record, name)
            setattr(row, name, value.value if isinstance(value, JobStatus) else value)

    async def create(self, record: JobRecord) -> JobRecord:
        self._check_new(record)
        return await run_in_threadpool(self._insert, record)

    def _insert(self, record: JobRecord) -> JobRecord:
        db = self.session_factory()
        try:
            row = VideoProcess(job_id=record.job_id)
            self._write(row, record)
            db.add(row)
            db.commit()
            return record
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to create job {record.job_id}: {e}")
            raise StoreUnavailableError("Job store unavailable") from e
        finally:
            db.close()

    async def get(self, job_id: str) -> Optional[JobRecord]:
        return await run_in_threadpool(self._load, job_id)

    def _load(self, job_id: str) -> Optional[JobRecord]:
        db = self.session_factory()
        try:
            row = db.query(VideoProcess).filter(VideoProcess.job_id == job_id).first()
            return self._to_record(row) if row else None
        except SQLAlchemyError as e:
            logger.error(f"Failed to load job {job_id}: {e}")
            raise StoreUnavailableError("Job store unavailable") from e
        finally:
            db.close()

    async def _update(self, job_id: str, status: Optional[JobStatus] = None, **changes: Any) -> JobRecord:
        return await run_in_threadpool(self._apply, job_id, status, changes)

    def _apply(self, job_id: str, status: Optional[JobStatus], changes: Dict[str, Any]) -> JobRecord:
        db = self.session_factory()
        try:
            row = db.query(VideoProcess).filter(VideoProcess.job_id == job_id).with_for_update().first()
            if row is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            updated = JobStateMachine.apply(self._to_record(row), self.now(), status, **changes)
            self._write(row, updated)
            db.commit()
            return updated
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to update job {job_id}: {e}")
            raise StoreUnavailableError("Job store unavailable") from e
        finally:
            db.close()

    async def list_for_subject(self, subject_id: str, limit: int = 20) -> List[JobRecord]:
        return await run_in_threadpool(self._list, subject_id, limit)

    def _list(self, subject_id: str, limit: int) -> List[JobRecord]:
        db = self.session_factory()
        try:
            rows = db.query(VideoProcess).filter(
                VideoProcess.subject_id == subject_id
            ).order_by(VideoProcess.created_at.desc()).limit(limit).all()
            return [self._to_record(row) for row in rows]
        except SQLAlchemyError as e:
            raise StoreUnavailableError("Job store unavailable") from e
        finally:
            db.close()

    async def stats(self, subject_id: Optional[str] = None) -> Dict[str, Any]:
        return await run_in_threadpool(self._stats, subject_id)

    def _stats(self, subject_id: Optional[str]) -> Dict[str, Any]:
        db = self.session_factory()
        try:
            query = db.query(VideoProcess.status, func.count(VideoProcess.id))
            avg_query = db.query(func.avg(VideoProcess.processing_time)).filter(
                VideoProcess.status == JobStatus.COMPLETED.value
            )
            if subject_id is not None:
                query = query.filter(VideoProcess.subject_id == subject_id)
                avg_query = avg_query.filter(VideoProcess.subject_id == subject_id)
            counts = {status.value: 0 for status in JobStatus}
            for status, count in query.group_by(VideoProcess.status).all():
                counts[status] = count
            average = avg_query.scalar()
            return {
                "total": sum(counts.values()),
                **counts,
                "average_processing_time": round(float(average), 2) if average is not None else None,
            }
        except SQLAlchemyError as e:
            raise StoreUnavailableError("Job store unavailable") from e
        finally:
            db.close()

    async def purge_terminal(self, older_than: datetime) -> int:
        return await run_in_threadpool(self._purge, older_than)

    def _purge(self, older_than: datetime) -> int:
        db = self.session_factory()
        try:
            deleted = db.query(VideoProcess).filter(
                VideoProcess.status.in_([s.value for s in TERMINAL]),
                VideoProcess.updated_at < older_than,
            ).delete(synchronize_session=False)
            db.commit()
            return deleted
        except SQLAlchemyError as e:
            db.rollback()
            raise StoreUnavailableError("Job store unavailable") from e
        finally:
            db.close()
