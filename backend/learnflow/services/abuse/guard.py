"""
Abuse prevention

Blacklisted addresses and accounts are refused outright, and a subject may
not resubmit the same video inside the cooldown window. Both checks fail
open: an unreachable store lets the request through to the rate limiter and
quota ledger, which still bound what the caller can do.
"""

import hashlib
import math
import time
from datetime import datetime, timedelta, timezone
from typing import List, Optional
import logging

from fastapi.concurrency import run_in_threadpool

from learnflow.core.counter_store import Clock
from learnflow.core.exceptions import StoreUnavailableError, ValidationError
from learnflow.schemas.abuse import BlacklistRecord, BlacklistType, BlockCheckResult, CooldownCheckResult
from learnflow.services.abuse.store import SqlAbuseStore
from learnflow.services.jobs.registry import as_utc
from learnflow.services.youtube import extract_video_id

logger = logging.getLogger(__name__)

DEFAULT_BLOCK_REASONS = {
    BlacklistType.IP: "IP address blocked",
    BlacklistType.USER: "Account blocked",
}


def url_hash(url: str) -> str:
    """Hash of the video id, so watch, short and embed links of one video collide"""
    key = extract_video_id(url) or url.strip()
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


class AbuseGuard:
    def __init__(self, store: SqlAbuseStore, clock: Clock = time.time, cooldown_minutes: int = 60):
        self.store = store
        self.clock = clock
        self.cooldown = timedelta(minutes=cooldown_minutes)

    def now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc)

    async def check_blocked(self, address: Optional[str] = None, user_id: Optional[str] = None) -> BlockCheckResult:
        """Address first, then account"""
        now = self.now()
        for entry_type, value in ((BlacklistType.IP, address), (BlacklistType.USER, user_id)):
            if not value:
                continue
            try:
                entry = await run_in_threadpool(self.store.find_block, entry_type, value, now)
            except StoreUnavailableError as e:
                logger.warning(f"Blacklist check failed for {entry_type.value}:{value}, allowing: {e}")
                continue
            if entry is not None:
                logger.info(f"Blocked {entry_type.value} {value}: {entry.reason}")
                return BlockCheckResult(
                    blocked=True,
                    entry_type=entry_type,
                    reason=entry.reason or DEFAULT_BLOCK_REASONS[entry_type],
                )
        return BlockCheckResult(blocked=False)

    async def check_cooldown(self, subject_id: str, url: str) -> CooldownCheckResult:
        try:
            last = await run_in_threadpool(self.store.last_processing, subject_id, url_hash(url))
        except StoreUnavailableError as e:
            logger.warning(f"Cooldown check failed for {subject_id}, allowing: {e}")
            return CooldownCheckResult(allowed=True)
        if last is None:
            return CooldownCheckResult(allowed=True)

        last_processed_at, count = last
        remaining = (last_processed_at + self.cooldown - self.now()).total_seconds()
        if remaining <= 0:
            return CooldownCheckResult(allowed=True, process_count=count)

        minutes = math.ceil(remaining / 60)
        return CooldownCheckResult(
            allowed=False,
            reason=f"Video was processed recently. Please wait {minutes} minutes before processing it again.",
            retry_after=max(1, math.ceil(remaining)),
            process_count=count,
        )

    async def record_processing(self, subject_id: str, url: str) -> None:
        try:
            await run_in_threadpool(self.store.record_processing, subject_id, url_hash(url), self.now())
        except StoreUnavailableError as e:
            logger.error(f"Failed to record video submission for {subject_id}: {e}")

    # Administration

    async def block(self, entry_type: BlacklistType, value: str, reason: Optional[str] = None,
                    expires_at: Optional[datetime] = None, created_by: Optional[str] = None) -> BlacklistRecord:
        now = self.now()
        if expires_at is not None and as_utc(expires_at) <= now:
            raise ValidationError("expiresAt must be in the future")
        record = await run_in_threadpool(
            self.store.add_block, entry_type, value, reason, expires_at, created_by, now
        )
        logger.warning(f"Blacklisted {entry_type.value} {value} (reason={reason}, expires={expires_at})")
        return record

    async def unblock(self, entry_type: BlacklistType, value: str) -> int:
        removed = await run_in_threadpool(self.store.deactivate, entry_type, value)
        logger.info(f"Removed {removed} blacklist entries for {entry_type.value} {value}")
        return removed

    async def list_blocks(self) -> List[BlacklistRecord]:
        return await run_in_threadpool(self.store.list_active)
