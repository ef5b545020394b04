"""
Quota ledger

Usage accounting per subject, quota dimension and calendar-month billing
period (UTC). `check` and `record` are independent calls; admission paths
use `check_and_reserve`, which holds the admitted amount in the counter
store until the operation records its usage or gives up. SQL reads and
writes run in the threadpool so the event loop keeps serving requests.
"""

import math
import time
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple
import logging

from fastapi.concurrency import run_in_threadpool

from learnflow.core.counter_store import Clock, CounterStore
from learnflow.core.exceptions import StoreUnavailableError, ValidationError
from learnflow.schemas.quota import (
    PlanType, QuotaAlertRecord, QuotaCheckResult, QuotaMetadata, QuotaReservation,
    QuotaType, QuotaUsageSnapshot,
)
from learnflow.services.quota.plans import PlanCatalog, QuotaPlan
from learnflow.services.quota.usage_store import SqlUsageStore

logger = logging.getLogger(__name__)

RESERVATION_PREFIX = "quota_reserved"

QUOTA_LABELS = {
    QuotaType.VIDEO_PROCESSING: "video processing",
    QuotaType.VIDEO_DURATION_MINUTES: "video duration (minutes)",
    QuotaType.STORAGE_BYTES: "storage",
    QuotaType.SHARES: "share",
    QuotaType.EXPORTS: "export",
    QuotaType.API_CALLS: "API call",
}


def month_period(at: datetime) -> Tuple[datetime, datetime]:
    """[first instant of the month, first instant of the next month) in UTC"""
    at = at.astimezone(timezone.utc)
    start = datetime(at.year, at.month, 1, tzinfo=timezone.utc)
    if at.month == 12:
        end = datetime(at.year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(at.year, at.month + 1, 1, tzinfo=timezone.utc)
    return start, end


class QuotaLedger:
    def __init__(
        self,
        usage_store: SqlUsageStore,
        counter_store: CounterStore,
        catalog: Optional[PlanCatalog] = None,
        clock: Clock = time.time,
        alert_warning_ratio: float = 0.8,
        alert_dedup_hours: int = 24,
    ):
        self.usage_store = usage_store
        self.counter_store = counter_store
        self.catalog = catalog or PlanCatalog()
        self.clock = clock
        self.alert_warning_ratio = alert_warning_ratio
        self.alert_dedup_hours = alert_dedup_hours

    def now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc)

    def current_period(self) -> Tuple[datetime, datetime]:
        return month_period(self.now())

    def _reservation_key(self, subject_id: str, quota_type: QuotaType, period_start: datetime) -> str:
        return f"{RESERVATION_PREFIX}:{subject_id}:{quota_type.value}:{period_start:%Y%m}"

    # Plans and subscriptions

    async def get_plan(self, subject_id: str) -> QuotaPlan:
        return self.catalog.get(await run_in_threadpool(self.usage_store.get_plan, subject_id))

    async def change_plan(self, subject_id: str, plan_type: PlanType) -> PlanType:
        """Move a subject up the plan ladder"""
        current = await run_in_threadpool(self.usage_store.get_plan, subject_id)
        if self.catalog.rank(plan_type) <= self.catalog.rank(current):
            raise ValidationError(f"Cannot change plan from {current.value} to {plan_type.value}")
        await run_in_threadpool(self.usage_store.set_plan, subject_id, plan_type)
        logger.info(f"Subject {subject_id} upgraded from {current.value} to {plan_type.value}")
        return plan_type

    # Usage

    async def _snapshot(self, subject_id: str, quota_type: QuotaType, plan: QuotaPlan) -> QuotaUsageSnapshot:
        start, end = self.current_period()
        used = await run_in_threadpool(self.usage_store.get_used, subject_id, quota_type, start)
        reserved = await self.counter_store.get(self._reservation_key(subject_id, quota_type, start))
        return QuotaUsageSnapshot(
            subject_id=subject_id,
            quota_type=quota_type,
            used_amount=used,
            max_amount=plan.limit_for(quota_type),
            reserved_amount=max(0, reserved),
            period_start=start,
            period_end=end,
        )

    async def get_usage(self, subject_id: str, quota_type: QuotaType) -> QuotaUsageSnapshot:
        return await self._snapshot(subject_id, quota_type, await self.get_plan(subject_id))

    async def get_all_usage(self, subject_id: str) -> Tuple[PlanType, List[QuotaUsageSnapshot]]:
        plan = await self.get_plan(subject_id)
        start, end = self.current_period()
        used = await run_in_threadpool(self.usage_store.list_used, subject_id, start)
        snapshots = []
        for quota_type in QuotaType:
            reserved = await self.counter_store.get(self._reservation_key(subject_id, quota_type, start))
            snapshots.append(QuotaUsageSnapshot(
                subject_id=subject_id,
                quota_type=quota_type,
                used_amount=used.get(quota_type, 0),
                max_amount=plan.limit_for(quota_type),
                reserved_amount=max(0, reserved),
                period_start=start,
                period_end=end,
            ))
        return plan.plan_type, snapshots

    # Checks

    def _deny(self, reason: str, plan: QuotaPlan, suggested: Optional[PlanType],
              usage: Optional[QuotaUsageSnapshot] = None) -> QuotaCheckResult:
        return QuotaCheckResult(
            allowed=False,
            reason=reason,
            current_usage=usage,
            upgrade_required=suggested is not None,
            suggested_plan=suggested,
        )

    def _check_dimension(self, plan: QuotaPlan, usage: QuotaUsageSnapshot, amount: int) -> QuotaCheckResult:
        if usage.unlimited:
            return QuotaCheckResult(allowed=True, current_usage=usage)
        needed = usage.used_amount + usage.reserved_amount + amount
        if needed > usage.max_amount:
            label = QUOTA_LABELS[usage.quota_type]
            return self._deny(
                f"Monthly {label} limit reached ({usage.used_amount}/{usage.max_amount})",
                plan,
                self.catalog.suggest_upgrade(plan.plan_type, usage.quota_type, needed),
                usage,
            )
        return QuotaCheckResult(allowed=True, current_usage=usage)

    async def _evaluate(self, subject_id: str, quota_type: QuotaType, amount: int,
                        metadata: Optional[QuotaMetadata]) -> QuotaCheckResult:
        plan = await self.get_plan(subject_id)

        if metadata is not None and quota_type == QuotaType.VIDEO_PROCESSING \
                and metadata.video_duration_minutes is not None:
            minutes = metadata.video_duration_minutes
            if plan.max_video_duration_minutes and minutes > plan.max_video_duration_minutes:
                return self._deny(
                    f"Video duration exceeds the {plan.max_video_duration_minutes} minute limit",
                    plan,
                    self.catalog.suggest_for_video_duration(plan.plan_type, minutes),
                )
            duration = await self._snapshot(subject_id, QuotaType.VIDEO_DURATION_MINUTES, plan)
            duration_result = self._check_dimension(plan, duration, math.ceil(minutes))
            if not duration_result.allowed:
                return duration_result

        if metadata is not None and quota_type in (QuotaType.VIDEO_PROCESSING, QuotaType.STORAGE_BYTES) \
                and metadata.file_size_bytes is not None:
            size = metadata.file_size_bytes
            if plan.max_file_size_bytes and size > plan.max_file_size_bytes:
                return self._deny(
                    f"File size exceeds the {plan.max_file_size_bytes // (1024 * 1024)}MB limit",
                    plan,
                    self.catalog.suggest_for_file_size(plan.plan_type, size),
                )

        usage = await self._snapshot(subject_id, quota_type, plan)
        return self._check_dimension(plan, usage, amount)

    async def check(self, subject_id: str, quota_type: QuotaType, amount: int = 1,
                    metadata: Optional[QuotaMetadata] = None) -> QuotaCheckResult:
        """Would `amount` more fit in the current period? Denies when the store is unavailable."""
        try:
            return await self._evaluate(subject_id, quota_type, amount, metadata)
        except StoreUnavailableError as e:
            logger.error(f"Quota check failed for {subject_id}/{quota_type.value}: {e}")
            return QuotaCheckResult(allowed=False, reason="Quota check failed", unavailable=True)

    async def check_and_reserve(self, subject_id: str, quota_type: QuotaType, amount: int = 1,
                                metadata: Optional[QuotaMetadata] = None) -> QuotaCheckResult:
        """Check and, when allowed, hold `amount` until `record`/`release`"""
        try:
            result = await self._evaluate(subject_id, quota_type, amount, metadata)
            if not result.allowed or result.current_usage.unlimited:
                return result

            usage = result.current_usage
            key = self._reservation_key(subject_id, quota_type, usage.period_start)
            expires_at = int(usage.period_end.timestamp() * 1000)
            reserved = await self.counter_store.add(key, amount, expires_at)
            # Usage is re-read after the reservation lands, so a concurrent
            # record/release pair can only be counted twice, never missed
            used = await run_in_threadpool(self.usage_store.get_used, subject_id, quota_type, usage.period_start)
            usage = usage.model_copy(update={"used_amount": used, "reserved_amount": reserved})

            if used + reserved > usage.max_amount:
                await self.counter_store.add(key, -amount, expires_at)
                plan = await self.get_plan(subject_id)
                return self._deny(
                    f"Monthly {QUOTA_LABELS[quota_type]} limit reached ({used}/{usage.max_amount})",
                    plan,
                    self.catalog.suggest_upgrade(plan.plan_type, quota_type, used + reserved),
                    usage.model_copy(update={"reserved_amount": reserved - amount}),
                )

            reservation = QuotaReservation(
                key=key,
                subject_id=subject_id,
                quota_type=quota_type,
                amount=amount,
                expires_at=expires_at,
            )
            return result.model_copy(update={"current_usage": usage, "reservation": reservation})
        except StoreUnavailableError as e:
            logger.error(f"Quota reservation failed for {subject_id}/{quota_type.value}: {e}")
            return QuotaCheckResult(allowed=False, reason="Quota check failed", unavailable=True)

    async def release(self, reservation: Optional[QuotaReservation]) -> None:
        if reservation is None:
            return
        try:
            await self.counter_store.add(reservation.key, -reservation.amount, reservation.expires_at)
        except StoreUnavailableError as e:
            # The hold lapses at period end
            logger.error(f"Failed to release quota reservation {reservation.key}: {e}")

    # Recording

    async def record(
        self,
        subject_id: str,
        quota_type: QuotaType,
        amount: int,
        resource_id: Optional[str] = None,
        resource_type: Optional[str] = None,
        metadata: Optional[QuotaMetadata] = None,
    ) -> QuotaUsageSnapshot:
        """Charge `amount` to the current period without consulting the limit"""
        if amount <= 0:
            raise ValidationError("Usage amount must be positive")
        start, end = self.current_period()
        used = await run_in_threadpool(
            self.usage_store.record_usage, subject_id, quota_type, amount, start, end,
            resource_id=resource_id, resource_type=resource_type, metadata=metadata,
        )
        plan = await self.get_plan(subject_id)
        usage = QuotaUsageSnapshot(
            subject_id=subject_id,
            quota_type=quota_type,
            used_amount=used,
            max_amount=plan.limit_for(quota_type),
            period_start=start,
            period_end=end,
        )
        logger.info(f"Recorded {amount} {quota_type.value} for {subject_id} ({used}/{usage.max_amount or 'unlimited'})")
        await self._raise_alerts(usage)
        return usage

    async def _raise_alerts(self, usage: QuotaUsageSnapshot) -> None:
        if usage.unlimited:
            return
        percentage = usage.percentage
        if percentage >= 100:
            alert_type, threshold = "limit_reached", 100
        elif percentage >= self.alert_warning_ratio * 100:
            alert_type, threshold = "warning", int(self.alert_warning_ratio * 100)
        else:
            return

        now = self.now()
        try:
            since = now - timedelta(hours=self.alert_dedup_hours)
            if await run_in_threadpool(
                self.usage_store.has_recent_alert, usage.subject_id, usage.quota_type, alert_type, since
            ):
                return
            await run_in_threadpool(
                self.usage_store.add_alert, usage.subject_id, usage.quota_type, alert_type, threshold,
                usage.used_amount, usage.max_amount, now,
            )
            logger.warning(
                f"Quota {alert_type} for {usage.subject_id}/{usage.quota_type.value}: {percentage}%"
            )
        except Exception as e:
            logger.error(f"Failed to create quota alert for {usage.subject_id}: {e}")

    # Alerts

    async def list_alerts(self, subject_id: str, unread_only: bool = False) -> List[QuotaAlertRecord]:
        return await run_in_threadpool(self.usage_store.list_alerts, subject_id, unread_only=unread_only)

    async def mark_alerts_read(self, subject_id: str, alert_ids: List[int]) -> int:
        return await run_in_threadpool(self.usage_store.mark_alerts_read, subject_id, alert_ids)
