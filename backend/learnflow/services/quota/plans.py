"""
Subscription plan tiers and their per-dimension quota limits
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional

from learnflow.schemas.quota import PlanType, QuotaType

GIB = 1024 ** 3
MIB = 1024 ** 2


@dataclass(frozen=True)
class QuotaPlan:
    plan_type: PlanType
    limits: Dict[QuotaType, int] = field(default_factory=dict)  # 0 means unlimited
    max_video_duration_minutes: int = 0
    max_file_size_bytes: int = 0

    def limit_for(self, quota_type: QuotaType) -> int:
        return self.limits.get(quota_type, 0)


DEFAULT_PLANS: Dict[PlanType, QuotaPlan] = {
    PlanType.FREE: QuotaPlan(
        plan_type=PlanType.FREE,
        limits={
            QuotaType.VIDEO_PROCESSING: 3,
            QuotaType.VIDEO_DURATION_MINUTES: 60,
            QuotaType.STORAGE_BYTES: 1 * GIB,
            QuotaType.SHARES: 5,
            QuotaType.EXPORTS: 10,
            QuotaType.API_CALLS: 100,
        },
        max_video_duration_minutes=30,
        max_file_size_bytes=100 * MIB,
    ),
    PlanType.PRO: QuotaPlan(
        plan_type=PlanType.PRO,
        limits={
            QuotaType.VIDEO_PROCESSING: 50,
            QuotaType.VIDEO_DURATION_MINUTES: 3000,
            QuotaType.STORAGE_BYTES: 10 * GIB,
            QuotaType.SHARES: 100,
            QuotaType.EXPORTS: 100,
            QuotaType.API_CALLS: 10000,
        },
        max_video_duration_minutes=60,
        max_file_size_bytes=500 * MIB,
    ),
    PlanType.MAX: QuotaPlan(
        plan_type=PlanType.MAX,
        limits={
            QuotaType.VIDEO_PROCESSING: 200,
            QuotaType.VIDEO_DURATION_MINUTES: 24000,
            QuotaType.STORAGE_BYTES: 50 * GIB,
            QuotaType.SHARES: 500,
            QuotaType.EXPORTS: 0,
            QuotaType.API_CALLS: 0,
        },
        max_video_duration_minutes=120,
        max_file_size_bytes=1 * GIB,
    ),
}

UPGRADE_PATH: List[PlanType] = [PlanType.FREE, PlanType.PRO, PlanType.MAX]


def _within(limit: int, needed: float) -> bool:
    return limit == 0 or needed <= limit


class PlanCatalog:
    """Lookup of plan tiers with upgrade suggestions"""

    def __init__(self, plans: Optional[Dict[PlanType, QuotaPlan]] = None):
        self.plans = dict(plans or DEFAULT_PLANS)

    @classmethod
    def from_overrides(cls, overrides: Dict[str, Dict[str, Any]]) -> "PlanCatalog":
        """Merge partial overrides such as {"free": {"video_processing": 5}} over the defaults"""
        plans = dict(DEFAULT_PLANS)
        for plan_name, values in (overrides or {}).items():
            plan = plans[PlanType(plan_name)]
            limits = dict(plan.limits)
            changes: Dict[str, Any] = {}
            for key, value in values.items():
                if key in ("max_video_duration_minutes", "max_file_size_bytes"):
                    changes[key] = int(value)
                else:
                    limits[QuotaType(key)] = int(value)
            plans[plan.plan_type] = replace(plan, limits=limits, **changes)
        return cls(plans)

    def get(self, plan_type: PlanType) -> QuotaPlan:
        return self.plans[plan_type]

    def all(self) -> Iterable[QuotaPlan]:
        return [self.plans[p] for p in UPGRADE_PATH if p in self.plans]

    def rank(self, plan_type: PlanType) -> int:
        return UPGRADE_PATH.index(plan_type)

    def next_plan(self, plan_type: PlanType) -> Optional[PlanType]:
        index = self.rank(plan_type)
        if index + 1 < len(UPGRADE_PATH):
            return UPGRADE_PATH[index + 1]
        return None

    def _higher_plans(self, plan_type: PlanType) -> List[QuotaPlan]:
        return [self.plans[p] for p in UPGRADE_PATH[self.rank(plan_type) + 1:]]

    def suggest_upgrade(self, plan_type: PlanType, quota_type: QuotaType, needed: int) -> Optional[PlanType]:
        """Lowest higher tier whose monthly limit accommodates `needed`"""
        for plan in self._higher_plans(plan_type):
            if _within(plan.limit_for(quota_type), needed):
                return plan.plan_type
        return None

    def suggest_for_video_duration(self, plan_type: PlanType, minutes: float) -> Optional[PlanType]:
        for plan in self._higher_plans(plan_type):
            if _within(plan.max_video_duration_minutes, minutes):
                return plan.plan_type
        return None

    def suggest_for_file_size(self, plan_type: PlanType, size_bytes: int) -> Optional[PlanType]:
        for plan in self._higher_plans(plan_type):
            if _within(plan.max_file_size_bytes, size_bytes):
                return plan.plan_type
        return None
