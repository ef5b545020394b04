"""
Admission gateway

One allow/deny decision per proposed operation. Checks run cheapest and
most transient first: blacklist, the per-address limit, the per-user limit,
the resubmission cooldown, and finally the quota ledger, which protects the
metered resource. Rate-limit and cooldown denials are transient; quota
denials last until the billing period rolls over or the plan changes.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple
import logging

from learnflow.core.rate_limiting import RateLimiter, RateLimitResult, RateLimitRule, rate_limit_headers
from learnflow.schemas.abuse import BlockCheckResult, CooldownCheckResult
from learnflow.schemas.quota import QuotaCheckResult, QuotaMetadata, QuotaReservation, QuotaType
from learnflow.services.abuse.guard import AbuseGuard
from learnflow.services.quota.ledger import QuotaLedger

logger = logging.getLogger(__name__)


class OperationKind(str, Enum):
    VIDEO_PROCESSING = "video_processing"
    SHARE_CREATE = "share_create"
    EXPORT_CONTENT = "export_content"
    API_CALL = "api_call"


class DenialKind(str, Enum):
    BLOCKED = "blocked"
    RATE_LIMITED = "rate_limited"
    COOLDOWN = "cooldown"
    QUOTA_EXCEEDED = "quota_exceeded"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class OperationPolicy:
    user_preset: str
    quota_type: QuotaType
    address_preset: Optional[str] = None
    cooldown: bool = False


OPERATION_POLICIES: Dict[OperationKind, OperationPolicy] = {
    OperationKind.VIDEO_PROCESSING: OperationPolicy(
        "video_processing", QuotaType.VIDEO_PROCESSING, address_preset="video_processing_ip", cooldown=True,
    ),
    OperationKind.SHARE_CREATE: OperationPolicy("create_share", QuotaType.SHARES),
    OperationKind.EXPORT_CONTENT: OperationPolicy("moderate", QuotaType.EXPORTS),
    OperationKind.API_CALL: OperationPolicy("moderate", QuotaType.API_CALLS),
}


@dataclass(frozen=True)
class AdmissionDecision:
    allowed: bool
    rate_limit: Optional[RateLimitResult] = None
    reason: Optional[str] = None
    denial: Optional[DenialKind] = None
    quota_result: Optional[QuotaCheckResult] = None
    block: Optional[BlockCheckResult] = None
    cooldown: Optional[CooldownCheckResult] = None

    @property
    def retry_after(self) -> Optional[int]:
        if self.denial == DenialKind.RATE_LIMITED:
            return self.rate_limit.retry_after
        if self.denial == DenialKind.COOLDOWN:
            return self.cooldown.retry_after
        return None

    @property
    def reservation(self) -> Optional[QuotaReservation]:
        return self.quota_result.reservation if self.quota_result else None

    @property
    def headers(self) -> Dict[str, str]:
        return rate_limit_headers(self.rate_limit) if self.rate_limit else {}


class AdmissionGateway:
    def __init__(
        self,
        rate_limiter: RateLimiter,
        ledger: QuotaLedger,
        rules: Dict[str, RateLimitRule],
        guard: Optional[AbuseGuard] = None,
    ):
        self.rate_limiter = rate_limiter
        self.ledger = ledger
        self.rules = rules
        self.guard = guard

    def policy_for(self, operation: OperationKind) -> OperationPolicy:
        return OPERATION_POLICIES[operation]

    def _limits_for(self, policy: OperationPolicy, address: str,
                    user_id: Optional[str]) -> List[Tuple[RateLimitRule, str]]:
        limits = []
        if policy.address_preset:
            limits.append((self.rules[policy.address_preset], f"ip:{address}"))
        user_identity = f"user:{user_id}" if user_id else f"ip:{address}"
        limits.append((self.rules[policy.user_preset], user_identity))
        return limits

    async def admit(
        self,
        subject_id: str,
        operation: OperationKind,
        address: str,
        user_id: Optional[str] = None,
        amount: int = 1,
        metadata: Optional[QuotaMetadata] = None,
        resource_url: Optional[str] = None,
    ) -> AdmissionDecision:
        """
        Decide whether `subject_id`, calling from `address`, may start `operation`.

        `user_id` is the authenticated account, if any; anonymous callers are
        limited by address alone. An allowed decision carries a quota
        reservation that the caller must either record against or release.
        """
        policy = self.policy_for(operation)

        if self.guard is not None:
            block = await self.guard.check_blocked(address, user_id)
            if block.blocked:
                return AdmissionDecision(allowed=False, reason=block.reason, denial=DenialKind.BLOCKED, block=block)

        rate: Optional[RateLimitResult] = None
        for rule, identity in self._limits_for(policy, address, user_id):
            result = await self.rate_limiter.allow(rule.scoped(identity), rule.window_ms, rule.max_requests)
            if not result.allowed:
                return AdmissionDecision(
                    allowed=False,
                    rate_limit=result,
                    reason=f"Too many requests, retry after {result.retry_after} seconds",
                    denial=DenialKind.RATE_LIMITED,
                )
            if rate is None or result.remaining < rate.remaining:
                rate = result

        track_resource = policy.cooldown and resource_url is not None and self.guard is not None
        if track_resource:
            cooldown = await self.guard.check_cooldown(subject_id, resource_url)
            if not cooldown.allowed:
                return AdmissionDecision(
                    allowed=False,
                    rate_limit=rate,
                    reason=cooldown.reason,
                    denial=DenialKind.COOLDOWN,
                    cooldown=cooldown,
                )

        quota = await self.ledger.check_and_reserve(subject_id, policy.quota_type, amount, metadata)
        if not quota.allowed:
            denial = DenialKind.UNAVAILABLE if quota.unavailable else DenialKind.QUOTA_EXCEEDED
            logger.info(f"Admission denied for {subject_id} ({operation.value}, {denial.value}): {quota.reason}")
            return AdmissionDecision(
                allowed=False,
                rate_limit=rate,
                reason=quota.reason,
                denial=denial,
                quota_result=quota,
            )

        if track_resource:
            await self.guard.record_processing(subject_id, resource_url)

        return AdmissionDecision(allowed=True, rate_limit=rate, quota_result=quota)
