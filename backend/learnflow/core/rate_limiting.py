"""
Rate limiting configuration and utilities

Fixed-window counters keyed by caller identity. A request straddling two
windows can see up to twice the configured limit across the boundary; that
imprecision is accepted in exchange for one counter per window.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional
import logging

from fastapi import Request
from limits import parse
from slowapi.util import get_remote_address

from learnflow.core.config import settings
from learnflow.core.counter_store import CounterStore, now_ms
from learnflow.core.exceptions import StoreUnavailableError

logger = logging.getLogger(__name__)

KEY_PREFIX = "rate_limit"

KeyFunc = Callable[[Request], str]


def trusts_user_header(request: Request) -> bool:
    """Whether the running app accepts X-User-Id from its gateway"""
    app = request.scope.get("app")
    container = getattr(getattr(app, "state", None), "container", None)
    source = container.settings if container is not None else settings
    return source.TRUST_USER_HEADER


def resolve_user_id(request: Request) -> Optional[str]:
    """Authenticated user id set upstream, or the gateway-forwarded header"""
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return str(user_id)
    if trusts_user_header(request):
        header = request.headers.get("X-User-Id", "").strip()
        if header:
            return header
    return None


# Identity strategies for different endpoint classes
def address_key(request: Request) -> str:
    """Rate limiting by network address"""
    return f"ip:{get_remote_address(request)}"


def user_key(request: Request) -> str:
    """Rate limiting per authenticated user, falling back to address"""
    user_id = resolve_user_id(request)
    if user_id:
        return f"user:{user_id}"
    return address_key(request)


def endpoint_key(request: Request) -> str:
    """Rate limiting per address and route, independent of user identity"""
    route = request.scope.get("route")
    path = getattr(route, "path", None) or request.url.path
    return f"{address_key(request)}:{path}"


PRESET_KEY_FUNCS: Dict[str, KeyFunc] = {
    "strict": address_key,
    "moderate": user_key,
    "lenient": address_key,
    "per_user": user_key,
    "per_endpoint": endpoint_key,
    "upload": user_key,
    "video_processing": user_key,
    "video_processing_ip": address_key,
    "create_share": user_key,
    "public_access": address_key,
    "plan_change": user_key,
    "plan_change_ip": address_key,
}


@dataclass(frozen=True)
class RateLimitRule:
    name: str
    max_requests: int
    window_ms: int
    key_func: KeyFunc

    def scoped(self, identity: str) -> str:
        """Counter identity for this rule, so presets sharing a window never share a counter"""
        return f"{identity}:{self.name}"

    @classmethod
    def from_string(cls, name: str, limit: str, key_func: KeyFunc = address_key) -> "RateLimitRule":
        item = parse(limit)
        return cls(name=name, max_requests=item.amount, window_ms=item.get_expiry() * 1000, key_func=key_func)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    count: int
    remaining: int
    reset_time: int  # epoch milliseconds
    retry_after: Optional[int] = None
    degraded: bool = False


def build_rules(limits: Dict[str, str]) -> Dict[str, RateLimitRule]:
    """Turn the RATE_LIMITS setting into rules with their identity strategy"""
    return {
        name: RateLimitRule.from_string(name, limit, PRESET_KEY_FUNCS.get(name, address_key))
        for name, limit in limits.items()
    }


def rate_limit_headers(result: RateLimitResult) -> Dict[str, str]:
    reset_at = datetime.fromtimestamp(result.reset_time / 1000, tz=timezone.utc)
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": reset_at.isoformat(),
    }


class RateLimiter:
    """Fixed-window limiter over a CounterStore. Fails open when the store is down."""

    def __init__(self, store: CounterStore, warning_ratio: float = 0.8):
        self.store = store
        self.warning_ratio = warning_ratio

    async def allow(self, identity: str, window_ms: int, max_requests: int) -> RateLimitResult:
        try:
            window = await self.store.increment(f"{KEY_PREFIX}:{identity}", window_ms)
        except StoreUnavailableError as e:
            logger.warning(f"Rate limiter store unavailable, allowing {identity}: {e}")
            _, reset_time = self.store.window_for(window_ms)
            return RateLimitResult(
                allowed=True,
                limit=max_requests,
                count=0,
                remaining=max_requests,
                reset_time=reset_time,
                degraded=True,
            )

        allowed = window.count <= max_requests
        remaining = max(0, max_requests - window.count)
        retry_after = None
        if not allowed:
            retry_after = max(1, math.ceil((window.reset_time - now_ms(self.store.clock)) / 1000))
            logger.info(f"Rate limit exceeded for {identity}: {window.count}/{max_requests}")
        elif window.count > max_requests * self.warning_ratio:
            logger.warning(f"Rate limit warning for {identity}: {window.count}/{max_requests}")

        return RateLimitResult(
            allowed=allowed,
            limit=max_requests,
            count=window.count,
            remaining=remaining,
            reset_time=window.reset_time,
            retry_after=retry_after,
        )

    async def check(self, rule: RateLimitRule, request: Request) -> RateLimitResult:
        return await self.allow(rule.scoped(rule.key_func(request)), rule.window_ms, rule.max_requests)

    async def reset(self, identity: str) -> int:
        """Administrative reset of every window held by an identity"""
        deleted = await self.store.reset(f"{KEY_PREFIX}:{identity}:")
        logger.info(f"Reset {deleted} rate limit counters for {identity}")
        return deleted

    async def reset_user(self, user_id: str) -> int:
        return await self.reset(f"user:{user_id}")

    async def reset_address(self, address: str) -> int:
        return await self.reset(f"ip:{address}")
