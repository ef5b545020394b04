import hmac
from typing import Optional

from fastapi import Depends, Header, Request, Response
from slowapi.util import get_remote_address

from learnflow.core.container import ServiceContainer
from learnflow.core.exceptions import (
    AccessBlockedError, AuthenticationError, LearnFlowException, QuotaExceededError, RateLimitExceededError,
    StoreUnavailableError, VideoCooldownError,
)
from learnflow.core.rate_limiting import RateLimitResult, rate_limit_headers, resolve_user_id
from learnflow.schemas.quota import QuotaCheckResponse
from learnflow.services.admission import AdmissionDecision, DenialKind


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_current_subject(request: Request) -> str:
    """Authenticated user id, or an anonymous identity derived from the client address"""
    user_id = resolve_user_id(request)
    if user_id:
        return user_id
    return f"anon:{get_remote_address(request)}"


def get_current_user_id(request: Request) -> str:
    user_id = resolve_user_id(request)
    if not user_id:
        raise AuthenticationError()
    return user_id


def rate_limit(preset: str):
    """Dependency enforcing one of the configured rate limit presets"""

    async def _check(
        request: Request,
        response: Response,
        container: ServiceContainer = Depends(get_container),
    ) -> RateLimitResult:
        rule = container.rate_limit_rules[preset]
        result = await container.rate_limiter.check(rule, request)
        headers = rate_limit_headers(result)
        if not result.allowed:
            raise RateLimitExceededError(
                f"Too many requests, retry after {result.retry_after} seconds",
                retry_after=result.retry_after,
                headers=headers,
            )
        response.headers.update(headers)
        return result

    return _check


def verify_admin_key(
    x_admin_key: Optional[str] = Header(None),
    container: ServiceContainer = Depends(get_container),
) -> None:
    expected = container.settings.ADMIN_API_KEY
    if not expected or not x_admin_key or not hmac.compare_digest(x_admin_key, expected):
        raise AuthenticationError("Invalid admin key")


def admission_error(decision: AdmissionDecision) -> LearnFlowException:
    """HTTP error for a denied admission"""
    if decision.denial == DenialKind.BLOCKED:
        code = f"{decision.block.entry_type.value}_blocked"
        return AccessBlockedError(decision.reason or "Access blocked", code=code)
    if decision.denial == DenialKind.RATE_LIMITED:
        return RateLimitExceededError(decision.reason, retry_after=decision.retry_after, headers=decision.headers)
    if decision.denial == DenialKind.COOLDOWN:
        return VideoCooldownError(decision.reason, retry_after=decision.retry_after, headers=decision.headers)
    if decision.denial == DenialKind.UNAVAILABLE:
        return StoreUnavailableError("Quota service unavailable", headers=decision.headers)
    return QuotaExceededError(
        decision.reason or "Quota exceeded",
        quota_result=QuotaCheckResponse.from_result(decision.quota_result).model_dump(mode="json"),
        headers=decision.headers,
    )
