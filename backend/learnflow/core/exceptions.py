from typing import Any, Dict, Optional

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
import logging

logger = logging.getLogger(__name__)


class LearnFlowException(Exception):
    """Base exception for LearnFlow application"""
    def __init__(self, message: str, status_code: int = 500, code: str = "internal_error"):
        self.message = message
        self.status_code = status_code
        self.code = code
        self.headers: Dict[str, str] = {}
        super().__init__(self.message)

    def to_content(self) -> Dict[str, Any]:
        return {"detail": self.message, "code": self.code}


class ValidationError(LearnFlowException):
    """Raised when request input is malformed"""
    def __init__(self, message: str = "Validation error"):
        super().__init__(message, status.HTTP_400_BAD_REQUEST, "validation_error")


class AuthenticationError(LearnFlowException):
    """Raised when an operation needs an authenticated subject"""
    def __init__(self, message: str = "Authentication required"):
        super().__init__(message, status.HTTP_401_UNAUTHORIZED, "authentication_required")


class NotFoundError(LearnFlowException):
    """Raised when a resource does not exist"""
    def __init__(self, message: str = "Resource not found"):
        super().__init__(message, status.HTTP_404_NOT_FOUND, "not_found")


class JobNotFoundError(NotFoundError):
    """Raised when a job is not found"""
    def __init__(self, message: str = "Job not found"):
        super().__init__(message)


class RateLimitExceededError(LearnFlowException):
    """Raised when a caller exceeds its request window. Retryable."""
    def __init__(
        self,
        message: str = "Too many requests",
        retry_after: int = 1,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(message, status.HTTP_429_TOO_MANY_REQUESTS, "rate_limited")
        self.retry_after = retry_after
        self.headers = {**(headers or {}), "Retry-After": str(retry_after)}

    def to_content(self) -> Dict[str, Any]:
        content = super().to_content()
        content["retryAfter"] = self.retry_after
        return content


class VideoCooldownError(RateLimitExceededError):
    """Raised when the same video is resubmitted too soon by the same subject"""
    def __init__(self, message: str = "Video processed recently", retry_after: int = 1,
                 headers: Optional[Dict[str, str]] = None):
        super().__init__(message, retry_after=retry_after, headers=headers)
        self.code = "video_cooldown"


class AccessBlockedError(LearnFlowException):
    """Raised when the caller's address or account is blacklisted"""
    def __init__(self, message: str = "Access blocked", code: str = "access_blocked"):
        super().__init__(message, status.HTTP_403_FORBIDDEN, code)


class QuotaExceededError(LearnFlowException):
    """Raised when a plan quota is exhausted. Not retryable until rollover or upgrade."""
    def __init__(
        self,
        message: str = "Quota exceeded",
        quota_result: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(message, status.HTTP_403_FORBIDDEN, "quota_exceeded")
        self.quota_result = quota_result or {}
        self.headers = headers or {}

    def to_content(self) -> Dict[str, Any]:
        content = super().to_content()
        content.update(self.quota_result)
        return content


class StoreUnavailableError(LearnFlowException):
    """Raised when the counter store or database cannot be reached"""
    def __init__(self, message: str = "Backing store unavailable", headers: Optional[Dict[str, str]] = None):
        super().__init__(message, status.HTTP_503_SERVICE_UNAVAILABLE, "store_unavailable")
        self.headers = headers or {}


class InvalidTransitionError(LearnFlowException):
    """Raised when a job state change violates the lifecycle"""
    def __init__(self, message: str = "Invalid job state transition"):
        super().__init__(message, status.HTTP_409_CONFLICT, "invalid_transition")


async def learnflow_exception_handler(request: Request, exc: LearnFlowException):
    """Handle custom LearnFlow exceptions"""
    if exc.status_code >= 500:
        logger.error(f"LearnFlow exception: {exc.message}")
    else:
        logger.info(f"Request rejected ({exc.code}): {exc.message}")

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_content(),
        headers=exc.headers or None,
    )


async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
    """Report malformed request bodies as 400 rather than FastAPI's 422"""
    errors = exc.errors()
    message = errors[0].get("msg", "Validation error") if errors else "Validation error"
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "detail": message,
            "code": "validation_error",
            "errors": [
                {"loc": list(err.get("loc", ())), "msg": err.get("msg")}
                for err in errors
            ],
        },
    )


async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError):
    """Handle SQLAlchemy database exceptions"""
    logger.error(f"Database error: {str(exc)}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Database error occurred", "code": "database_error"}
    )


async def general_exception_handler(request: Request, exc: Exception):
    """Handle general exceptions"""
    logger.exception(f"Unexpected error: {str(exc)}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error", "code": "internal_error"}
    )
