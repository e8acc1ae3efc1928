# apishield/core/exceptions.py
"""
Core exceptions - standardized error handling for the security pipeline.

Every error carries a human-readable message and an optional details dict.
The details are for server-side logs only; `error_response` renders the
client-facing body from `error_code` and `public_message` so internal
context (session ids, failure reasons) never reaches the caller.
"""

import math
from typing import Optional, Dict, Any

from starlette.responses import JSONResponse


class ApiShieldError(Exception):
    """Base exception for all apishield errors"""

    status_code: int = 500
    error_code: str = "internal_error"
    public_message: str = "An unexpected error occurred"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        """
        Initialize base exception.

        Args:
            message: Human-readable error message (logged)
            details: Optional additional error details (logged, never returned)
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class SessionInvalidError(ApiShieldError):
    """Unknown, expired or ended session"""

    status_code = 401
    error_code = "session_invalid"
    public_message = "No valid session. Please start a new session."

    def __init__(
        self,
        message: str = "Session is not valid",
        session_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.session_id = session_id

        # Only a prefix is ever recorded
        if session_id:
            self.details['session'] = f"{session_id[:8]}..."


class TokenMismatchError(ApiShieldError):
    """
    CSRF validation failed.

    The reason (missing header, missing session, bad token) is kept in
    details for logging; callers only ever see a generic 403.
    """

    status_code = 403
    error_code = "forbidden"
    public_message = "CSRF validation failed"

    def __init__(
        self,
        message: str = "CSRF token rejected",
        reason: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.reason = reason

        if reason:
            self.details['reason'] = reason


class RateLimitExceededError(ApiShieldError):
    """Request rejected by the rate limiter"""

    status_code = 429
    error_code = "rate_limit_exceeded"
    public_message = "Too many requests"

    def __init__(
        self,
        retry_after: float,
        limit: Optional[int] = None,
        key: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize rate limit error.

        Args:
            retry_after: Seconds until the current window closes
            limit: Limit of the rule that rejected the request
            key: Client key (logged only)
            details: Additional context
        """
        super().__init__(
            f"Rate limit exceeded, retry after {retry_after:.1f}s",
            details
        )
        self.retry_after = retry_after
        self.limit = limit
        self.key = key

    @property
    def retry_after_seconds(self) -> int:
        """Retry-After as whole seconds, never below 1"""
        return max(1, math.ceil(self.retry_after))


class PolicyConfigError(ApiShieldError):
    """Invalid security configuration. Fatal at startup."""

    error_code = "policy_config_invalid"

    def __init__(
        self,
        message: str,
        component: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.component = component

        if component:
            self.details['component'] = component


class SanitizationParseError(ApiShieldError):
    """Markup could not be parsed into a tree. Handled inside the sanitizer."""

    error_code = "sanitization_failed"

    def __init__(
        self,
        message: str = "Markup could not be parsed",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)


class ServiceError(ApiShieldError):
    """Errors in backing service interactions"""

    status_code = 503
    error_code = "service_unavailable"
    public_message = "Service temporarily unavailable. Please try again later."

    def __init__(
        self,
        message: str,
        service_name: Optional[str] = None,
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize service error.

        Args:
            message: Error description
            service_name: Name of the failing service
            operation: Operation that failed
            details: Additional service context
        """
        super().__init__(message, details)
        self.service_name = service_name
        self.operation = operation

        if service_name:
            self.details['service'] = service_name
        if operation:
            self.details['operation'] = operation


class RedisServiceError(ServiceError):
    """Specific errors for Redis service interactions"""

    def __init__(
        self,
        message: str,
        key: Optional[str] = None,
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, service_name="Redis", operation=operation, details=details)
        self.key = key

        if key:
            self.details['key'] = key


def error_response(exc: ApiShieldError) -> JSONResponse:
    """Render an error as the JSON body returned to clients."""
    content: Dict[str, Any] = {
        "error": exc.error_code,
        "message": exc.public_message,
    }
    headers: Dict[str, str] = {}

    if isinstance(exc, RateLimitExceededError):
        retry_after = exc.retry_after_seconds
        content["message"] = f"Too many requests. Please wait {retry_after} seconds before retrying."
        content["details"] = {"retry_after": retry_after}
        headers["Retry-After"] = str(retry_after)
        if exc.limit is not None:
            headers["X-RateLimit-Limit"] = str(exc.limit)
            headers["X-RateLimit-Remaining"] = "0"

    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)
