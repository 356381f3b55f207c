from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines an HTTP status_code and a stable error_code.
    Callers may override error_code with a more specific code (for example
    ``email_mismatch`` on a ForbiddenError) while keeping the class status:
    - validation_error (400)
    - unauthorized (401)
    - forbidden / not_a_member / permission_denied / plan_limit_exceeded (403)
    - not_found (404)
    - conflict (409)
    - expired (410)
    - rate_limited (429)
    - server_error (500)
    - upstream_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Action is not allowed for this identity (403)."""
    status_code = 403
    error_code = "forbidden"


class NotAMemberError(ForbiddenError):
    """No active membership in the target tenant (403)."""
    error_code = "not_a_member"


class PermissionDeniedError(ForbiddenError):
    """Membership exists but lacks the permission (403)."""
    error_code = "permission_denied"


class PlanLimitError(ForbiddenError):
    """Seat cap or plan tier disallows the action (403)."""
    error_code = "plan_limit_exceeded"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Illegal state transition or duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ExpiredError(ServiceError):
    """Token, challenge or invite has expired or was already used (410)."""
    status_code = 410
    error_code = "expired"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int, **kwargs) -> None:
        detail = dict(kwargs.pop("detail", None) or {})
        detail.setdefault("retry_after", retry_after)
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after = retry_after


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class UpstreamError(ServiceError):
    """A backing store or external provider is unavailable (503)."""
    status_code = 503
    error_code = "upstream_unavailable"
    retryable = True


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotAMemberError",
    "PermissionDeniedError",
    "PlanLimitError",
    "NotFoundError",
    "ConflictError",
    "ExpiredError",
    "RateLimitedError",
    "ServerError",
    "UpstreamError",
]
