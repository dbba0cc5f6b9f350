from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and one of the stable envelope
    error codes:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

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


class InvalidCredentials(AuthenticationError):
    """Unknown identifier, wrong password or locked account.

    The three cases share one message so that callers cannot probe which
    accounts exist.
    """

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLocked(InvalidCredentials):
    """The account reached the failed login threshold.

    Exposed to clients exactly like :class:`InvalidCredentials`; the subtype
    only exists so the service can log the lockout.
    """


class TokenInvalid(AuthenticationError):
    """Bearer token is missing, malformed, expired or fails signature checks."""

    def __init__(self, message: str = "invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class DuplicateField(ConflictError):
    """Signup collided with an existing username, email or phone."""

    def __init__(self, field: str) -> None:
        super().__init__(f"{field} already in use", detail={"field": field})
        self.field = field


class InvalidProviderToken(ValidationError):
    """The identity provider rejected the token or returned no usable identity."""

    def __init__(self, message: str = "invalid provider token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class UnsupportedProvider(ValidationError):
    def __init__(self, provider: str) -> None:
        super().__init__(
            f"unsupported provider: {provider}", detail={"provider": provider}
        )
        self.provider = provider


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class RoleNotConfigured(ServerError):
    """The default role is missing from the store; accounts cannot be created."""

    def __init__(self, role: str) -> None:
        super().__init__(f"role not configured: {role}", detail={"role": role})
        self.role = role


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentials",
    "AccountLocked",
    "TokenInvalid",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "DuplicateField",
    "InvalidProviderToken",
    "UnsupportedProvider",
    "ServerError",
    "RoleNotConfigured",
]
