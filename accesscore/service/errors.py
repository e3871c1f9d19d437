from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to caller-visible failures.

    Each exception class defines an HTTP-style ``status_code`` and a stable
    ``error_code`` so the request-handling layer can pick the right response
    without string matching:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "request failed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
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
    default_message = "invalid request"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    default_message = "authentication required"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"
    default_message = "access denied"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"
    default_message = "not found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"
    default_message = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"
    default_message = "too many attempts"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"
    default_message = "internal error"


# Shared by every credential-related rejection so responses never reveal
# which check failed (unknown email, wrong password, rotated token, ...).
UNIFORM_AUTH_MESSAGE = "Invalid credentials"


class InvalidCredentials(AuthenticationError):
    default_message = UNIFORM_AUTH_MESSAGE


class AccountNotActive(ForbiddenError):
    error_code = "account_not_active"
    default_message = "account is not active"


class InvalidToken(AuthenticationError):
    """Malformed, expired, mis-signed or wrong-audience token."""
    error_code = "invalid_token"
    default_message = "invalid token"


class InvalidRefreshToken(AuthenticationError):
    default_message = UNIFORM_AUTH_MESSAGE


class TokenReuseDetected(AuthenticationError):
    """A revoked refresh token was presented again.

    Shares the message and error code of ``InvalidRefreshToken``; only the
    type (and the security audit trail) tells them apart.
    """
    default_message = UNIFORM_AUTH_MESSAGE


class MfaRequired(AuthenticationError):
    error_code = "mfa_required"
    default_message = "multi-factor verification required"


class MfaInvalidCode(AuthenticationError):
    error_code = "mfa_invalid_code"
    default_message = "invalid verification code"


class MfaAttemptsExceeded(RateLimitedError):
    error_code = "mfa_attempts_exceeded"
    default_message = "too many verification attempts"


class SessionNotFound(NotFoundError):
    error_code = "session_not_found"
    default_message = "session not found"


class SessionNotActive(ValidationError):
    error_code = "session_not_active"
    default_message = "session is not active"


class RoleNotFound(NotFoundError):
    error_code = "role_not_found"
    default_message = "role not found"


class RoleAlreadyAssigned(ConflictError):
    error_code = "role_already_assigned"
    default_message = "role already assigned"


class PermissionDenied(ForbiddenError):
    error_code = "permission_denied"
    default_message = "permission denied"


class TenantMismatch(ForbiddenError):
    """Tenant scope denial; ``reason`` is kept verbatim for audit tooling."""

    error_code = "tenant_mismatch"
    default_message = "tenant access denied"

    def __init__(self, reason: str, **kwargs) -> None:
        detail = dict(kwargs.pop("detail", None) or {})
        detail["reason"] = reason
        super().__init__(kwargs.pop("message", None), detail=detail, **kwargs)
        self.reason = reason


class SystemEntityImmutable(ForbiddenError):
    error_code = "system_entity_immutable"
    default_message = "system roles and permissions cannot be modified"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "UNIFORM_AUTH_MESSAGE",
    "InvalidCredentials",
    "AccountNotActive",
    "InvalidToken",
    "InvalidRefreshToken",
    "TokenReuseDetected",
    "MfaRequired",
    "MfaInvalidCode",
    "MfaAttemptsExceeded",
    "SessionNotFound",
    "SessionNotActive",
    "RoleNotFound",
    "RoleAlreadyAssigned",
    "PermissionDenied",
    "TenantMismatch",
    "SystemEntityImmutable",
]
