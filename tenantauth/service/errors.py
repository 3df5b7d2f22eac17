from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code so the API layer can render a consistent envelope:
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
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


# Credential and login failures


class InvalidCredentials(AuthenticationError):
    """Wrong email or password.

    Raised with the same message whether the account exists or not so the
    response cannot be used to enumerate users.
    """

    def __init__(self, message: str = "invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RateLimitExceeded(RateLimitedError):
    """Too many login attempts for this tenant and principal."""

    def __init__(
        self,
        message: str = "too many login attempts, try again later",
        *,
        retry_after: int = 0,
        **kwargs,
    ) -> None:
        detail = kwargs.pop("detail", None) or {}
        if retry_after:
            detail = {**detail, "retry_after_seconds": retry_after}
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after = retry_after


class AccountLocked(ForbiddenError):
    """Account exists and the password matched, but it is not active."""
    status_code = 423
    error_code = "account_locked"


class InvalidMfaToken(AuthenticationError):
    error_code = "invalid_mfa_token"

    def __init__(self, message: str = "invalid MFA code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TenantMismatch(AuthenticationError):
    error_code = "tenant_mismatch"


class PasswordPolicyError(ValidationError):
    """Password does not satisfy the configured policy."""


# Token failures


class TokenError(AuthenticationError):
    """Base class for token verification failures."""


class TokenExpired(TokenError):
    error_code = "token_expired"


class TokenRevoked(TokenError):
    error_code = "token_revoked"


class MalformedToken(TokenError):
    error_code = "malformed_token"


class BadSignature(TokenError):
    error_code = "bad_signature"


class InvalidClaims(ValidationError):
    """Required claims missing when issuing a token."""
    error_code = "invalid_claims"


# Field encryption failures


class CryptoError(ServiceError):
    status_code = 500
    error_code = "server_error"


class UnknownTenantKey(CryptoError):
    error_code = "unknown_tenant_key"


class DecryptionFailed(CryptoError):
    error_code = "decryption_failed"


class AuthInfrastructureError(ServerError):
    """A backing store or hash computation failed or timed out.

    Kept distinct from credential errors so callers retry or surface a 5xx
    instead of telling the user the password was wrong.
    """
    status_code = 503
    error_code = "infrastructure_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "RateLimitedError",
    "ServerError",
    "InvalidCredentials",
    "RateLimitExceeded",
    "AccountLocked",
    "InvalidMfaToken",
    "TenantMismatch",
    "PasswordPolicyError",
    "TokenError",
    "TokenExpired",
    "TokenRevoked",
    "MalformedToken",
    "BadSignature",
    "InvalidClaims",
    "CryptoError",
    "UnknownTenantKey",
    "DecryptionFailed",
    "AuthInfrastructureError",
]
