from __future__ import annotations

import unicodedata
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "account_locked",
    "invalid_mfa_token",
    "tenant_mismatch",
    "token_expired",
    "token_revoked",
    "malformed_token",
    "bad_signature",
    "invalid_claims",
    "unknown_tenant_key",
    "decryption_failed",
    "infrastructure_error",
})


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width characters used for spoofing."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=254)
    password: str = Field(..., min_length=1, max_length=1024)
    mfa_code: Optional[str] = Field(default=None, max_length=16)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        normalized = _normalize_unicode(value.strip().lower())
        local, sep, domain = normalized.partition("@")
        if not sep or not local or not domain:
            raise ValueError("invalid email address")
        return normalized


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class UserView(BaseModel):
    id: str
    tenant_id: str
    email: str
    role: str
    status: str
    mfa_enabled: bool
    last_login_at: Optional[str] = None


class LoginResponse(BaseModel):
    status: str
    user: Optional[UserView] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: Optional[str] = None
    expires_in: Optional[int] = None


class ValidateResponse(BaseModel):
    valid: bool


class MfaSetupResponse(BaseModel):
    secret: str
    otpauth_uri: str
    backup_codes: List[str]
