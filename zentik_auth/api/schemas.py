from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "invalid_code",
    "conflict",
    "provider_unavailable",
    "server_error",
})

# Bound on caller-supplied JSON blobs (Apple mobile payload)
MAX_JSON_DEPTH = 10


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")
    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width characters."""
    zero_width = '\u200b\u200c\u200d\ufeff'
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
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_username(value: str) -> str:
    value = _normalize_unicode(value.strip())
    if len(value) < 3:
        raise ValueError("username must be at least 3 characters")
    if len(value) > 30:
        raise ValueError("username must be at most 30 characters")
    if not _USERNAME_PATTERN.match(value):
        raise ValueError("username may only contain letters, digits, dots, underscores and hyphens")
    return value


def _validate_new_password(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 100:
        raise ValueError("password must be at most 100 characters")
    return value


class RegisterRequest(BaseModel):
    email: str
    username: str
    password: str = Field(..., min_length=6, max_length=100)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    locale: Optional[str] = Field(default=None, max_length=16)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("username")
    @classmethod
    def _validate_register_username(cls, value: str) -> str:
        return _validate_username(value)


class LoginRequest(BaseModel):
    email: Optional[str] = None
    username: Optional[str] = Field(default=None, max_length=30)
    password: str = Field(..., min_length=1, max_length=100)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _validate_email(value)

    @model_validator(mode="after")
    def _require_identifier(self):
        if not self.email and not self.username:
            raise ValueError("email or username is required")
        return self


class TokenRefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class ExchangeCodeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=256)
    session_id: Optional[str] = Field(default=None, max_length=128)


class AuthResponse(BaseModel):
    user: Dict[str, Any]
    session_id: str
    session_expires_at: datetime
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


class RegisterResponse(BaseModel):
    message: str
    user: Dict[str, Any]
    email_confirmation_required: bool
    session: Optional[AuthResponse] = None


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password)."""
    current_password: str = Field(..., min_length=1, max_length=100)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_change_password(cls, value: str) -> str:
        return _validate_new_password(value)


class PasswordSetRequest(BaseModel):
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_set_password(cls, value: str) -> str:
        return _validate_new_password(value)


class ForgotPasswordRequest(BaseModel):
    email: str
    locale: Optional[str] = Field(default=None, max_length=16)

    @field_validator("email")
    @classmethod
    def _validate_forgot_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetTokenRequest(BaseModel):
    reset_token: str = Field(..., min_length=1, max_length=64)


class PasswordResetConfirm(BaseModel):
    reset_token: str = Field(..., min_length=1, max_length=64)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_reset_password(cls, value: str) -> str:
        return _validate_new_password(value)


class EmailConfirmationRequest(BaseModel):
    email: str
    locale: Optional[str] = Field(default=None, max_length=16)

    @field_validator("email")
    @classmethod
    def _validate_confirmation_email(cls, value: str) -> str:
        return _validate_email(value)


class ConfirmEmailRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)
    locale: Optional[str] = Field(default=None, max_length=16)


class ProfileUpdateRequest(BaseModel):
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    avatar: Optional[str] = Field(default=None, max_length=2048)
    locale: Optional[str] = Field(default=None, max_length=16)


class AccessTokenCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    scopes: List[str] = Field(default_factory=list, max_length=50)
    expires_at: Optional[datetime] = None
    store_token: bool = False

    @field_validator("scopes")
    @classmethod
    def _validate_scopes(cls, value: List[str]) -> List[str]:
        for scope in value:
            if not scope or len(scope) > 256:
                raise ValueError("scopes must be non-empty strings of at most 256 characters")
        return value


class BucketTokenCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    expires_at: Optional[datetime] = None


class AccessTokenUpdateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class AppleMobileRequest(BaseModel):
    identity_token: str = Field(..., max_length=8192)
    payload: Optional[Dict[str, Any]] = None

    @field_validator("identity_token")
    @classmethod
    def _require_identity_token(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("identityToken is required")
        return value.strip()

    @field_validator("payload")
    @classmethod
    def _validate_payload(cls, value: Optional[dict]) -> Optional[dict]:
        if value is not None:
            _validate_json_depth(value)
        return value


__all__ = [
    "AccessTokenCreateRequest",
    "AccessTokenUpdateRequest",
    "AppleMobileRequest",
    "AuthResponse",
    "BucketTokenCreateRequest",
    "ConfirmEmailRequest",
    "EmailConfirmationRequest",
    "Envelope",
    "ErrorBody",
    "ExchangeCodeRequest",
    "ForgotPasswordRequest",
    "LoginRequest",
    "PasswordChangeRequest",
    "PasswordResetConfirm",
    "PasswordSetRequest",
    "ProfileUpdateRequest",
    "RegisterRequest",
    "RegisterResponse",
    "ResetTokenRequest",
    "TokenRefreshRequest",
]
