from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from farmgate.logging import get_correlation_id


def _normalize_unicode(value: str) -> str:
    """Normalize Unicode string using NFKC after stripping spoofing characters."""
    # Zero-width characters
    zero_width = '​‌‍﻿'
    cleaned = ''.join(c for c in value if c not in zero_width)

    # RTL/LTR overrides, U+202A-U+202E and U+2066-U+2069
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize('NFKC', cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format shared by every JSON response."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


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


_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9\-._@+]+$")


def _validate_username(value: str) -> str:
    """Usernames: 3-50 characters from letters, digits and -._@+"""
    value = _normalize_unicode(value.strip())
    if len(value) < 3:
        raise ValueError("username must be at least 3 characters")
    if len(value) > 50:
        raise ValueError("username must be at most 50 characters")
    if not _USERNAME_PATTERN.match(value):
        raise ValueError("username may only contain letters, digits and -._@+")
    return value


def _validate_password_strength(value: str) -> str:
    """Require 8-100 characters with upper, lower, digit and symbol."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 100:
        raise ValueError("password must be at most 100 characters")
    if not any(c.isdigit() for c in value):
        raise ValueError("password must contain a digit")
    if not any(c.islower() for c in value):
        raise ValueError("password must contain a lowercase letter")
    if not any(c.isupper() for c in value):
        raise ValueError("password must contain an uppercase letter")
    if all(c.isalnum() for c in value):
        raise ValueError("password must contain a non-alphanumeric character")
    return value


def _validate_person_name(value: str) -> str:
    value = _normalize_unicode(value.strip())
    if not value:
        raise ValueError("name must not be empty")
    if len(value) > 50:
        raise ValueError("name must be at most 50 characters")
    return value


class RegisterRequest(BaseModel):
    email: str
    username: str
    password: str
    first_name: str
    last_name: str

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("first_name", "last_name")
    @classmethod
    def _validate_names(cls, value: str) -> str:
        return _validate_person_name(value)


class ConfirmEmailRequest(BaseModel):
    email: str
    otp_code: str = Field(..., pattern=r"^\d{6}$")

    @field_validator("email")
    @classmethod
    def _validate_confirm_email(cls, value: str) -> str:
        return _validate_email(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=100)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class ResendOtpRequest(BaseModel):
    email: str
    purpose: Literal["EmailConfirmation", "PasswordReset"] = "EmailConfirmation"

    @field_validator("email")
    @classmethod
    def _validate_resend_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(BaseModel):
    email: str
    otp_code: str = Field(..., pattern=r"^\d{6}$")
    new_password: str

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class AssignRoleRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_assign_email(cls, value: str) -> str:
        return _validate_email(value)


class AuthResponse(BaseModel):
    message: str
    token: str = ""
    requires_email_confirmation: bool = False
    user_name: Optional[str] = None
    email_delivered: bool = True


class CsrfTokenResponse(BaseModel):
    csrf_token: str
    header_name: str = "X-CSRF-Token"


class UserResponse(BaseModel):
    id: str
    username: str
    email: str
    first_name: str
    last_name: str
    roles: List[str]
    email_confirmed: bool
    is_active: bool
    created_at: datetime


class UserListResponse(BaseModel):
    items: List[UserResponse]


class AuditEventResponse(BaseModel):
    id: str
    actor_id: str
    action: str
    entity_name: str
    entity_id: Optional[str] = None
    details: Optional[str] = None
    created_at: datetime


class AuditEventListResponse(BaseModel):
    items: List[AuditEventResponse]
