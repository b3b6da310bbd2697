from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from archivum.logging import get_correlation_id
from archivum.storage.models import Role, User

MAX_EMAIL_LENGTH = 50
MIN_PASSWORD_LENGTH = 6
MAX_PASSWORD_LENGTH = 255
MAX_BIOGRAPHY_LENGTH = 500


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize ``value`` after dropping zero-width and bidi override characters."""
    zero_width = "​‌‍﻿"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "invalid_credentials",
    "invalid_token",
    "invalid_two_factor_code",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code clients can branch on")
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
    """API envelope wrapping every response body."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_]{3,20}$")
_CODE_PATTERN = re.compile(r"^[0-9]{6}$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > MAX_EMAIL_LENGTH:
        raise ValueError(f"email must be at most {MAX_EMAIL_LENGTH} characters")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    return value


def _validate_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    if not _NAME_PATTERN.match(value):
        raise ValueError(
            "name must be 3 to 20 characters of letters, digits and underscores"
        )
    return value


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class VerifyTwoFactorRequest(BaseModel):
    code: str

    @field_validator("code")
    @classmethod
    def _validate_code(cls, value: str) -> str:
        value = value.strip()
        if not _CODE_PATTERN.match(value):
            raise ValueError("code must be exactly 6 digits")
        return value


class ForgotPasswordRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_forgot_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class RegisterRequest(BaseModel):
    email: str
    password: str
    name: str
    biography: Optional[str] = Field(default=None, max_length=MAX_BIOGRAPHY_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("name")
    @classmethod
    def _validate_register_name(cls, value: str) -> str:
        return _validate_name(value)


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = None
    biography: Optional[str] = Field(default=None, max_length=MAX_BIOGRAPHY_LENGTH)

    @field_validator("name")
    @classmethod
    def _validate_profile_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value)


def _parse_role(value: Union[int, str]) -> Role:
    try:
        return Role.parse(value)
    except (KeyError, ValueError):
        raise ValueError(
            "role must be one of: " + ", ".join(r.name.lower() for r in Role)
        )


class RoleUpdateRequest(BaseModel):
    role: Union[int, str]

    @field_validator("role")
    @classmethod
    def _validate_role(cls, value: Union[int, str]) -> Role:
        return _parse_role(value)


class AdminCreateUserRequest(RegisterRequest):
    role: Union[int, str] = Role.VISITOR

    @field_validator("role")
    @classmethod
    def _validate_create_role(cls, value: Union[int, str]) -> Role:
        return _parse_role(value)


class AdminUpdateUserRequest(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = None
    biography: Optional[str] = Field(default=None, max_length=MAX_BIOGRAPHY_LENGTH)
    role: Optional[Union[int, str]] = None

    @field_validator("email")
    @classmethod
    def _validate_update_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None

    @field_validator("name")
    @classmethod
    def _validate_update_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value)

    @field_validator("role")
    @classmethod
    def _validate_update_role(cls, value: Optional[Union[int, str]]) -> Optional[Role]:
        return _parse_role(value) if value is not None else None


class UserResponse(BaseModel):
    id: str
    email: str
    name: str
    biography: Optional[str] = None
    role: int
    role_name: str
    two_factor_enabled: bool = False
    last_login: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            biography=user.biography,
            role=int(user.role),
            role_name=user.role.name.lower(),
            two_factor_enabled=user.two_factor_enabled,
            last_login=user.last_login,
            created_at=user.created_at,
        )


class UserListResponse(BaseModel):
    items: List[UserResponse]


class SessionResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserResponse


class VerifyTwoFactorResponse(SessionResponse):
    two_factor_enabled: bool = True


class RefreshResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class SetupData(BaseModel):
    secret: str
    qr_code: str = Field(..., description="PNG data URL of the provisioning QR code")


class SetupRequiredResponse(BaseModel):
    requires_setup: bool = True
    setup_data: SetupData
    temp_token: str


class TwoFactorRequiredResponse(BaseModel):
    requires_2fa: bool = True
    temp_token: str


class MessageResponse(BaseModel):
    message: str
