from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC normalize."""
    zero_width = '\u200b\u200c\u200d\ufeff'
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(
        c for c in value if c not in zero_width and c not in bidi_overrides
    )
    return unicodedata.normalize('NFKC', cleaned)


class ErrorBody(BaseModel):
    """Error payload of the response envelope, restricted to the stable codes."""

    code: str
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


_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9._-]+$")


def _validate_username(value: str) -> str:
    """Usernames: 3-50 chars of letters, digits, dots, underscores or hyphens."""
    value = _normalize_unicode(value.strip())
    if len(value) < 3:
        raise ValueError("username must be at least 3 characters")
    if len(value) > 50:
        raise ValueError("username must be at most 50 characters")
    if not _USERNAME_PATTERN.match(value):
        raise ValueError(
            "username must contain only letters, digits, dots, underscores and hyphens"
        )
    return value


def _validate_password_strength(value: str) -> str:
    if len(value) < 6:
        raise ValueError("password must be at least 6 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class SignupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=3, max_length=100)
    email: str
    username: str
    password: str
    phone: Optional[str] = Field(default=None, max_length=32)
    description: Optional[str] = Field(default=None, max_length=255)
    profile_link: Optional[str] = Field(
        default=None,
        max_length=2048,
        validation_alias=AliasChoices("profile_link", "profileLink"),
    )

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = _normalize_unicode(value.strip())
        if len(value) < 3:
            raise ValueError("name must be at least 3 characters")
        return value

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("username")
    @classmethod
    def _validate_signup_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("phone")
    @classmethod
    def _validate_phone(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        return value.strip()


class SigninRequest(BaseModel):
    """Password login; ``identifier`` may be a username, an email or a phone."""

    model_config = ConfigDict(populate_by_name=True)

    identifier: str = Field(
        ...,
        min_length=1,
        max_length=254,
        validation_alias=AliasChoices("identifier", "username", "email"),
    )
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("identifier")
    @classmethod
    def _normalize_identifier(cls, value: str) -> str:
        return _normalize_unicode(value.strip())


class OAuthTokenRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id_token: str = Field(
        ...,
        min_length=1,
        max_length=8192,
        validation_alias=AliasChoices("id_token", "idToken"),
    )


class SessionResponse(BaseModel):
    token: str
    token_type: str = "Bearer"
    user_id: str
    user_name: str
    expires_in: int


class AccountProfile(BaseModel):
    id: str
    username: str
    email: str
    name: str
    phone: Optional[str] = None
    profile_link: Optional[str] = None
    description: Optional[str] = None
    roles: List[str]
    created_at: datetime


class LockoutStatus(BaseModel):
    username: str
    failed_login_attempts: int
    locked: bool
