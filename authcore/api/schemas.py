from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

# Request bodies cap unbounded strings well below anything the stores accept
MAX_TOKEN_LENGTH = 4096
MAX_AVATAR_LENGTH = 2048

# Zero-width characters plus the bidi embedding, override and isolate controls
_INVISIBLE_CHARS = frozenset(
    ["\u200b", "\u200c", "\u200d", "\ufeff"]
    + [chr(c) for c in range(0x202A, 0x202F)]
    + [chr(c) for c in range(0x2066, 0x206A)]
)


def _normalize_unicode(value: str) -> str:
    """Drop invisible characters, then NFKC-normalize, so look-alike inputs collide."""
    return unicodedata.normalize(
        "NFKC", "".join(c for c in value if c not in _INVISIBLE_CHARS)
    )


ERROR_CODES = frozenset(
    {
        "validation_error",
        "unauthorized",
        "forbidden",
        "not_found",
        "conflict",
        "rate_limited",
        "server_error",
        "provider_error",
    }
)


class ErrorBody(BaseModel):
    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _known_code(cls, value: str) -> str:
        if value not in ERROR_CODES:
            raise ValueError(f"unknown error code {value!r}")
        return value


class Envelope(BaseModel):
    """Response wrapper: ``data`` on success, ``error`` on failure."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL = re.compile(r"[a-z0-9.!#$%&'*+/=?^_`{|}~-]{1,64}")
_EMAIL_LABEL = re.compile(r"[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?")


def _validate_email(value: str) -> str:
    """Lowercase and normalize an address, rejecting anything outside plain ASCII syntax."""
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    email = _normalize_unicode(value.strip().lower())
    if not 6 <= len(email) <= 255:
        raise ValueError("email address length out of range")
    local, sep, domain = email.partition("@")
    labels = domain.split(".")
    if (
        not sep
        or not _EMAIL_LOCAL.fullmatch(local)
        or len(labels) < 2
        or not all(_EMAIL_LABEL.fullmatch(label) for label in labels)
    ):
        raise ValueError("invalid email address")
    return email


def _normalize_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return _normalize_unicode(value).strip()


class RegisterRequest(BaseModel):
    email: str
    # Length policy is enforced by the credential hasher so the error is uniform
    password: str = Field(..., max_length=1024)
    name: str = Field(..., max_length=256)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("name")
    @classmethod
    def _normalize_register_name(cls, value: str) -> str:
        return _normalize_name(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=1024)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=MAX_TOKEN_LENGTH)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class FederatedLoginRequest(BaseModel):
    """Identity already verified by a trusted upstream that ran the provider exchange."""

    external_id: str = Field(..., min_length=1, max_length=255)
    email: str
    name: str = Field(..., max_length=256)
    avatar: Optional[str] = Field(default=None, max_length=MAX_AVATAR_LENGTH)
    email_verified: bool = False

    @field_validator("email")
    @classmethod
    def _validate_federated_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("name")
    @classmethod
    def _normalize_federated_name(cls, value: str) -> str:
        return _normalize_name(value)


class OAuthStartResponse(BaseModel):
    authorization_url: str
    state: str
    provider: str


class UpdateProfileRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=256)
    avatar: Optional[str] = Field(default=None, max_length=MAX_AVATAR_LENGTH)

    @field_validator("name")
    @classmethod
    def _normalize_profile_name(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_name(value)


class UserResponse(BaseModel):
    id: str
    email: str
    name: str
    role: str
    provider: str
    avatar: Optional[str] = None
    email_verified: bool = False
    has_password: bool = False
    created_at: datetime
    updated_at: datetime


class AuthResponse(BaseModel):
    user: UserResponse
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int


class UserListResponse(BaseModel):
    users: List[UserResponse]
    total: int
    limit: int
    offset: int
