from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

EMAIL_MIN_LENGTH = 6
EMAIL_MAX_LENGTH = 255
NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 100

# Sessions are revoked by moving their expiry this far into the past
REVOCATION_BACKDATE = timedelta(hours=1)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class Role(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class Provider(str, Enum):
    """Authentication providers; federated providers are every member but LOCAL."""

    LOCAL = "LOCAL"
    GOOGLE = "GOOGLE"


@dataclass
class Identity:
    id: str
    email: str
    name: str
    role: Role = Role.USER
    provider: Provider = Provider.LOCAL
    password_hash: Optional[str] = None
    provider_id: Optional[str] = None
    avatar: Optional[str] = None
    email_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new_local(cls, email: str, name: str, password_hash: str) -> "Identity":
        return cls(
            id=str(uuid.uuid4()),
            email=normalize_email(email),
            name=(name or "").strip(),
            password_hash=password_hash,
        )

    @classmethod
    def new_federated(
        cls,
        email: str,
        name: str,
        provider: Provider,
        provider_id: str,
        avatar: Optional[str] = None,
    ) -> "Identity":
        return cls(
            id=str(uuid.uuid4()),
            email=normalize_email(email),
            name=(name or "").strip(),
            provider=provider,
            provider_id=provider_id,
            avatar=avatar,
            # Federated providers verify the address before handing it over
            email_verified=True,
        )

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def is_federated(self) -> bool:
        return self.provider != Provider.LOCAL

    def touch(self) -> None:
        self.updated_at = utcnow()

    def validate(self) -> None:
        """Raise ``ValueError`` describing the first broken account invariant."""

        if not self.email:
            raise ValueError("email is required")
        if (
            "@" not in self.email
            or "." not in self.email
            or not EMAIL_MIN_LENGTH <= len(self.email) <= EMAIL_MAX_LENGTH
        ):
            raise ValueError("invalid email format")
        if not self.name:
            raise ValueError("name is required")
        if not NAME_MIN_LENGTH <= len(self.name) <= NAME_MAX_LENGTH:
            raise ValueError(
                f"name must be between {NAME_MIN_LENGTH} and {NAME_MAX_LENGTH} characters"
            )
        if self.provider == Provider.LOCAL and not self.password_hash:
            raise ValueError("password is required for local accounts")
        if self.provider != Provider.LOCAL and not self.provider_id:
            raise ValueError("provider ID is required for federated accounts")


@dataclass
class Session:
    id: str
    user_id: str
    refresh_token: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, user_id: str, refresh_token: str, ttl: timedelta) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            refresh_token=refresh_token,
            expires_at=now + ttl,
            created_at=now,
            updated_at=now,
        )

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at > (now or utcnow())

    def revoke(self, now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        self.expires_at = now - REVOCATION_BACKDATE
        self.updated_at = now
