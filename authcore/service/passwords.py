from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authcore.config import Settings
from authcore.service.errors import WeakPasswordError

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128


class PasswordMismatchError(Exception):
    """Plaintext does not match the stored hash, or the hash is unusable."""


class CredentialHasher:
    """argon2id password hashing with a configurable work factor."""

    algorithm = "argon2id"

    def __init__(self, settings: Settings) -> None:
        self._pwd_hasher = PasswordHasher(
            time_cost=settings.password_time_cost,
            memory_cost=settings.password_memory_cost_kib,
            parallelism=settings.password_parallelism,
            type=Type.ID,
        )

    def validate(self, plaintext: str) -> None:
        if plaintext is None or len(plaintext) < PASSWORD_MIN_LENGTH:
            raise WeakPasswordError(
                f"password must be at least {PASSWORD_MIN_LENGTH} characters"
            )
        if len(plaintext) > PASSWORD_MAX_LENGTH:
            raise WeakPasswordError(
                f"password must be at most {PASSWORD_MAX_LENGTH} characters"
            )

    def hash(self, plaintext: str) -> str:
        self.validate(plaintext)
        return self._pwd_hasher.hash(plaintext)

    def verify(self, plaintext: str, hashed: str) -> None:
        """Raise ``PasswordMismatchError`` unless ``plaintext`` matches ``hashed``."""
        if not hashed or plaintext is None:
            raise PasswordMismatchError("no password to compare")
        try:
            self._pwd_hasher.verify(hashed, plaintext)
        except (VerifyMismatchError, VerificationError, InvalidHash) as exc:
            raise PasswordMismatchError("password mismatch") from exc

    def needs_rehash(self, hashed: str) -> bool:
        try:
            return self._pwd_hasher.check_needs_rehash(hashed)
        except InvalidHash:
            return True
