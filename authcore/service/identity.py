from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional, Protocol

from authcore.logging import get_logger
from authcore.service.errors import (
    AlreadyAdminError,
    AlreadyUserError,
    DuplicateEmailError,
    UnverifiedEmailError,
    ValidationError,
)
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import Identity, Provider, Role, normalize_email

if TYPE_CHECKING:
    from authcore.service.oauth import ProviderUserInfo

logger = get_logger(__name__)


class IdentityStore(Protocol):
    def create_identity(self, identity: Identity) -> Identity: ...

    def get_identity(self, user_id: str) -> Optional[Identity]: ...

    def get_identity_by_email(self, email: str) -> Optional[Identity]: ...

    def get_identity_by_provider(
        self, provider: Provider, provider_id: str
    ) -> Optional[Identity]: ...

    def update_identity(self, identity: Identity) -> Identity: ...

    def delete_identity(self, user_id: str) -> bool: ...

    def list_identities(self, limit: int = 10, offset: int = 0) -> List[Identity]: ...

    def count_identities(self) -> int: ...


def _validated(identity: Identity) -> Identity:
    try:
        identity.validate()
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    return identity


class IdentityResolver:
    """Finds, creates and mutates identities on top of an ``IdentityStore``.

    Account-state rules live here: email uniqueness, role transitions and the
    merge of a local account into a federated one. The resolver never touches
    sessions; callers revoke them when an identity changes.
    """

    def __init__(self, store: IdentityStore) -> None:
        self.store = store

    def find_by_id(self, user_id: str) -> Optional[Identity]:
        if not user_id:
            return None
        return self.store.get_identity(user_id)

    def find_by_email(self, email: str) -> Optional[Identity]:
        normalized = normalize_email(email)
        if not normalized:
            return None
        return self.store.get_identity_by_email(normalized)

    def find_by_provider_id(
        self, provider: Provider, external_id: str
    ) -> Optional[Identity]:
        if not external_id:
            return None
        return self.store.get_identity_by_provider(provider, external_id)

    def create_local(self, email: str, name: str, password_hash: str) -> Identity:
        identity = _validated(Identity.new_local(email, name, password_hash))
        if self.store.get_identity_by_email(identity.email):
            raise DuplicateEmailError()
        return self._insert(identity)

    def create_federated(
        self,
        email: str,
        name: str,
        provider: Provider,
        external_id: str,
        avatar: Optional[str] = None,
    ) -> Identity:
        if provider == Provider.LOCAL:
            raise ValidationError("federated identities need a federated provider")
        identity = _validated(
            Identity.new_federated(email, name, provider, external_id, avatar)
        )
        if self.store.get_identity_by_email(identity.email):
            raise DuplicateEmailError()
        return self._insert(identity)

    def merge_into_federated(
        self,
        identity: Identity,
        provider: Provider,
        external_id: str,
        avatar: Optional[str] = None,
    ) -> Identity:
        """Link ``identity`` to a federated provider.

        The password hash and role are left untouched so a merged account can
        still sign in with its password.
        """
        if provider == Provider.LOCAL or not external_id:
            raise ValidationError("merge requires a federated provider and external id")
        identity.provider = provider
        identity.provider_id = external_id
        if not identity.avatar and avatar:
            identity.avatar = avatar
        identity.email_verified = True
        identity.touch()
        merged = self._save(_validated(identity))
        logger.info(
            "identity_merged_into_federated",
            user_id=merged.id,
            provider=provider.value,
            has_password=merged.has_password,
        )
        return merged

    def promote(self, identity: Identity) -> Identity:
        if identity.role == Role.ADMIN:
            raise AlreadyAdminError()
        identity.role = Role.ADMIN
        identity.touch()
        return self._save(identity)

    def demote(self, identity: Identity) -> Identity:
        if identity.role == Role.USER:
            raise AlreadyUserError()
        identity.role = Role.USER
        identity.touch()
        return self._save(identity)

    def update_profile(
        self,
        identity: Identity,
        name: Optional[str] = None,
        avatar: Optional[str] = None,
    ) -> Identity:
        if name is not None:
            identity.name = name.strip()
        if avatar is not None:
            identity.avatar = avatar or None
        identity.touch()
        return self._save(_validated(identity))

    def set_password(self, identity: Identity, password_hash: str) -> Identity:
        if not password_hash:
            raise ValidationError("password hash is required")
        identity.password_hash = password_hash
        identity.touch()
        return self._save(identity)

    def resolve_federated(self, info: "ProviderUserInfo") -> Identity:
        """Map verified provider output onto exactly one identity.

        Order: provider linkage, then email (merging a differently-provided
        account), then a brand-new federated USER.
        """
        if not info.email_verified:
            raise UnverifiedEmailError(reason="unverified_email")
        if info.provider == Provider.LOCAL:
            raise ValidationError("federated login requires a federated provider")

        existing = self.find_by_provider_id(info.provider, info.external_id)
        if existing:
            logger.info(
                "federated_identity_resolved",
                user_id=existing.id,
                provider=info.provider.value,
                path="provider_id",
            )
            return existing

        by_email = self.find_by_email(info.email)
        if by_email:
            if by_email.provider != info.provider:
                return self.merge_into_federated(
                    by_email, info.provider, info.external_id, info.avatar
                )
            # Same provider under a different external id; keep the stored link
            logger.warning(
                "federated_identity_external_id_mismatch",
                user_id=by_email.id,
                provider=info.provider.value,
            )
            return by_email

        created = self.create_federated(
            info.email, info.name, info.provider, info.external_id, info.avatar
        )
        logger.info(
            "federated_identity_created",
            user_id=created.id,
            provider=info.provider.value,
        )
        return created

    def list_identities(self, limit: int = 10, offset: int = 0) -> List[Identity]:
        return self.store.list_identities(limit=limit, offset=offset)

    def count_identities(self) -> int:
        return self.store.count_identities()

    def delete(self, user_id: str) -> bool:
        return bool(self.store.delete_identity(user_id))

    def _insert(self, identity: Identity) -> Identity:
        try:
            return self.store.create_identity(identity)
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration for the same email
            logger.warning("identity_insert_conflict", error=exc.message)
            raise DuplicateEmailError() from exc

    def _save(self, identity: Identity) -> Identity:
        try:
            return self.store.update_identity(identity)
        except ConstraintViolation as exc:
            logger.warning(
                "identity_update_conflict", user_id=identity.id, error=exc.message
            )
            raise DuplicateEmailError() from exc
