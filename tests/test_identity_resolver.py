"""Tests for identity lookup, creation, merge and role transitions."""

import pytest

from authcore.service.errors import (
    AlreadyAdminError,
    AlreadyUserError,
    DuplicateEmailError,
    UnverifiedEmailError,
    ValidationError,
)
from authcore.service.identity import IdentityResolver
from authcore.service.oauth import ProviderUserInfo
from authcore.storage.models import Provider, Role


@pytest.fixture
def resolver(store):
    return IdentityResolver(store)


def google_info(external_id="g-1", email="u@example.com", verified=True, **kwargs):
    return ProviderUserInfo(
        provider=Provider.GOOGLE,
        external_id=external_id,
        email=email,
        name=kwargs.pop("name", "Google User"),
        email_verified=verified,
        **kwargs,
    )


class TestLocalIdentities:
    def test_create_local_defaults(self, resolver):
        identity = resolver.create_local(" U@Example.com ", " Uma ", "hash")
        assert identity.email == "u@example.com"
        assert identity.name == "Uma"
        assert identity.role == Role.USER
        assert identity.provider == Provider.LOCAL
        assert identity.has_password

    def test_duplicate_email_any_case(self, resolver):
        resolver.create_local("u@example.com", "Uma", "hash")
        with pytest.raises(DuplicateEmailError):
            resolver.create_local("U@EXAMPLE.COM", "Uma", "hash")

    @pytest.mark.parametrize(
        "email,name",
        [("not-an-email", "Uma"), ("u@example.com", "U"), ("u@example.com", "x" * 101)],
    )
    def test_invalid_fields_rejected(self, resolver, email, name):
        with pytest.raises(ValidationError):
            resolver.create_local(email, name, "hash")

    def test_lookups(self, resolver):
        created = resolver.create_local("u@example.com", "Uma", "hash")
        assert resolver.find_by_id(created.id).id == created.id
        assert resolver.find_by_email("U@example.com").id == created.id
        assert resolver.find_by_id("") is None
        assert resolver.find_by_email("") is None
        assert resolver.find_by_provider_id(Provider.GOOGLE, "") is None


class TestRoles:
    def test_promote_then_demote(self, resolver):
        identity = resolver.create_local("u@example.com", "Uma", "hash")
        promoted = resolver.promote(identity)
        assert promoted.role == Role.ADMIN
        demoted = resolver.demote(promoted)
        assert demoted.role == Role.USER

    def test_promote_admin_conflicts(self, resolver):
        admin = resolver.promote(resolver.create_local("u@example.com", "Uma", "hash"))
        with pytest.raises(AlreadyAdminError):
            resolver.promote(admin)

    def test_demote_user_conflicts(self, resolver):
        identity = resolver.create_local("u@example.com", "Uma", "hash")
        with pytest.raises(AlreadyUserError):
            resolver.demote(identity)


class TestProfile:
    def test_update_name_and_avatar(self, resolver):
        identity = resolver.create_local("u@example.com", "Uma", "hash")
        updated = resolver.update_profile(identity, name="Uma Thurman", avatar="https://a/x.png")
        assert updated.name == "Uma Thurman"
        assert updated.avatar == "https://a/x.png"

    def test_invalid_name_leaves_stored_identity(self, resolver, store):
        identity = resolver.create_local("u@example.com", "Uma", "hash")
        with pytest.raises(ValidationError):
            resolver.update_profile(identity, name="U")
        assert store.get_identity(identity.id).name == "Uma"


class TestResolveFederated:
    def test_unverified_email_rejected(self, resolver):
        with pytest.raises(UnverifiedEmailError) as exc_info:
            resolver.resolve_federated(google_info(verified=False))
        assert exc_info.value.reason == "unverified_email"
        assert exc_info.value.status_code == 401

    def test_creates_new_federated_user(self, resolver, store):
        identity = resolver.resolve_federated(google_info(avatar="https://pic"))
        assert identity.provider == Provider.GOOGLE
        assert identity.provider_id == "g-1"
        assert identity.role == Role.USER
        assert identity.email_verified
        assert not identity.has_password
        assert store.count_identities() == 1

    def test_returns_existing_link(self, resolver, store):
        first = resolver.resolve_federated(google_info())
        # Provider id wins even if the address changed upstream
        second = resolver.resolve_federated(google_info(email="new@example.com"))
        assert second.id == first.id
        assert store.count_identities() == 1

    def test_merges_local_account_and_keeps_password(self, resolver, store):
        local = resolver.create_local("u@example.com", "Uma", "local-hash")
        resolver.promote(local)
        merged = resolver.resolve_federated(google_info(avatar="https://pic"))
        assert merged.id == local.id
        assert merged.provider == Provider.GOOGLE
        assert merged.provider_id == "g-1"
        assert merged.password_hash == "local-hash"
        assert merged.role == Role.ADMIN
        assert merged.avatar == "https://pic"
        assert merged.email_verified
        assert store.count_identities() == 1

    def test_merge_keeps_existing_avatar(self, resolver):
        local = resolver.create_local("u@example.com", "Uma", "hash")
        resolver.update_profile(local, avatar="https://mine")
        merged = resolver.resolve_federated(google_info(avatar="https://theirs"))
        assert merged.avatar == "https://mine"

    def test_same_provider_other_external_id_reuses_account(self, resolver, store):
        first = resolver.resolve_federated(google_info(external_id="g-1"))
        again = resolver.resolve_federated(google_info(external_id="g-2"))
        assert again.id == first.id
        assert again.provider_id == "g-1"
        assert store.count_identities() == 1

    def test_local_provider_rejected(self, resolver):
        info = ProviderUserInfo(
            provider=Provider.LOCAL,
            external_id="x",
            email="u@example.com",
            name="Uma",
            email_verified=True,
        )
        with pytest.raises(ValidationError):
            resolver.resolve_federated(info)
