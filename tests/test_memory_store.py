"""Tests for the in-memory identity and session store."""

from datetime import timedelta

import pytest

from authcore.storage.errors import ConstraintViolation
from authcore.storage.memory import MemoryStore
from authcore.storage.models import Identity, Provider, Role, Session, utcnow


def _local(email="u@example.com", name="User") -> Identity:
    return Identity.new_local(email, name, "$argon2id$fake")


def _session(user_id: str, token: str, ttl=timedelta(days=7)) -> Session:
    return Session.new(user_id, token, ttl)


class TestIdentities:
    def test_create_and_fetch_by_email_case_insensitive(self, store):
        created = store.create_identity(_local("Mixed@Example.com"))
        assert created.email == "mixed@example.com"
        assert store.get_identity_by_email("MIXED@example.COM").id == created.id

    def test_duplicate_email_violates_constraint(self, store):
        store.create_identity(_local("u@example.com"))
        with pytest.raises(ConstraintViolation):
            store.create_identity(_local("U@EXAMPLE.COM"))

    def test_duplicate_provider_link_violates_constraint(self, store):
        store.create_identity(
            Identity.new_federated("a@example.com", "Ann", Provider.GOOGLE, "g-1")
        )
        with pytest.raises(ConstraintViolation):
            store.create_identity(
                Identity.new_federated("b@example.com", "Bob", Provider.GOOGLE, "g-1")
            )

    def test_reads_return_copies(self, store):
        created = store.create_identity(_local())
        fetched = store.get_identity(created.id)
        fetched.role = Role.ADMIN
        assert store.get_identity(created.id).role == Role.USER

    def test_update_rejects_email_taken_by_other(self, store):
        store.create_identity(_local("a@example.com"))
        other = store.create_identity(_local("b@example.com"))
        other.email = "a@example.com"
        with pytest.raises(ConstraintViolation):
            store.update_identity(other)

    def test_update_missing_identity(self, store):
        with pytest.raises(ConstraintViolation):
            store.update_identity(_local())

    def test_list_and_count(self, store):
        for i in range(5):
            store.create_identity(_local(f"user{i}@example.com", f"User {i}"))
        assert store.count_identities() == 5
        page = store.list_identities(limit=2, offset=1)
        assert len(page) == 2
        assert store.list_identities(limit=10, offset=10) == []

    def test_delete_cascades_sessions(self, store):
        identity = store.create_identity(_local())
        store.create_session(_session(identity.id, "tok-1"))
        assert store.delete_identity(identity.id) is True
        assert store.get_session_by_token("tok-1") is None
        assert store.delete_identity(identity.id) is False


class TestSessions:
    def test_session_requires_existing_identity(self, store):
        with pytest.raises(ConstraintViolation):
            store.create_session(_session("missing", "tok"))

    def test_duplicate_refresh_token_rejected(self, store):
        identity = store.create_identity(_local())
        store.create_session(_session(identity.id, "tok"))
        with pytest.raises(ConstraintViolation):
            store.create_session(_session(identity.id, "tok"))

    def test_delete_by_token_claims_once(self, store):
        identity = store.create_identity(_local())
        store.create_session(_session(identity.id, "tok"))
        assert store.delete_session_by_token("tok") is True
        assert store.delete_session_by_token("tok") is False

    def test_claim_skips_revoked_session(self, store):
        identity = store.create_identity(_local())
        store.create_session(_session(identity.id, "a"))
        store.create_session(_session(identity.id, "b"))
        store.revoke_user_sessions(identity.id)
        assert store.claim_session("a") is False
        assert store.get_session_by_token("a") is not None
        # Logout still removes tombstoned rows
        assert store.delete_session_by_token("a") is True

    def test_claim_active_session_once(self, store):
        identity = store.create_identity(_local())
        store.create_session(_session(identity.id, "tok"))
        assert store.claim_session("tok") is True
        assert store.claim_session("tok") is False
        assert store.claim_session("unknown") is False

    def test_revoke_backdates_active_sessions(self, store):
        identity = store.create_identity(_local())
        store.create_session(_session(identity.id, "a"))
        store.create_session(_session(identity.id, "b"))
        assert store.revoke_user_sessions(identity.id) == 2
        assert not store.is_session_active("a")
        assert not store.is_session_active("b")
        # Rows survive revocation until purged
        assert store.get_session_by_token("a").expires_at < utcnow()

    def test_revoke_never_moves_old_expiry_forward(self, store):
        identity = store.create_identity(_local())
        store.create_session(_session(identity.id, "old", ttl=timedelta(days=-2)))
        before = store.get_session_by_token("old").expires_at
        assert store.revoke_user_sessions(identity.id) == 0
        assert store.get_session_by_token("old").expires_at == before

    def test_revoke_leaves_other_users_alone(self, store):
        a = store.create_identity(_local("a@example.com"))
        b = store.create_identity(_local("b@example.com"))
        store.create_session(_session(a.id, "a-tok"))
        store.create_session(_session(b.id, "b-tok"))
        store.revoke_user_sessions(a.id)
        assert store.is_session_active("b-tok")

    def test_list_sessions_newest_first(self, store):
        identity = store.create_identity(_local())
        first = _session(identity.id, "first")
        second = _session(identity.id, "second")
        second.created_at = first.created_at + timedelta(seconds=5)
        store.create_session(first)
        store.create_session(second)
        tokens = [s.refresh_token for s in store.list_sessions_for_user(identity.id)]
        assert tokens == ["second", "first"]

    def test_purge_removes_only_inactive(self, store):
        identity = store.create_identity(_local())
        store.create_session(_session(identity.id, "live"))
        store.create_session(_session(identity.id, "dead", ttl=timedelta(seconds=-1)))
        assert store.purge_expired_sessions() == 1
        assert store.get_session_by_token("dead") is None
        assert store.is_session_active("live")

    def test_unknown_token_inactive(self, store):
        assert store.is_session_active("nope") is False


class TestPersistence:
    def test_state_survives_restart(self, tmp_path):
        first = MemoryStore(fs_root=str(tmp_path))
        identity = first.create_identity(_local())
        first.create_session(_session(identity.id, "tok"))

        second = MemoryStore(fs_root=str(tmp_path))
        reloaded = second.get_identity(identity.id)
        assert reloaded.email == identity.email
        assert reloaded.password_hash == identity.password_hash
        assert second.is_session_active("tok")
