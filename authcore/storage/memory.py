from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import (
    REVOCATION_BACKDATE,
    Identity,
    Provider,
    Role,
    Session,
    normalize_email,
    utcnow,
)


class MemoryStore:
    """In-process identity and session store.

    Every read returns a copy so callers can mutate an identity and hand it
    back through ``update_identity`` without touching stored state first.
    When ``fs_root`` is given the state is mirrored to a JSON file after each
    write and reloaded on start.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.identities: Dict[str, Identity] = {}
        self.sessions: Dict[str, Session] = {}
        # RLock for all data operations to ensure thread safety
        # Using RLock to allow nested acquisitions within the same thread
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def ping(self) -> bool:
        return True

    # identities
    def create_identity(self, identity: Identity) -> Identity:
        with self._data_lock:
            email = normalize_email(identity.email)
            if any(existing.email == email for existing in self.identities.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if identity.provider_id and self._find_by_provider_locked(
                identity.provider, identity.provider_id
            ):
                raise ConstraintViolation(
                    "provider identity already linked", {"field": "provider_id"}
                )
            stored = replace(identity, email=email)
            self.identities[stored.id] = stored
            self._persist_state()
            return replace(stored)

    def get_identity(self, user_id: str) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(user_id)
            return replace(identity) if identity else None

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        email = normalize_email(email)
        with self._data_lock:
            identity = next(
                (i for i in self.identities.values() if i.email == email), None
            )
            return replace(identity) if identity else None

    def get_identity_by_provider(
        self, provider: Provider, provider_id: str
    ) -> Optional[Identity]:
        with self._data_lock:
            identity = self._find_by_provider_locked(provider, provider_id)
            return replace(identity) if identity else None

    def update_identity(self, identity: Identity) -> Identity:
        with self._data_lock:
            if identity.id not in self.identities:
                raise ConstraintViolation(
                    "identity does not exist", {"user_id": identity.id}
                )
            email = normalize_email(identity.email)
            for other in self.identities.values():
                if other.id == identity.id:
                    continue
                if other.email == email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if (
                    identity.provider_id
                    and other.provider == identity.provider
                    and other.provider_id == identity.provider_id
                ):
                    raise ConstraintViolation(
                        "provider identity already linked", {"field": "provider_id"}
                    )
            stored = replace(identity, email=email)
            self.identities[stored.id] = stored
            self._persist_state()
            return replace(stored)

    def delete_identity(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.identities:
                return False
            self.identities.pop(user_id, None)
            # Mirrors ON DELETE CASCADE on the sessions table
            for token, sess in list(self.sessions.items()):
                if sess.user_id == user_id:
                    self.sessions.pop(token, None)
            self._persist_state()
            return True

    def list_identities(self, limit: int = 10, offset: int = 0) -> List[Identity]:
        with self._data_lock:
            ordered = sorted(
                self.identities.values(), key=lambda i: i.created_at, reverse=True
            )
            return [replace(i) for i in ordered[offset : offset + limit]]

    def count_identities(self) -> int:
        with self._data_lock:
            return len(self.identities)

    def _find_by_provider_locked(
        self, provider: Provider, provider_id: str
    ) -> Optional[Identity]:
        return next(
            (
                i
                for i in self.identities.values()
                if i.provider == provider and i.provider_id == provider_id
            ),
            None,
        )

    # sessions, keyed by refresh token
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.identities:
                raise ConstraintViolation(
                    "user does not exist", {"user_id": session.user_id}
                )
            if session.refresh_token in self.sessions:
                raise ConstraintViolation(
                    "refresh token already exists", {"field": "refresh_token"}
                )
            self.sessions[session.refresh_token] = replace(session)
            self._persist_state()
            return replace(session)

    def get_session_by_token(self, token: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(token)
            return replace(sess) if sess else None

    def list_sessions_for_user(self, user_id: str) -> List[Session]:
        with self._data_lock:
            owned = [replace(s) for s in self.sessions.values() if s.user_id == user_id]
        return sorted(owned, key=lambda s: s.created_at, reverse=True)

    def delete_session_by_token(self, token: str) -> bool:
        """Remove the session; True only for the caller that removed it."""
        with self._data_lock:
            removed = self.sessions.pop(token, None)
            if removed is not None:
                self._persist_state()
            return removed is not None

    def claim_session(self, token: str) -> bool:
        """Remove the session only while it is still active; True for the one winner."""
        with self._data_lock:
            sess = self.sessions.get(token)
            if sess is None or not sess.is_active():
                return False
            del self.sessions[token]
            self._persist_state()
            return True

    def revoke_user_sessions(self, user_id: str) -> int:
        now = utcnow()
        revoked_at = now - REVOCATION_BACKDATE
        touched = 0
        with self._data_lock:
            for sess in self.sessions.values():
                # Never move an older expiry forward
                if sess.user_id == user_id and sess.expires_at > revoked_at:
                    sess.revoke(now)
                    touched += 1
            if touched:
                self._persist_state()
        return touched

    def is_session_active(self, token: str) -> bool:
        with self._data_lock:
            sess = self.sessions.get(token)
            return bool(sess and sess.is_active())

    def purge_expired_sessions(self) -> int:
        now = utcnow()
        with self._data_lock:
            stale = [t for t, s in self.sessions.items() if not s.is_active(now)]
            for token in stale:
                self.sessions.pop(token, None)
            if stale:
                self._persist_state()
        return len(stale)

    # persistence
    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _persist_state(self) -> None:
        if not self.fs_root:
            return
        state = {
            "identities": [self._serialize_identity(i) for i in self.identities.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.identities = {
            i["id"]: self._deserialize_identity(i) for i in data.get("identities", [])
        }
        self.sessions = {
            s["refresh_token"]: self._deserialize_session(s)
            for s in data.get("sessions", [])
        }
        self.logger.info(
            "memory_store_loaded",
            identities=len(self.identities),
            sessions=len(self.sessions),
        )
        return True

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def _serialize_identity(self, identity: Identity) -> dict:
        return {
            "id": identity.id,
            "email": identity.email,
            "name": identity.name,
            "role": identity.role.value,
            "provider": identity.provider.value,
            "password_hash": identity.password_hash,
            "provider_id": identity.provider_id,
            "avatar": identity.avatar,
            "email_verified": identity.email_verified,
            "created_at": self._serialize_datetime(identity.created_at),
            "updated_at": self._serialize_datetime(identity.updated_at),
        }

    def _deserialize_identity(self, data: dict) -> Identity:
        return Identity(
            id=str(data["id"]),
            email=data["email"],
            name=data["name"],
            role=Role(data.get("role", Role.USER.value)),
            provider=Provider(data.get("provider", Provider.LOCAL.value)),
            password_hash=data.get("password_hash"),
            provider_id=data.get("provider_id"),
            avatar=data.get("avatar"),
            email_verified=bool(data.get("email_verified", False)),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(
                data.get("updated_at", data["created_at"])
            ),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "refresh_token": session.refresh_token,
            "expires_at": self._serialize_datetime(session.expires_at),
            "created_at": self._serialize_datetime(session.created_at),
            "updated_at": self._serialize_datetime(session.updated_at),
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            refresh_token=data["refresh_token"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(
                data.get("updated_at", data["created_at"])
            ),
        )
