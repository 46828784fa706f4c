from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import (
    DuplicateEmailError,
    FederatedAccountError,
    ForbiddenError,
    IdentityNotFoundError,
    InvalidAccessTokenError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    NotFoundError,
    RevokedOrExpiredError,
    ServerError,
    ValidationError,
)
from authcore.service.identity import IdentityResolver, IdentityStore
from authcore.service.oauth import IdentityProvider, OAuthStateStore, ProviderUserInfo
from authcore.service.passwords import CredentialHasher, PasswordMismatchError
from authcore.service.tokens import TokenError, TokenKind, TokenService
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import (
    EMAIL_MAX_LENGTH,
    EMAIL_MIN_LENGTH,
    NAME_MAX_LENGTH,
    NAME_MIN_LENGTH,
    Identity,
    Provider,
    Role,
    Session,
    normalize_email,
)

logger = get_logger(__name__)

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


class SessionStore(Protocol):
    def create_session(self, session: Session) -> Session: ...

    def get_session_by_token(self, token: str) -> Optional[Session]: ...

    def list_sessions_for_user(self, user_id: str) -> List[Session]: ...

    def delete_session_by_token(self, token: str) -> bool: ...

    def claim_session(self, token: str) -> bool: ...

    def revoke_user_sessions(self, user_id: str) -> int: ...

    def is_session_active(self, token: str) -> bool: ...

    def purge_expired_sessions(self) -> int: ...


@dataclass
class AuthResult:
    identity: Identity
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int = 0


@dataclass
class AuthContext:
    user_id: str
    email: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


def _validate_signup_fields(email: str, name: str) -> None:
    if not email or "@" not in email or "." not in email:
        raise ValidationError("invalid email format")
    if not EMAIL_MIN_LENGTH <= len(email) <= EMAIL_MAX_LENGTH:
        raise ValidationError("invalid email format")
    if not NAME_MIN_LENGTH <= len(name) <= NAME_MAX_LENGTH:
        raise ValidationError(
            f"name must be between {NAME_MIN_LENGTH} and {NAME_MAX_LENGTH} characters"
        )


class AuthService:
    """Register, login, refresh and logout flows over the identity and session stores.

    Every successful login (local or federated) revokes all earlier sessions
    of the identity before the new one is stored, so in the steady state each
    identity holds at most one active refresh session. Refresh tokens are
    single-use: rotation claims the presented token by deleting its session
    row and only the caller whose delete removed the row gets a new pair.
    """

    def __init__(
        self,
        identities: IdentityStore,
        sessions: SessionStore,
        settings: Settings,
        *,
        cache=None,
        providers: Optional[Dict[Provider, IdentityProvider]] = None,
        hasher: Optional[CredentialHasher] = None,
        tokens: Optional[TokenService] = None,
    ) -> None:
        self.settings = settings
        self.resolver = IdentityResolver(identities)
        self.sessions = sessions
        self.cache = cache
        self.hasher = hasher or CredentialHasher(settings)
        self.tokens = tokens or TokenService(settings)
        self.providers: Dict[Provider, IdentityProvider] = dict(providers or {})
        self.oauth_states = OAuthStateStore(
            cache, ttl=timedelta(minutes=settings.oauth_state_ttl_minutes)
        )
        self.logger = logger

    # registration and login
    async def register(self, email: str, password: str, name: str) -> AuthResult:
        email = normalize_email(email)
        name = (name or "").strip()
        _validate_signup_fields(email, name)
        self.hasher.validate(password)

        # Uniqueness is rechecked by the store constraint on insert
        if self.resolver.find_by_email(email):
            self.logger.info("register_rejected", reason="duplicate_email")
            raise DuplicateEmailError()
        identity = self.resolver.create_local(email, name, self.hasher.hash(password))

        try:
            result = self._start_session(identity)
        except Exception as exc:
            self._discard_orphaned_identity(identity, exc)
            raise
        self.logger.info("register_succeeded", user_id=identity.id)
        return result

    async def login(self, email: str, password: str) -> AuthResult:
        if not email or not password:
            raise ValidationError("email and password are required")
        identity = self.resolver.find_by_email(email)
        if not identity:
            self.logger.info("login_rejected", reason="unknown_email")
            raise InvalidCredentialsError(reason="unknown_email")
        if not identity.has_password:
            self.logger.info(
                "login_rejected", user_id=identity.id, reason="federated_account"
            )
            raise FederatedAccountError(reason="federated_account")
        try:
            self.hasher.verify(password, identity.password_hash)
        except PasswordMismatchError as exc:
            self.logger.info(
                "login_rejected", user_id=identity.id, reason="password_mismatch"
            )
            raise InvalidCredentialsError(reason="password_mismatch") from exc

        # Must complete before the new session is stored; a failure aborts login
        revoked = self.sessions.revoke_user_sessions(identity.id)
        result = self._start_session(identity)
        self._maybe_rehash(identity, password)
        self.logger.info(
            "login_succeeded", user_id=identity.id, revoked_sessions=revoked
        )
        return result

    async def federated_login(self, info: ProviderUserInfo) -> AuthResult:
        try:
            identity = self.resolver.resolve_federated(info)
        except InvalidCredentialsError as exc:
            self.logger.info(
                "federated_login_rejected",
                provider=info.provider.value,
                reason=exc.reason,
            )
            raise
        revoked = self.sessions.revoke_user_sessions(identity.id)
        result = self._start_session(identity)
        self.logger.info(
            "federated_login_succeeded",
            user_id=identity.id,
            provider=info.provider.value,
            revoked_sessions=revoked,
        )
        return result

    async def start_federated_login(self, provider: Provider) -> dict:
        client = self._provider(provider)
        state = await self.oauth_states.issue(provider)
        return {"authorization_url": client.authorization_url(state), "state": state}

    async def federated_login_with_code(
        self, provider: Provider, code: str, state: str
    ) -> AuthResult:
        client = self._provider(provider)
        await self.oauth_states.consume(state, provider)
        if not code:
            raise ValidationError("missing authorization code")
        info = await client.exchange_code(code)
        if info.provider != provider:
            raise ValidationError("provider mismatch")
        return await self.federated_login(info)

    # token lifecycle
    async def refresh(self, refresh_token: str) -> AuthResult:
        try:
            claims = self.tokens.validate_refresh(refresh_token)
        except TokenError as exc:
            self.logger.info("refresh_rejected", reason=exc.reason)
            raise InvalidRefreshTokenError(reason=exc.reason) from exc

        if not self.sessions.is_session_active(refresh_token):
            self.logger.info(
                "refresh_rejected", user_id=claims.user_id, reason="inactive_session"
            )
            raise RevokedOrExpiredError()

        identity = self.resolver.find_by_id(claims.user_id)
        if not identity:
            self.logger.warning(
                "refresh_rejected", user_id=claims.user_id, reason="identity_not_found"
            )
            raise IdentityNotFoundError()

        # The conditional delete is the claim; a concurrent redeemer or a
        # revocation that landed after the check above makes it fail
        if not self.sessions.claim_session(refresh_token):
            self.logger.warning(
                "refresh_rejected", user_id=identity.id, reason="claim_lost"
            )
            raise RevokedOrExpiredError(reason="claim_lost")

        result = self._start_session(identity)
        self.logger.info("refresh_succeeded", user_id=identity.id)
        return result

    async def logout(self, refresh_token: Optional[str]) -> None:
        if not refresh_token:
            return
        was_active = self.sessions.is_session_active(refresh_token)
        removed = self.sessions.delete_session_by_token(refresh_token)
        self.logger.info("logout", was_active=was_active, removed=removed)

    async def logout_all(self, user_id: str) -> int:
        revoked = self.sessions.revoke_user_sessions(user_id)
        self.logger.info("logout_all", user_id=user_id, revoked_sessions=revoked)
        return revoked

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise InvalidAccessTokenError(reason="missing_bearer")
        try:
            claims = self.tokens.validate_access(token)
        except TokenError as exc:
            self.logger.info("access_token_rejected", reason=exc.reason)
            raise InvalidAccessTokenError(reason=exc.reason) from exc
        try:
            role = Role(claims.role)
        except ValueError as exc:
            raise InvalidAccessTokenError(reason="unknown_role") from exc
        return AuthContext(user_id=claims.user_id, email=claims.email, role=role)

    async def authorize_admin(self, ctx: AuthContext) -> Identity:
        """Confirm the caller is an admin right now, not just when the token was minted."""
        identity = self.resolver.find_by_id(ctx.user_id) if ctx.is_admin else None
        if not identity or not identity.is_admin:
            self.logger.warning("admin_access_denied", user_id=ctx.user_id)
            raise ForbiddenError()
        return identity

    # profile
    async def get_profile(self, user_id: str) -> Identity:
        return self._require_identity(user_id)

    async def update_profile(
        self, user_id: str, *, name: Optional[str] = None, avatar: Optional[str] = None
    ) -> Identity:
        identity = self._require_identity(user_id)
        updated = self.resolver.update_profile(identity, name=name, avatar=avatar)
        self.logger.info("profile_updated", user_id=user_id)
        return updated

    # admin
    async def list_users(
        self, limit: int = DEFAULT_PAGE_SIZE, offset: int = 0
    ) -> Tuple[List[Identity], int, int, int]:
        if limit <= 0 or limit > MAX_PAGE_SIZE:
            limit = DEFAULT_PAGE_SIZE
        offset = max(offset, 0)
        users = self.resolver.list_identities(limit=limit, offset=offset)
        total = self.resolver.count_identities()
        return users, total, limit, offset

    async def get_user(self, user_id: str) -> Identity:
        return self._require_identity(user_id)

    async def promote_user(self, user_id: str) -> Identity:
        identity = self.resolver.promote(self._require_identity(user_id))
        await self._revoke_after_role_change(identity, undo=self.resolver.demote)
        return identity

    async def demote_user(self, user_id: str) -> Identity:
        identity = self.resolver.demote(self._require_identity(user_id))
        await self._revoke_after_role_change(identity, undo=self.resolver.promote)
        return identity

    async def delete_user(self, user_id: str) -> None:
        identity = self._require_identity(user_id)
        # Revocation must land before the row disappears
        revoked = self.sessions.revoke_user_sessions(identity.id)
        if not self.resolver.delete(identity.id):
            raise NotFoundError("user not found")
        self.logger.info("user_deleted", user_id=identity.id, revoked_sessions=revoked)

    async def purge_expired_sessions(self) -> int:
        purged = self.sessions.purge_expired_sessions()
        self.logger.info("expired_sessions_purged", count=purged)
        return purged

    # helpers
    def _start_session(self, identity: Identity) -> AuthResult:
        role = identity.role.value
        access_token = self.tokens.issue_access(identity.id, identity.email, role)
        refresh_token = self.tokens.issue_refresh(identity.id, identity.email, role)
        session = Session.new(
            identity.id, refresh_token, self.tokens.expiry_for(TokenKind.REFRESH)
        )
        try:
            self.sessions.create_session(session)
        except ConstraintViolation as exc:
            self.logger.error(
                "session_persist_failed", user_id=identity.id, error=exc.message
            )
            raise ServerError() from exc
        return AuthResult(
            identity=identity,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=int(self.tokens.expiry_for(TokenKind.ACCESS).total_seconds()),
        )

    def _discard_orphaned_identity(self, identity: Identity, cause: Exception) -> None:
        try:
            self.resolver.delete(identity.id)
        except Exception as exc:
            self.logger.error(
                "register_compensation_failed",
                user_id=identity.id,
                error=str(exc),
                cause=type(cause).__name__,
            )
        else:
            self.logger.warning(
                "register_rolled_back", user_id=identity.id, cause=type(cause).__name__
            )

    def _maybe_rehash(self, identity: Identity, password: str) -> None:
        if not self.hasher.needs_rehash(identity.password_hash):
            return
        try:
            self.resolver.set_password(identity, self.hasher.hash(password))
            self.logger.info("password_rehashed", user_id=identity.id)
        except Exception as exc:
            # Login already succeeded; the old hash still verifies
            self.logger.warning(
                "password_rehash_failed", user_id=identity.id, error=str(exc)
            )

    async def _revoke_after_role_change(
        self, identity: Identity, undo: Callable[[Identity], Identity]
    ) -> None:
        """Revoke sessions minted under the old role, or put the old role back."""
        try:
            revoked = self.sessions.revoke_user_sessions(identity.id)
        except Exception as exc:
            self.logger.error(
                "user_role_session_revocation_failed",
                user_id=identity.id,
                new_role=identity.role.value,
                error=str(exc),
            )
            try:
                undo(identity)
            except Exception as undo_exc:
                self.logger.error(
                    "user_role_rollback_failed",
                    user_id=identity.id,
                    error=str(undo_exc),
                )
            raise ServerError() from exc
        self.logger.info(
            "user_role_updated_sessions_revoked",
            user_id=identity.id,
            new_role=identity.role.value,
            revoked_sessions=revoked,
        )

    def _require_identity(self, user_id: str) -> Identity:
        identity = self.resolver.find_by_id(user_id)
        if not identity:
            raise NotFoundError("user not found")
        return identity

    def _provider(self, provider: Provider) -> IdentityProvider:
        client = self.providers.get(provider)
        if client is None:
            raise ValidationError(
                f"provider {provider.value.lower()} is not configured",
                reason="provider_not_configured",
            )
        return client

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None
