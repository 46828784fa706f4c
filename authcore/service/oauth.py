from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol
from urllib.parse import urlencode, urlparse

import httpx

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import ProviderError, ValidationError
from authcore.storage.models import Provider

logger = get_logger(__name__)

GOOGLE_ENDPOINTS = {
    "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
    "token_url": "https://oauth2.googleapis.com/token",
    "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
    "scope": "openid email profile",
}


@dataclass(frozen=True)
class ProviderUserInfo:
    """Verified identity handed over by a federated provider."""

    provider: Provider
    external_id: str
    email: str
    name: str
    avatar: Optional[str] = None
    email_verified: bool = False


class IdentityProvider(Protocol):
    provider: Provider

    def authorization_url(self, state: str) -> str: ...

    async def exchange_code(self, code: str) -> ProviderUserInfo: ...


def _validate_redirect_uri(redirect_uri: str) -> str:
    parsed = urlparse(redirect_uri)
    if parsed.scheme not in {"https", "http"}:
        raise ValueError("OAuth redirect URI must be http(s)")
    if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
        raise ValueError("Insecure redirect URI not allowed outside localhost")
    if not parsed.netloc:
        raise ValueError("OAuth redirect URI must include host")
    return redirect_uri


class GoogleIdentityProvider:
    """Authorization-code exchange against Google's OAuth 2.0 endpoints."""

    provider = Provider.GOOGLE

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = _validate_redirect_uri(redirect_uri)
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional["GoogleIdentityProvider"]:
        if not (
            settings.oauth_google_client_id
            and settings.oauth_google_client_secret
            and settings.oauth_redirect_uri
        ):
            return None
        return cls(
            settings.oauth_google_client_id,
            settings.oauth_google_client_secret,
            settings.oauth_redirect_uri,
        )

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": GOOGLE_ENDPOINTS["scope"],
            "state": state,
            "access_type": "offline",
            "prompt": "consent",
        }
        return f"{GOOGLE_ENDPOINTS['auth_url']}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> ProviderUserInfo:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self._transport
            ) as client:
                token_response = await client.post(
                    GOOGLE_ENDPOINTS["token_url"],
                    data={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "code": code,
                        "redirect_uri": self.redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token")
                    if isinstance(token_result, dict)
                    else None
                )
                if not access_token:
                    logger.error("oauth_no_access_token", provider=self.provider.value)
                    raise ProviderError(reason="missing_access_token")

                userinfo_response = await client.get(
                    GOOGLE_ENDPOINTS["userinfo_url"],
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider=self.provider.value,
                status_code=exc.response.status_code,
            )
            raise ProviderError(reason="http_status") from exc
        except httpx.HTTPError as exc:
            logger.error(
                "oauth_exchange_transport_error",
                provider=self.provider.value,
                error_type=type(exc).__name__,
            )
            raise ProviderError(reason="transport") from exc
        except ValueError as exc:
            logger.error("oauth_exchange_parse_error", provider=self.provider.value)
            raise ProviderError(reason="malformed_response") from exc

        if not isinstance(userinfo, dict):
            raise ProviderError(reason="malformed_userinfo")
        info = self._parse_userinfo(userinfo)
        logger.info(
            "oauth_exchange_success",
            provider=self.provider.value,
            external_id=info.external_id,
        )
        return info

    def _parse_userinfo(self, userinfo: dict) -> ProviderUserInfo:
        external_id = userinfo.get("id") or userinfo.get("sub")
        email = userinfo.get("email")
        if not external_id or not email:
            logger.error("oauth_identity_incomplete", provider=self.provider.value)
            raise ProviderError(reason="incomplete_userinfo")
        # v2 userinfo reports ``verified_email``; OIDC reports ``email_verified``
        verified = userinfo.get("verified_email", userinfo.get("email_verified", False))
        return ProviderUserInfo(
            provider=self.provider,
            external_id=str(external_id),
            email=email,
            name=userinfo.get("name") or email.split("@")[0],
            avatar=userinfo.get("picture") or None,
            email_verified=verified is True or str(verified).lower() == "true",
        )


class OAuthStateStore:
    """One-time OAuth ``state`` values, kept in Redis when available."""

    def __init__(self, cache=None, *, ttl: timedelta = timedelta(minutes=10)) -> None:
        self.cache = cache
        self.ttl = ttl
        self._states: dict[str, tuple[str, datetime]] = {}
        self._lock = threading.Lock()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def issue(self, provider: Provider) -> str:
        state = uuid.uuid4().hex
        expires_at = self._now() + self.ttl
        if self.cache:
            await self.cache.set_oauth_state(state, provider.value, expires_at)
        else:
            with self._lock:
                self._purge_locked()
                self._states[state] = (provider.value, expires_at)
        return state

    async def consume(self, state: str, provider: Provider) -> None:
        """Pop ``state`` and raise ``ValidationError`` unless it is live for ``provider``."""
        if not state:
            raise ValidationError("missing OAuth state", reason="oauth_state_missing")
        if self.cache:
            stored = await self.cache.pop_oauth_state(state)
        else:
            with self._lock:
                stored = self._states.pop(state, None)
        if not stored or stored[0] != provider.value or stored[1] <= self._now():
            logger.warning("oauth_state_rejected", provider=provider.value)
            raise ValidationError("invalid OAuth state", reason="oauth_state_invalid")

    def _purge_locked(self) -> None:
        now = self._now()
        for key in [k for k, (_, exp) in self._states.items() if exp <= now]:
            self._states.pop(key, None)
