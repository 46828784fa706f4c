from __future__ import annotations

import hashlib
import json
import time
from datetime import datetime, timezone
from typing import Any, Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

RateLimitResult = Union[bool, Tuple[bool, int, int]]

_OAUTH_PREFIX = "authcore:oauth_state:"
_RATE_PREFIX = "authcore:rate:"

# KEYS[1] bucket; ARGV now, refill per second, capacity, cost.
# Refill, consume and expiry happen in one round trip so concurrent
# requests cannot both spend the last token.
TOKEN_BUCKET_LUA = """
local bucket = redis.call('HMGET', KEYS[1], 'tokens', 'ts')
local now = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])
local tokens = tonumber(bucket[1]) or capacity
local last = tonumber(bucket[2]) or now

tokens = math.min(capacity, tokens + math.max(0, now - last) * rate)
local allowed = 0
local retry_after = 0
if tokens >= cost then
  tokens = tokens - cost
  allowed = 1
else
  retry_after = math.ceil((cost - tokens) / rate)
end
redis.call('HSET', KEYS[1], 'tokens', tokens, 'ts', now)
redis.call('EXPIRE', KEYS[1], math.max(1, math.ceil(capacity / rate)))
return {allowed, tostring(tokens), retry_after}
"""


def _rate_key(subject: str) -> str:
    # Subjects embed emails and client addresses; store only a digest
    return _RATE_PREFIX + hashlib.sha256(subject.encode()).hexdigest()


def _oauth_key(state: str) -> str:
    return _OAUTH_PREFIX + state


def _ttl_seconds(expires_at: datetime) -> int:
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    remaining = (expires_at - datetime.now(timezone.utc)).total_seconds()
    return max(1, int(remaining))


def _bucket_args(limit: int, window_seconds: int, cost: int) -> list:
    return [time.time(), float(limit) / float(window_seconds), limit, max(1, cost)]


def _bucket_result(raw: Any, return_remaining: bool) -> RateLimitResult:
    allowed, tokens, retry_after = raw
    allowed = bool(int(allowed))
    if not return_remaining:
        return allowed
    return allowed, max(0, int(float(tokens))), int(retry_after or 0)


def _encode_oauth_state(provider: str, expires_at: datetime) -> str:
    return json.dumps({"provider": provider, "expires_at": expires_at.isoformat()})


def _decode_oauth_state(cached: Optional[str]) -> Optional[tuple[str, datetime]]:
    """Parse a stored state; an unreadable expiry is treated as already expired."""
    if cached is None:
        return None
    try:
        data = json.loads(cached)
    except (json.JSONDecodeError, TypeError):
        return None
    if not isinstance(data, dict):
        return None
    try:
        expires_at = datetime.fromisoformat(data.get("expires_at") or "")
    except (TypeError, ValueError):
        expires_at = datetime.now(timezone.utc)
    return data.get("provider"), expires_at


class RedisCache:
    """Async Redis client for rate-limit buckets and one-time OAuth states.

    Session validity is never read from here; the relational store owns it.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._bucket = self.client.register_script(TOKEN_BUCKET_LUA)

    def verify_connection(self) -> None:
        # Sync ping so startup does not bind the async pool to a throwaway loop
        probe = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            probe.ping()
        finally:
            probe.close()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> RateLimitResult:
        raw = await self._bucket(
            keys=[_rate_key(key)], args=_bucket_args(limit, window_seconds, cost)
        )
        return _bucket_result(raw, return_remaining)

    async def set_oauth_state(self, state: str, provider: str, expires_at: datetime) -> None:
        await self.client.set(
            _oauth_key(state),
            _encode_oauth_state(provider, expires_at),
            ex=_ttl_seconds(expires_at),
        )

    async def pop_oauth_state(self, state: str) -> Optional[tuple[str, datetime]]:
        # GETDEL: a state can be redeemed once even under concurrent callbacks
        return _decode_oauth_state(await self.client.getdel(_oauth_key(state)))

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Blocking-client variant of ``RedisCache`` with the same awaitable surface.

    Used under TEST_MODE, where each test may run on a fresh event loop.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._bucket = self.client.register_script(TOKEN_BUCKET_LUA)

    def verify_connection(self) -> None:
        self.client.ping()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> RateLimitResult:
        raw = self._bucket(keys=[_rate_key(key)], args=_bucket_args(limit, window_seconds, cost))
        return _bucket_result(raw, return_remaining)

    async def set_oauth_state(self, state: str, provider: str, expires_at: datetime) -> None:
        self.client.set(
            _oauth_key(state),
            _encode_oauth_state(provider, expires_at),
            ex=_ttl_seconds(expires_at),
        )

    async def pop_oauth_state(self, state: str) -> Optional[tuple[str, datetime]]:
        return _decode_oauth_state(self.client.getdel(_oauth_key(state)))

    async def close(self) -> None:
        self.client.close()
