from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse

from authcore.config import Settings, get_settings, reset_settings_cache
from authcore.logging import get_logger
from authcore.service.auth import AuthService
from authcore.service.oauth import GoogleIdentityProvider, IdentityProvider
from authcore.storage.memory import MemoryStore
from authcore.storage.models import Provider
from authcore.storage.postgres import PostgresStore
from authcore.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Hide the password in a connection URL before it is logged.

    ``redis://:hunter2@cache:6379/0`` becomes ``redis://:***@cache:6379/0``.
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        password = parsed.password
    except ValueError:
        return "***unparseable***"
    if not password:
        return url
    host = parsed.hostname or ""
    if parsed.port:
        host = f"{host}:{parsed.port}"
    return parsed._replace(netloc=f"{parsed.username or ''}:***@{host}").geturl()


class LocalRateLimiter:
    """In-process token buckets used when Redis is not available."""

    def __init__(self) -> None:
        self._buckets: Dict[str, Tuple[float, datetime]] = {}
        self._lock = asyncio.Lock()

    async def check(
        self, key: str, limit: int, window_seconds: int, cost: int = 1
    ) -> Tuple[bool, int, int]:
        now = datetime.now(timezone.utc)
        refill_rate = float(limit) / float(window_seconds)
        async with self._lock:
            tokens, last = self._buckets.get(key, (float(limit), now))
            elapsed = max(0.0, (now - last).total_seconds())
            tokens = min(float(limit), tokens + elapsed * refill_rate)
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
            self._buckets[key] = (tokens, now)
        retry_after = 0 if allowed else int((cost - tokens) / refill_rate)
        return allowed, int(tokens), retry_after


class Runtime:
    """Process-wide wiring of settings, stores, cache and the auth service."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.store = self._build_store()
        self.cache = self._build_cache()
        providers = self._build_providers()
        self.auth = AuthService(
            self.store,
            self.store,
            self.settings,
            cache=self.cache,
            providers=providers,
        )
        self.local_rate_limits = LocalRateLimiter()
        logger.info(
            "runtime_initialized",
            store_type=self.store_type,
            redis_enabled=self.cache is not None,
            federated_providers=sorted(p.value for p in providers),
            test_mode=self.settings.test_mode,
        )

    @property
    def store_type(self) -> str:
        return "memory" if self.settings.use_memory_store else "postgres"

    def _build_store(self):
        try:
            if self.settings.use_memory_store:
                return MemoryStore(fs_root=self.settings.memory_store_root)
            return PostgresStore(
                self.settings.database_url,
                statement_timeout_ms=self.settings.db_statement_timeout_ms,
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=self.store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

    def _build_cache(self):
        """Connect to Redis, or fall back to in-process state where allowed."""
        redis_url = self.settings.redis_url
        failure: Optional[Exception] = None
        if redis_url:
            # A blocking client survives the per-test event loops of TEST_MODE
            cache_cls = SyncRedisCache if self.settings.test_mode else RedisCache
            try:
                cache = cache_cls(redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                failure = exc

        if not (self.settings.test_mode or self.settings.allow_redis_fallback_dev):
            raise RuntimeError(
                "Redis is required for rate limits and OAuth state; set TEST_MODE=true "
                "or ALLOW_REDIS_FALLBACK_DEV=true to run with in-process fallbacks."
            ) from failure
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(redis_url),
            error=str(failure) if failure else "redis_url_missing",
            mode="TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
        )
        return None

    def _build_providers(self) -> Dict[Provider, IdentityProvider]:
        providers: Dict[Provider, IdentityProvider] = {}
        google = GoogleIdentityProvider.from_settings(self.settings)
        if google is not None:
            providers[Provider.GOOGLE] = google
        return providers

    async def close(self) -> None:
        """Release the cache client and the database pool."""
        if self.cache is not None:
            await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if close_store is not None:
            await asyncio.to_thread(close_store)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the process runtime, creating it on first use."""
    global runtime
    if runtime is None:
        with _runtime_lock:
            if runtime is None:
                runtime = Runtime()
    return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a freshly read environment; TEST_MODE only."""
    global runtime
    with _runtime_lock:
        previous = runtime
        if previous is not None and isinstance(previous.cache, SyncRedisCache):
            try:
                asyncio.run(previous.cache.close())
            except Exception as exc:
                logger.debug("runtime_cache_close_failed", error=str(exc))
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Consume ``cost`` tokens from bucket ``key``.

    Uses the Redis token bucket when connected and the runtime's in-process
    buckets otherwise. A non-positive ``limit`` disables limiting.

    Returns:
        bool, or (allowed, remaining, retry_after_seconds) with ``return_remaining``
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache is not None:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    result = await runtime.local_rate_limits.check(key, limit, window_seconds, cost)
    return result if return_remaining else result[0]
