from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from authcore.api.error_handling import register_exception_handlers
from authcore.api.routes import router
from authcore.config import Settings
from authcore.logging import (
    bind_request_context,
    clear_request_context,
    get_logger,
    set_correlation_id,
)

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3.0
# Floor for the in-process sweep so a misconfigured interval cannot spin
_MIN_PURGE_INTERVAL_SECONDS = 60
_NO_STORE = "no-store, no-cache, must-revalidate, private"
_DEV_ORIGINS = [
    "http://localhost",
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]


async def _run_session_purge(runtime, interval_seconds: int) -> None:
    """Delete expired refresh sessions every ``interval_seconds`` until cancelled."""
    interval = max(interval_seconds, _MIN_PURGE_INTERVAL_SECONDS)
    while True:
        await asyncio.sleep(interval)
        try:
            await runtime.auth.purge_expired_sessions()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("session_purge_failed", error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    from authcore.service.runtime import get_runtime

    runtime = get_runtime()
    purge_task: Optional[asyncio.Task] = None
    interval = runtime.settings.session_purge_interval_seconds
    if interval > 0:
        purge_task = asyncio.create_task(_run_session_purge(runtime, interval))
        logger.info("session_purge_scheduled", interval_seconds=interval)

    yield

    if purge_task is not None:
        purge_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await purge_task
        logger.info("session_purge_stopped")
    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


async def _probe(label: str, func: Callable[[], Any]) -> bool:
    """Run a blocking dependency check off the loop, bounded by the health timeout."""
    try:
        await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error(
            "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
        )
        return False
    except Exception as exc:
        logger.error("health_check_failed", component=label, error=str(exc))
        return False
    return True


async def health():
    """Report database and Redis reachability; 503 when a dependency is down."""
    from authcore.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    db_ok = await _probe("database", runtime.store.ping)
    checks["database"] = {
        "status": "healthy" if db_ok else "unhealthy",
        "type": runtime.store_type,
    }
    healthy = db_ok

    if runtime.cache is None:
        checks["redis"] = {"status": "not_configured"}
    else:
        redis_ok = await _probe("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
        healthy = healthy and redis_ok

    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )


def _allowed_origins(settings: Settings) -> List[str]:
    # Never a wildcard: credentials may be enabled
    return settings.cors_allow_origins or list(_DEV_ORIGINS)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the FastAPI application with middleware, error handlers and routes."""
    settings = settings or Settings.from_env()
    application = FastAPI(title="authcore", version=__version__, lifespan=lifespan)

    application.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID", "X-Upstream-Secret"],
        expose_headers=[
            "X-Request-ID",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
        ],
        max_age=3600,
    )

    @application.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Echo the client's X-Request-ID (or a fresh one) and bind it to request logs."""
        clear_request_context()
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        bind_request_context(method=request.method, path=request.url.path)
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @application.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        path = request.url.path
        # Bodies carry bearer and refresh tokens
        if path.startswith("/api/") or path == "/health":
            response.headers.setdefault("Cache-Control", _NO_STORE)
            response.headers.setdefault("Pragma", "no-cache")
        if settings.enable_hsts and request.url.scheme == "https":
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
            )
        return response

    register_exception_handlers(application)
    application.include_router(router)
    application.add_api_route("/health", health, methods=["GET"], tags=["health"])
    return application


app = create_app()
