from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from gatekeep.api.error_handling import register_exception_handlers
from gatekeep.api.routes import NEW_TOKEN_HEADER, router
from gatekeep.config import get_settings
from gatekeep.logging import get_logger, set_correlation_id
from gatekeep.service.errors import DependencyError

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

_cleanup_task: asyncio.Task | None = None


async def _run_reset_code_cleanup(interval_seconds: int) -> None:
    """Periodically drop recovery codes whose expiry has passed."""
    from gatekeep.service.runtime import get_runtime

    while True:
        await asyncio.sleep(interval_seconds)
        result = await get_runtime().auth.purge_expired_reset_codes()
        if not result.ok:
            logger.warning("reset_code_cleanup_failed", error_code=result.error.code)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _cleanup_task
    from gatekeep.service.runtime import get_runtime

    runtime = get_runtime()
    interval = runtime.settings.reset_code_cleanup_interval_seconds
    if interval > 0:
        _cleanup_task = asyncio.create_task(_run_reset_code_cleanup(interval))

    yield

    if _cleanup_task:
        _cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _cleanup_task
        _cleanup_task = None
    try:
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error_type=type(exc).__name__)


app = FastAPI(title="Gatekeep", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    origins = get_settings().cors_allow_origins
    if origins:
        return origins
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    # Clients must be able to read the sliding-refresh token
    expose_headers=["X-Request-ID", NEW_TOKEN_HEADER, "Retry-After"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with ``X-Request-ID`` (client supplied or generated)."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    # Token-bearing responses must never be cached
    response.headers.setdefault("Cache-Control", "no-store")
    response.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> JSONResponse:
    """Liveness plus a bounded credential store probe."""
    from gatekeep.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    healthy = True
    try:
        if not await runtime.auth.ping(timeout=HEALTH_CHECK_TIMEOUT_SECONDS):
            raise DependencyError(
                "credential store did not answer", detail={"reason": "no_reply"}
            )
        checks["store"] = {"status": "healthy", "backend": runtime.settings.store_backend.value}
    except DependencyError as exc:
        reason = exc.detail.get("reason", "unreachable")
        logger.error("health_check_store_failed", reason=reason)
        checks["store"] = {"status": "unhealthy", "reason": reason}
        healthy = False
    checks["email"] = {
        "status": "configured" if getattr(runtime.email, "is_configured", False) else "dev_mode"
    }
    body = {
        "status": "healthy" if healthy else "unhealthy",
        "version": __version__,
        "checks": checks,
    }
    return JSONResponse(status_code=200 if healthy else 503, content=body)
