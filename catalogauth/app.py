from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from catalogauth.api.error_handling import register_exception_handlers
from catalogauth.api.routes import router
from catalogauth.config import get_settings
from catalogauth.logging import get_logger, set_correlation_id
from catalogauth.service.errors import ServiceError
from catalogauth.storage.errors import StoreUnavailable

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

_cleanup_task: asyncio.Task | None = None


async def _run_credential_cleanup(interval_seconds: int) -> None:
    """Background loop pruning expired refresh tokens and dead API keys.

    Nothing depends on this running; a failed sweep is logged and retried on
    the next tick.
    """
    from catalogauth.service.runtime import get_runtime

    try:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                # the sweep itself runs on a worker thread
                await get_runtime().auth.cleanup_expired()
            except ServiceError as exc:
                logger.warning("credential_cleanup_failed", error=exc.message)
    except asyncio.CancelledError:
        logger.info("credential_cleanup_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _cleanup_task
    from catalogauth.service.runtime import get_runtime

    runtime = get_runtime()
    interval = runtime.settings.cleanup_interval_seconds
    if interval > 0 and not runtime.settings.test_mode:
        _cleanup_task = asyncio.create_task(_run_credential_cleanup(interval))
        logger.info("credential_cleanup_scheduled", interval_seconds=interval)

    yield

    if _cleanup_task:
        _cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _cleanup_task
        _cleanup_task = None
    runtime.close()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="Catalog Auth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    settings = get_settings()
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    # bearer tokens travel in headers, never in cookies
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-API-Key", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with ``X-Request-ID`` (client-supplied or generated).

    The id is bound into every log line for the request and echoed back in
    the response header and the envelope's ``request_id``.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    # token responses must never be cached by intermediaries
    if request.url.path.startswith("/auth/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health():
    from catalogauth.service.runtime import get_runtime

    runtime = get_runtime()
    store_type = "memory" if runtime.settings.use_memory_store else "postgres"
    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.store.ping), HEALTH_CHECK_TIMEOUT_SECONDS
        )
        store_ok = True
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="store")
        store_ok = False
    except StoreUnavailable as exc:
        logger.error("health_check_store_failed", error=exc.message)
        store_ok = False

    body: Dict[str, Any] = {
        "status": "healthy" if store_ok else "unhealthy",
        "checks": {
            "store": {"status": "healthy" if store_ok else "unhealthy", "type": store_type}
        },
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(status_code=200 if store_ok else 503, content=body)


def create_app() -> FastAPI:
    return app
