from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from hackguard.api.error_handling import register_exception_handlers
from hackguard.api.routes import CSRF_HEADER, router
from hackguard.config import Settings
from hackguard.logging import get_logger, set_correlation_id
from hackguard.storage.models import to_epoch_ms, utcnow

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

_cleanup_task: asyncio.Task | None = None


async def _run_security_cleanup(cache, interval_seconds: int) -> None:
    """Background loop evicting expired rate-limit, lockout and CSRF records.

    Expired records also correct themselves on next access; the sweep only
    bounds memory.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await cache.cleanup_expired(to_epoch_ms(utcnow()))
        except Exception as exc:
            logger.warning("security_cleanup_failed", error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup, tear it down on shutdown.

    A ``ConfigurationError`` (missing secret in production) escapes and aborts
    startup.
    """
    global _cleanup_task
    from hackguard.service.runtime import get_runtime

    runtime = get_runtime()
    _cleanup_task = asyncio.create_task(
        _run_security_cleanup(runtime.cache, runtime.settings.cleanup_interval_seconds)
    )

    yield

    try:
        if _cleanup_task:
            _cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _cleanup_task
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="hackguard", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Default to common local dev hosts; avoid wildcard when credentials are enabled.
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
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", CSRF_HEADER, "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with its correlation ID.

    Taken from the client's ``X-Request-ID`` when present, otherwise
    generated, and echoed back in the response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault(
            "Cache-Control", "no-store, no-cache, must-revalidate, private"
        )
    response.headers.setdefault(
        "Permissions-Policy", "camera=(), microphone=(), geolocation=(), payment=()"
    )
    if _settings.is_production:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    response.headers.setdefault(
        "Content-Security-Policy",
        "default-src 'self'; frame-ancestors 'none'; base-uri 'self'; form-action 'self'",
    )
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from hackguard.service.runtime import get_runtime

    runtime = get_runtime()
    return {
        "status": "ok",
        "version": __version__,
        "store": type(runtime.store).__name__,
        "cache": type(runtime.cache).__name__,
    }
