from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from deckexc.api.error_handling import register_exception_handlers
from deckexc.api.routes import router
from deckexc.config import Settings
from deckexc.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Warm the runtime on startup and release the connection pool on shutdown."""
    from deckexc.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__)

    yield

    try:
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="DeckExc Auth", version=__version__, lifespan=lifespan)


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
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log each request and its outcome with status, caller and duration."""
    started = time.perf_counter()
    client_ip = request.client.host if request.client else None
    logger.info(
        "request_started",
        method=request.method,
        path=request.url.path,
        client_ip=client_ip,
    )
    try:
        response = await call_next(request)
    except Exception as exc:
        logger.error(
            "request_failed",
            method=request.method,
            path=request.url.path,
            error_type=type(exc).__name__,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        raise
    log_fn = logger.warning if response.status_code >= 400 else logger.info
    log_fn(
        "request_completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with X-Request-ID (client-supplied or generated).

    The ID is bound for structured logging and echoed in the response header.
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
    # Auth and payment responses must never be cached by proxies
    response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> JSONResponse:
    """Liveness plus a bounded store probe."""
    from deckexc.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    verify = getattr(runtime.store, "verify_connection", None)
    if verify is None:
        checks["database"] = {"status": "healthy", "type": "memory"}
        healthy = True
    else:
        try:
            await asyncio.wait_for(asyncio.to_thread(verify), HEALTH_CHECK_TIMEOUT_SECONDS)
            healthy = True
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
            healthy = False
        except Exception as exc:
            logger.error("health_check_database_failed", error=str(exc))
            healthy = False
        checks["database"] = {"status": "healthy" if healthy else "unhealthy"}

    body = {
        "status": "healthy" if healthy else "unhealthy",
        "version": __version__,
        "checks": checks,
    }
    return JSONResponse(status_code=200 if healthy else 503, content=body)


def create_app() -> FastAPI:
    return app
