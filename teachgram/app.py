from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from teachgram.api.error_handling import register_exception_handlers
from teachgram.api.routes import router
from teachgram.config import get_settings
from teachgram.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

_settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    from teachgram.service.runtime import get_runtime

    try:
        get_runtime()
    except Exception as exc:
        logger.error("startup_runtime_failed", error=str(exc))
        raise

    yield

    try:
        get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Teachgram Auth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    configured = _settings.allowed_origins()
    if configured:
        return configured
    # local dev hosts; no wildcard while credentials are allowed
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
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with a correlation id for structured logs.

    A client supplied ``X-Request-ID`` is reused, otherwise a UUID is minted.
    The id is echoed back in the ``X-Request-ID`` response header.
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
    if request.url.path.startswith("/api/") or request.url.path == "/healthz":
        response.headers.setdefault(
            "Cache-Control", "no-store, no-cache, must-revalidate, private"
        )
    response.headers.setdefault("API-Version", __version__)
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health():
    """Report store connectivity and build version."""
    from teachgram.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}
    try:
        runtime = get_runtime()
        healthy = runtime.store.ping()
        checks["store"] = {
            "status": "healthy" if healthy else "unhealthy",
            "type": "memory" if runtime.settings.use_memory_store else "postgres",
        }
    except Exception as exc:
        logger.error("health_check_failed", error=str(exc))
        healthy = False
        checks["store"] = {"status": "unhealthy", "error": type(exc).__name__}

    body = {
        "status": "healthy" if healthy else "unhealthy",
        "version": __version__,
        "checks": checks,
    }
    return JSONResponse(status_code=200 if healthy else 503, content=body)
