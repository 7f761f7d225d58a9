from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI

from admingate.api.error_handling import register_exception_handlers
from admingate.api.routes import router
from admingate.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the expiry sweeper on startup; stop it and release connections on shutdown."""
    from admingate.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        if runtime.settings.sweeper_enabled:
            await runtime.sweeper.start()
    except Exception as exc:
        logger.error("startup_session_sweeper_failed", error=str(exc))

    yield

    try:
        runtime = get_runtime()
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="admingate", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Propagate X-Request-ID (or a fresh UUID) into the logging context and response."""
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
    response.headers.setdefault("X-XSS-Protection", "1; mode=block")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/admin"):
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from admingate.service.runtime import get_runtime

    runtime = get_runtime()
    return {
        "status": "healthy",
        "store": "memory" if runtime.settings.use_memory_store else "postgres",
        "redis": "enabled" if runtime.cache is not None else "fallback",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
