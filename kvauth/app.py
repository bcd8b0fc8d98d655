from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from kvauth.api.error_handling import register_exception_handlers
from kvauth.api.routes import router
from kvauth.logging import get_logger, set_correlation_id
from kvauth.storage.errors import BackendUnavailable

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and close its store on shutdown."""
    from kvauth.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("startup_complete", store_type=runtime.store_type)

    yield

    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except BackendUnavailable as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="KV Auth", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind a correlation ID for logging and echo it in ``X-Request-ID``.

    The ID comes from the client's ``X-Request-ID`` header when present,
    otherwise a new UUID is generated.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        # Token-bearing responses must never be cached
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


app.include_router(router)
register_exception_handlers(app)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report whether the key-value store answers."""
    from kvauth.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        await runtime.kv.get(("healthz", "probe"))
        store_ok = True
    except BackendUnavailable as exc:
        logger.warning("health_check_store_failed", error=str(exc))
        store_ok = False
    body = {
        "status": "healthy" if store_ok else "unhealthy",
        "version": __version__,
        "checks": {"store": {"type": runtime.store_type, "ok": store_ok}},
    }
    if not store_ok:
        return JSONResponse(status_code=503, content=body)
    return body
