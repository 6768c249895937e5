from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from turnkernel.api.error_handling import error_response, register_exception_handlers
from turnkernel.api.routes import router
from turnkernel.config import get_settings
from turnkernel.logging import get_logger, set_correlation_id
from turnkernel.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and optionally check the configured stores."""
    runtime = get_runtime()
    if runtime.settings.validate_stores_on_startup:
        status = await runtime.router.validate_stores(runtime.backend)
        failed = {store_id: code for store_id, code in status.items() if code != "ok"}
        if failed:
            logger.warning("store_validation_incomplete", failed=failed)
        else:
            logger.info("store_validation_ok", stores=sorted(status))
    yield
    logger.info("runtime_shutdown")


app = FastAPI(title="Turn Kernel", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    # CORS is fixed when the app is built; the cached settings are the runtime's
    settings = get_settings()
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # Local dev hosts only; no wildcard
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "X-Request-ID",
        "X-Turn-Id",
        "X-Canon-Only",
        "X-Threads-Only",
        "X-Gold-Hunt",
    ],
    expose_headers=[
        "X-Request-ID",
        "X-Turn-Id",
        "X-Retrieval-Mode",
        "X-Retrieval-Stores",
        "X-Truth-Policy",
        "X-Search-First",
    ],
    max_age=3600,
)


@app.middleware("http")
async def enforce_body_ceiling(request, call_next):
    """Reject oversized bodies from their declared length before reading them."""
    max_bytes = get_runtime().settings.inbound_max_bytes
    declared = request.headers.get("content-length")
    if declared is not None and declared.isdigit() and int(declared) > max_bytes:
        logger.warning(
            "request_body_too_large",
            path=request.url.path,
            declared_bytes=int(declared),
            max_bytes=max_bytes,
        )
        return error_response(
            413,
            "request body too large",
            {"max_bytes": max_bytes, "got_bytes": int(declared)},
            code="payload_too_large",
        )
    return await call_next(request)


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Take the correlation id from X-Request-ID or mint one, and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    runtime = get_runtime()
    return {
        "status": "healthy",
        "version": __version__,
        "environment": runtime.settings.environment.value,
        "repository": type(runtime.repository).__name__,
        "retrieval_backend": runtime.settings.retrieval_backend.value,
        "stores": runtime.router.configured_store_ids(),
        "model_client": type(runtime.model).__name__,
    }
