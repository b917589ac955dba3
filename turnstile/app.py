from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from turnstile.api.error_handling import error_response, register_exception_handlers
from turnstile.api.routes import router
from turnstile.config import Settings
from turnstile.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its clients on shutdown."""
    from turnstile.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", port=runtime.settings.port)

    yield

    try:
        runtime = get_runtime()
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Turnstile", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def enforce_rate_limit(request: Request, call_next):
    """Fixed-window limit per client address; preflight requests are not counted."""
    if request.method == "OPTIONS":
        return await call_next(request)
    from turnstile.service.runtime import get_runtime

    client_id = request.client.host if request.client else "unknown"
    if not get_runtime().rate_limiter.allow(client_id):
        logger.warning("rate_limit_exceeded", client=client_id, path=request.url.path)
        return error_response(429, "too many requests", code="rate_limited")
    return await call_next(request)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with an X-Request-ID for log correlation.

    A client-supplied id is reused; otherwise a new UUID is generated. The id is
    bound into the structlog context and echoed in the response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


# Added last so it wraps the rate limiter and 429s still carry CORS headers
app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


register_exception_handlers(app)
app.include_router(router)


def create_app() -> FastAPI:
    return app
