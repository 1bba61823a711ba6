"""FastAPI application factory.

Learn: App factory pattern — create_app() returns a configured FastAPI
instance. Lifespan manages startup/shutdown (logging, Redis, database).
Middleware, CORS, exception handlers and routers all registered here.

Every expected failure in the auth core is an AuthError carrying its own
status code. One handler renders them all as {"message", "error"}; anything
else is logged and becomes a bare 500 so internals never reach the client.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from latchkey import __version__
from latchkey.api import api_router
from latchkey.config import settings
from latchkey.errors import AuthError
from latchkey.logging_config import configure_logging

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle.

    Learn: FastAPI lifespan replaces on_event("startup") / on_event("shutdown").
    Anything before `yield` runs at startup, after `yield` runs at shutdown.
    """
    configure_logging(
        level="DEBUG" if settings.debug else "INFO",
        json_logs=settings.log_json,
    )
    logger.info(
        "latchkey.starting",
        version=__version__,
        environment=settings.environment,
        rp_id=settings.webauthn_rp_id,
        port=settings.port,
    )

    from latchkey.cache import close_redis, init_redis
    try:
        await init_redis()
        logger.info("latchkey.redis_connected", url=settings.redis_url)
    except Exception as e:
        logger.warning("latchkey.redis_unavailable", error=str(e))
        # Redis is optional, only rate limiting needs it

    yield

    logger.info("latchkey.shutdown")
    await close_redis()

    from latchkey.db.engine import engine
    await engine.dispose()


async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    content = {"message": exc.message}
    if exc.error_code:
        content["error"] = exc.error_code
    return JSONResponse(status_code=exc.status_code, content=content)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "request.unhandled_error",
        origin=f"{request.method} {request.url.path}",
        error=str(exc),
        exc_info=exc,
    )
    return JSONResponse(status_code=500, content={"message": "Internal server error"})


def create_app() -> FastAPI:
    """Build and return the FastAPI application."""
    app = FastAPI(
        title="Latchkey",
        description="Passwordless authentication — passkeys, email verification and Sign in with Apple",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_exception_handler(AuthError, auth_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    # ── Middleware stack ──────────────────────────────────────
    # Note: Starlette middleware executes in reverse order of registration.
    # Request flow: CORS → RateLimit → Security → RequestId → handler

    from latchkey.middleware.rate_limit import RateLimitMiddleware
    from latchkey.middleware.request_id import RequestIdMiddleware
    from latchkey.middleware.security import SecurityHeadersMiddleware

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        RateLimitMiddleware,
        default_rpm=settings.rate_limit_rpm,
        auth_rpm=settings.rate_limit_auth_rpm,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router)

    return app


# Default app instance (used by uvicorn: latchkey.main:app)
app = create_app()
