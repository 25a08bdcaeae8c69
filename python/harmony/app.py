"""FastAPI application creation and configuration.

Registers exception handlers and routes. The request-id middleware is added
separately by add_request_id_middleware() so it can be registered last and
therefore run first (Starlette runs middleware in reverse order).

Redis Client Lifecycle:
- Built at startup from REDIS_URL and stored in app.state.redis_client
- None when Redis is unset or unreachable; the wake signal is best-effort
- Closed at shutdown
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from harmony.api.routes import create_api_router
from harmony.config import get_settings
from harmony.errors import ApiError
from harmony.logging import configure_logging, get_logger
from harmony.middleware.request_id import RequestIDMiddleware
from harmony.redis_client import close_redis_client, create_redis_client
from harmony.responses import (
    api_error_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)

configure_logging()

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    app.state.redis_client = create_redis_client(settings.redis_url)

    yield

    close_redis_client(app.state.redis_client)
    app.state.redis_client = None
    logger.info("app_shutdown")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Harmony API",
        description="Complaint rewrite pipeline API",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.redis_client = None

    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(create_api_router())

    return app


def add_request_id_middleware(app: FastAPI, log_requests: bool = True) -> None:
    """Add request-id middleware. Call after every other middleware is added."""
    app.add_middleware(RequestIDMiddleware, log_requests=log_requests)
    logger.info("request_id_middleware_enabled")
