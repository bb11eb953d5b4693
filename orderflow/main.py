"""
FastAPI application entry point with health endpoints and service routing.

This module provides the FastAPI application with CORS configuration,
request logging, the mapping of workflow errors to HTTP responses, health
endpoints and the v1 routers. Startup connects Redis for the progress cache;
the service keeps running without a cache if Redis is unreachable.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

from orderflow.api.v1 import orders_router, progress_router
from orderflow.cache.redis_client import RedisClient
from orderflow.core.config import get_settings
from orderflow.core.logging import (
    clear_context,
    configure_logging,
    get_logger,
    get_request_id,
    log_performance,
    set_request_id,
)
from orderflow.database.connection import (
    check_database_health,
    close_database_connections,
)
from orderflow.services.progress.errors import ProgressWorkflowError

configure_logging()
logger = get_logger(__name__)

ERROR_STATUS_CODES = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "validation": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "prerequisite": status.HTTP_409_CONFLICT,
    "conflict": status.HTTP_409_CONFLICT,
    "terminal_state": status.HTTP_409_CONFLICT,
    "storage": status.HTTP_503_SERVICE_UNAVAILABLE,
}

ERROR_TITLES = {
    "not_found": "Not Found",
    "validation": "Validation Error",
    "prerequisite": "Prerequisite Not Met",
    "conflict": "Conflict",
    "terminal_state": "Order Closed",
    "storage": "Service Unavailable",
}


async def _connect_cache(app: FastAPI) -> None:
    settings = get_settings()
    app.state.redis_client = None
    if not settings.progress_cache_enabled:
        logger.info("Progress cache disabled")
        return

    client = RedisClient()
    try:
        await client.connect()
    except RedisError as e:
        logger.warning(
            "Progress cache unavailable, continuing without cache",
            error=str(e),
        )
        return
    app.state.redis_client = client


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan: connect the cache on startup, release resources on shutdown.
    """
    settings = get_settings()

    logger.info(
        "Application starting",
        environment=settings.environment,
        debug=settings.debug,
        version=settings.app_version,
    )

    with log_performance(logger, "application_startup"):
        await _connect_cache(app)

    yield

    logger.info("Application shutting down")
    with log_performance(logger, "application_shutdown"):
        if app.state.redis_client is not None:
            await app.state.redis_client.disconnect()
        await close_database_connections()


def create_app() -> FastAPI:
    """Build the FastAPI application."""
    settings = get_settings()
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Staged order progress workflow API",
        lifespan=lifespan,
        debug=settings.debug,
    )
    app.state.redis_client = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )

    app.middleware("http")(request_logging_middleware)
    app.add_exception_handler(ProgressWorkflowError, workflow_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    app.add_api_route("/health", health_check, methods=["GET"], tags=["Health"])
    app.add_api_route("/ready", readiness_check, methods=["GET"], tags=["Health"])

    app.include_router(orders_router, prefix=settings.api_v1_prefix)
    app.include_router(progress_router, prefix=settings.api_v1_prefix)

    return app


async def request_logging_middleware(request: Request, call_next):
    """
    Middleware for request logging and correlation ID management.

    Sets request ID for correlation, logs request details, and measures
    response time. Clears context after request processing.
    """
    request_id = set_request_id(request.headers.get("X-Request-ID"))

    logger.info(
        "Request received",
        method=request.method,
        path=request.url.path,
        client_host=request.client.host if request.client else None,
    )

    try:
        with log_performance(
            logger,
            "request_processing",
            method=request.method,
            path=request.url.path,
        ):
            response = await call_next(request)

        response.headers["X-Request-ID"] = request_id

        logger.info(
            "Request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
        )
        return response
    finally:
        clear_context()


async def workflow_exception_handler(
    request: Request, exc: ProgressWorkflowError
) -> JSONResponse:
    """
    Render a workflow rejection as a discriminated error body.

    Returns:
        JSON response with ``kind`` telling input errors from workflow state errors
    """
    body = exc.to_dict()
    status_code = ERROR_STATUS_CODES.get(exc.kind, status.HTTP_400_BAD_REQUEST)

    log = logger.error if exc.retryable else logger.info
    log(
        "Workflow request rejected",
        method=request.method,
        path=request.url.path,
        kind=exc.kind,
        reason=exc.message,
        status_code=status_code,
    )

    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(
        status_code=status_code,
        content={
            "error": ERROR_TITLES.get(exc.kind, "Bad Request"),
            "kind": exc.kind,
            "message": exc.message,
            "field": body.get("field"),
            "context": body["context"],
            "request_id": get_request_id() or None,
        },
        headers=headers,
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle request validation errors with the same error body shape."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")

    logger.warning(
        "Request validation failed",
        method=request.method,
        path=request.url.path,
        error_count=len(errors),
    )

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "Validation Error",
            "kind": "validation",
            "message": first.get("msg", "Request validation failed"),
            "field": field or None,
            "context": {"errors": jsonable_encoder(errors)},
            "request_id": get_request_id() or None,
        },
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions without exposing internal details."""
    logger.error(
        "Unhandled exception",
        method=request.method,
        path=request.url.path,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal Server Error",
            "kind": "internal",
            "message": "An unexpected error occurred",
            "field": None,
            "context": {},
            "request_id": get_request_id() or None,
        },
    )


async def health_check() -> dict[str, str]:
    """Liveness check; always 200 while the process is running."""
    settings = get_settings()
    return {
        "status": "healthy",
        "service": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
    }


async def readiness_check(request: Request) -> JSONResponse:
    """Readiness check of the database and, if configured, Redis."""
    settings = get_settings()
    database_ok = await check_database_health(max_retries=1)

    redis_client = request.app.state.redis_client
    cache_status = "disabled"
    if redis_client is not None:
        cache_status = "healthy" if await redis_client.health_check() else "degraded"

    ready = database_ok
    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if ready else "not_ready",
            "service": settings.app_name,
            "database": "healthy" if database_ok else "unhealthy",
            "cache": cache_status,
        },
    )


app = create_app()
