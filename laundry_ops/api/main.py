"""
Main FastAPI application.

Laundry operations API with:
- CORS configuration
- Domain error to status code mapping
- Request ID tracking
- Structured logging
- Background payment sync and notification delivery
"""
import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, List, Optional, Tuple, Type

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from laundry_ops.config import get_settings
from laundry_ops.database.connection import close_db, init_db
from laundry_ops.exceptions import (
    ConsistencyError,
    LaundryOpsError,
    NotFoundError,
    NotPermittedError,
    ValidationError,
)
from laundry_ops.integrations.tap_client import GatewayError
from laundry_ops.integrations.webhook_handler import WebhookError
from laundry_ops.monitoring.logging import setup_logging
from laundry_ops.services import ServiceContainer, build_services

from .routes import (
    admin_router,
    monitoring_router,
    order_router,
    payment_router,
    wallet_router,
    webhook_router,
)

logger = structlog.get_logger(__name__)

# First match wins; subclasses come before their bases.
ERROR_STATUS_CODES: List[Tuple[Type[LaundryOpsError], int]] = [
    (WebhookError, status.HTTP_401_UNAUTHORIZED),
    (NotPermittedError, status.HTTP_403_FORBIDDEN),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConsistencyError, status.HTTP_409_CONFLICT),
    (GatewayError, status.HTTP_502_BAD_GATEWAY),
]


def status_code_for(exc: LaundryOpsError) -> int:
    if isinstance(exc, GatewayError) and exc.circuit_open:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Initializes the database, builds the services and runs the payment sync
    scheduler and outbox publisher as background tasks.
    """
    settings = get_settings()
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        test_mode=settings.is_test_mode,
    )

    try:
        await init_db()
        logger.info("database_initialized")
    except Exception as e:
        logger.error("database_initialization_failed", error=str(e))
        raise

    services = build_services(settings)
    app.state.services = services

    tasks = []
    if settings.payment_sync_enabled:
        tasks.append(asyncio.create_task(services.scheduler.start()))
    if settings.outbox_enabled:
        tasks.append(asyncio.create_task(services.outbox_publisher.start()))

    yield

    logger.info("application_shutdown")
    await services.aclose()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
    try:
        await close_db()
        logger.info("database_connections_closed")
    except Exception as e:
        logger.error("database_shutdown_error", error=str(e))


def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        container: Prebuilt services; when given, no lifespan runs (tests)

    Returns:
        FastAPI: Configured application
    """
    settings = get_settings()
    app = FastAPI(
        title="Laundry Operations API",
        description=(
            "Order tracking, wallet ledger and Tap payment reconciliation for a "
            "laundry service."
        ),
        version="1.0.0",
        lifespan=None if container is not None else lifespan,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
        openapi_url=None if settings.is_production else "/openapi.json",
    )
    if container is not None:
        app.state.services = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """Tag every request with an id and log its timing."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.time()

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        logger.info(
            "request_started",
            client_host=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=time.time() - start_time,
            )
            return response
        except Exception as e:
            logger.error(
                "request_failed",
                error=str(e),
                duration_seconds=time.time() - start_time,
            )
            raise
        finally:
            structlog.contextvars.clear_contextvars()

    @app.exception_handler(LaundryOpsError)
    async def domain_exception_handler(request: Request, exc: LaundryOpsError) -> JSONResponse:
        status_code = status_code_for(exc)
        log = logger.error if status_code >= 500 else logger.warning
        log(
            "request_rejected",
            error=exc.message,
            error_type=type(exc).__name__,
            status_code=status_code,
            path=request.url.path,
        )
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": {
                    "code": "internal_error",
                    "message": "An unexpected error occurred. Please try again later.",
                    "type": "InternalServerError",
                }
            },
        )

    app.include_router(order_router)
    app.include_router(payment_router)
    app.include_router(wallet_router)
    app.include_router(admin_router)
    app.include_router(webhook_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        return {
            "service": settings.app_name,
            "version": "1.0.0",
            "status": "operational",
            "environment": settings.app_env,
            "test_mode": settings.is_test_mode,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


def main() -> None:
    import uvicorn

    setup_logging()
    settings = get_settings()
    uvicorn.run(
        "laundry_ops.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
