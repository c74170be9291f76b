"""
Main FastAPI application.

Session-authenticated commerce API with:
- CORS configuration
- Error mapping from the commerce error taxonomy
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional, Type

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from commerce import __version__
from commerce.config import Settings, get_settings
from commerce.core import errors
from commerce.monitoring.logging import setup_logging
from commerce.monitoring.metrics import metrics

from .dependencies import CommerceServices, build_services
from .routes import admin_router, monitoring_router, order_router, payment_router, user_router
from .schemas import ErrorResponse

logger = structlog.get_logger(__name__)

ERROR_STATUS: Dict[Type[errors.CommerceError], int] = {
    errors.Unauthenticated: status.HTTP_401_UNAUTHORIZED,
    errors.InvalidCredentials: status.HTTP_401_UNAUTHORIZED,
    errors.Unauthorized: status.HTTP_403_FORBIDDEN,
    errors.EmptyOrder: status.HTTP_422_UNPROCESSABLE_ENTITY,
    errors.InvalidQuantity: status.HTTP_422_UNPROCESSABLE_ENTITY,
    errors.OrderNotFound: status.HTTP_404_NOT_FOUND,
    errors.UnknownIntent: status.HTTP_404_NOT_FOUND,
    errors.InvalidTransition: status.HTTP_409_CONFLICT,
    errors.OrderNotPayable: status.HTTP_409_CONFLICT,
    errors.ConflictingIntent: status.HTTP_409_CONFLICT,
    errors.ReconciliationConflict: status.HTTP_409_CONFLICT,
    errors.StorageConflict: status.HTTP_409_CONFLICT,
    errors.InvalidWebhookSignature: status.HTTP_400_BAD_REQUEST,
    errors.PaymentProviderError: status.HTTP_502_BAD_GATEWAY,
}


def status_for(exc: errors.CommerceError) -> int:
    for error_type in type(exc).__mro__:
        if error_type in ERROR_STATUS:
            return ERROR_STATUS[error_type]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[CommerceServices] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Application settings (defaults to the environment)
        services: Prebuilt service graph; when omitted it is built on startup
            and closed on shutdown

    Returns:
        FastAPI: Configured application
    """
    if settings is None:
        settings = services.settings if services is not None else get_settings()

    # Setup logging first
    setup_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        """
        Application lifespan manager.

        Handles startup and shutdown events.
        """
        logger.info(
            "application_startup",
            app_name=settings.app_name,
            env=settings.app_env,
            test_mode=settings.is_test_mode,
        )

        owned = services is None
        if owned:
            try:
                app.state.services = await build_services(settings)
                logger.info("services_initialized")
            except Exception as e:
                logger.error("services_initialization_failed", error=str(e))
                raise

        yield

        logger.info("application_shutdown")
        if owned:
            await app.state.services.close()
            logger.info("services_closed")

    app = FastAPI(
        title="Commerce Backend",
        description=(
            "Session-authenticated commerce API: idempotent order creation, "
            "Stripe payment intents and webhook reconciliation."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    if services is not None:
        app.state.services = services

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """
        Add request ID to all requests for tracing.

        Also adds timing information and structured logging context.
        """
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.time()

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            duration = time.time() - start_time
            metrics.record_http_request(request.method, response.status_code, duration)
            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=duration,
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

    @app.exception_handler(errors.CommerceError)
    async def commerce_error_handler(request: Request, exc: errors.CommerceError) -> JSONResponse:
        status_code = status_for(exc)
        log = logger.error if status_code >= 500 else logger.info
        log(
            "request_rejected",
            error=exc.code,
            message=str(exc),
            status_code=status_code,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=status_code,
            content=ErrorResponse(error=exc.code, message=str(exc)).model_dump(),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled exceptions.
        """
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "internal_error",
                "message": "An unexpected error occurred. Please try again later.",
            },
        )

    # Include routers
    app.include_router(user_router)
    app.include_router(order_router)
    app.include_router(payment_router)
    app.include_router(admin_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": __version__,
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

    settings = get_settings()
    uvicorn.run(
        "commerce.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
