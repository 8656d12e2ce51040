"""
Main FastAPI application.

Marketplace order and payment API with:
- CORS configuration
- Engine error mapping
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from marketplace_payments import __version__
from marketplace_payments.config import get_settings
from marketplace_payments.core.engine import PaymentsEngine
from marketplace_payments.database.connection import close_db, init_db
from marketplace_payments.domain.errors import EngineError
from marketplace_payments.monitoring.logging import setup_logging

from .routes import (
    admin_router,
    audit_router,
    checkout_router,
    monitoring_router,
    order_router,
    seller_router,
    webhook_router,
)

logger = structlog.get_logger(__name__)


def create_app(engine: Optional[PaymentsEngine] = None) -> FastAPI:
    """
    Build the application.

    Args:
        engine: Pre-built engine (tests); built from settings at startup
            when omitted
    """
    setup_logging()
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        logger.info(
            "application_startup",
            app_name=settings.app_name,
            env=settings.app_env,
            test_mode=settings.is_test_mode,
        )
        owns_engine = engine is None
        if owns_engine:
            try:
                await init_db()
                logger.info("database_initialized")
            except Exception as e:
                logger.error("database_initialization_failed", error=str(e))
                raise
            app.state.engine = PaymentsEngine.from_settings(settings)

        yield

        logger.info("application_shutdown")
        if owns_engine:
            await app.state.engine.close()
            await close_db()
            logger.info("database_connections_closed")

    app = FastAPI(
        title="Marketplace Payments",
        description=(
            "Order and payment reconciliation engine for a multi-seller marketplace. "
            "Features: order state machine, exactly-once Stripe webhooks, "
            "seller payouts, refunds and reconciliation."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    if engine is not None:
        app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """Bind a request id into the log context and echo it back."""
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

    @app.exception_handler(EngineError)
    async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
        log = logger.error if exc.http_status >= 500 else logger.warning
        log(
            "engine_error",
            error=exc.reason_code,
            message=exc.message,
            status_code=exc.http_status,
            path=request.url.path,
        )
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions."""
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

    app.include_router(checkout_router)
    app.include_router(order_router)
    app.include_router(seller_router)
    app.include_router(webhook_router)
    app.include_router(audit_router)
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


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "marketplace_payments.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )
