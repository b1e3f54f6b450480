"""FastAPI application factory."""

import asyncio
import contextlib
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from firearms_compliance.api.routes import (
    checkout_router,
    config_router,
    health_router,
    orders_router,
)
from firearms_compliance.database import create_schema
from firearms_compliance.exceptions import (
    ComplianceServiceError,
    FflNotFoundError,
    OrderBusyError,
    OrderNotFoundError,
    PaymentDeclinedError,
    PaymentUnavailableError,
    PreconditionNotMet,
    ValidationError,
)
from firearms_compliance.runtime import Runtime, build_runtime
from firearms_compliance.services.state_machine import InvalidTransitionError

logger = logging.getLogger(__name__)

ERROR_STATUS: dict[type[ComplianceServiceError], int] = {
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    OrderNotFoundError: status.HTTP_404_NOT_FOUND,
    FflNotFoundError: status.HTTP_404_NOT_FOUND,
    PreconditionNotMet: status.HTTP_409_CONFLICT,
    OrderBusyError: status.HTTP_409_CONFLICT,
    PaymentDeclinedError: status.HTTP_402_PAYMENT_REQUIRED,
    PaymentUnavailableError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


async def _maintenance_loop(runtime: Runtime, interval: int) -> None:
    """Periodic recovery pass; failures are logged and the loop continues."""
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(runtime.run_recovery)
        except Exception:
            logger.exception("Maintenance pass failed")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup
    owns_runtime = getattr(app.state, "runtime", None) is None
    if owns_runtime:
        app.state.runtime = build_runtime()
    runtime: Runtime = app.state.runtime

    create_schema(runtime.engine)
    policy = runtime.config_store.bootstrap()
    logger.info(
        "Compliance policy v%s active (limit %s in %s days), gateway=%s",
        policy.version,
        policy.firearm_limit,
        policy.window_days,
        runtime.gateway.gateway_name,
    )

    maintenance: asyncio.Task[None] | None = None
    interval = runtime.settings.maintenance_interval_seconds
    if interval > 0:
        maintenance = asyncio.create_task(_maintenance_loop(runtime, interval))

    yield

    # Shutdown
    if maintenance is not None:
        maintenance.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await maintenance
    if owns_runtime:
        runtime.close()


def create_app(runtime: Runtime | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Firearms Compliance API",
        description="Checkout compliance holds and payment authorization",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(ComplianceServiceError)
    async def domain_exception_handler(
        request: Request, exc: ComplianceServiceError
    ) -> JSONResponse:
        """Map domain errors onto HTTP status codes."""
        status_code = next(
            (code for error_type, code in ERROR_STATUS.items() if isinstance(exc, error_type)),
            status.HTTP_400_BAD_REQUEST,
        )
        return JSONResponse(
            status_code=status_code,
            content={"detail": str(exc), "code": exc.code},
        )

    @app.exception_handler(InvalidTransitionError)
    async def transition_exception_handler(
        request: Request, exc: InvalidTransitionError
    ) -> JSONResponse:
        """Handle invalid order transitions."""
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"detail": str(exc), "code": "INVALID_TRANSITION"},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred",
                "code": "INTERNAL_ERROR",
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(checkout_router, prefix="/api/v1")
    app.include_router(config_router, prefix="/api/v1")
    app.include_router(orders_router, prefix="/api/v1")

    return app


# Default app instance for uvicorn
app = create_app()
