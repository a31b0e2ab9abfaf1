"""CloudPulse cost engine service entry point.

The embedding application builds a CostEngineRuntime (database, Redis and
its collaborator implementations) and hands it to create_app. The app
starts the scheduler on startup and drains it on shutdown.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from cloudpulse_engine.api.router import router
from cloudpulse_engine.api.schemas import HealthResponse
from cloudpulse_engine.errors import (
    CloudPulseError,
    CredentialError,
    NotFoundError,
    ProviderFetchError,
    UnsupportedProviderError,
    ValidationError,
)
from cloudpulse_engine.observability import configure_logging
from cloudpulse_engine.runtime import CostEngineRuntime

logger = structlog.get_logger(__name__)

_STATUS_BY_ERROR: tuple[tuple[type[CloudPulseError], int], ...] = (
    (NotFoundError, 404),
    (ValidationError, 422),
    (CredentialError, 409),
    (UnsupportedProviderError, 409),
    (ProviderFetchError, 502),
)


def status_for(exc: CloudPulseError) -> int:
    """HTTP status code for an engine error; unmapped errors are 500."""
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


async def _handle_cloudpulse_error(request: Request, exc: CloudPulseError) -> JSONResponse:
    status_code = status_for(exc)
    log = logger.warning if status_code < 500 else logger.error
    log(
        "request_failed",
        path=request.url.path,
        status_code=status_code,
        error_code=exc.code.value,
        error=exc.message,
    )
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def create_app(runtime: CostEngineRuntime) -> FastAPI:
    """Build the FastAPI application around an already-wired runtime."""
    settings = runtime.settings
    configure_logging(level=settings.log_level, json_output=settings.log_json)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Manage application startup and shutdown lifecycle."""
        logger.info(
            "cloudpulse-engine starting",
            service=settings.service_name,
            environment=settings.environment,
            scheduler_enabled=settings.scheduler_enabled,
        )
        await runtime.start()
        yield
        logger.info("cloudpulse-engine shutting down")
        await runtime.close()

    app = FastAPI(title="cloudpulse-engine", version="0.1.0", lifespan=lifespan)
    app.state.runtime = runtime
    app.add_exception_handler(CloudPulseError, _handle_cloudpulse_error)

    @app.get("/health", response_model=HealthResponse, tags=["health"])
    async def health() -> HealthResponse:
        scheduler = runtime.scheduler
        return HealthResponse(
            service=settings.service_name,
            scheduler_backend=scheduler.name if scheduler is not None else None,
        )

    app.include_router(router, prefix="/api/v1")
    return app
