"""FastAPI application factory."""
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from datahub.api.routes import dataops
from datahub.config import get_settings
from datahub.errors import (
    AbortedByUser,
    LocalStoreError,
    OperationInFlight,
    ProviderFetchError,
    TokenExchangeFailed,
)
from datahub.hub import close_hub, get_hub
from datahub.scheduler.jobs import build_scheduler

ERROR_STATUS = [
    (OperationInFlight, 409),
    (AbortedByUser, 409),
    (TokenExchangeFailed, 502),
    (ProviderFetchError, 502),
    (LocalStoreError, 500),
    (ValueError, 400),
]


def _handler(status_code: int):
    async def handle(request: Request, exc: Exception) -> JSONResponse:
        body = {"success": False, "error": exc.__class__.__name__, "message": str(exc)}
        operation_key = getattr(exc, "operation_key", None)
        if operation_key:
            body["operation_key"] = operation_key
        return JSONResponse(status_code=status_code, content=body)
    return handle


def create_app() -> FastAPI:
    """Build and return the FastAPI app."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Single-process deployments run the scheduler alongside the API
        scheduler = None
        if get_settings().scheduler_enabled:
            scheduler = build_scheduler(get_hub())
            scheduler.start()
        yield
        if scheduler is not None:
            scheduler.shutdown()
        await close_hub()

    app = FastAPI(
        title="Data Hub API",
        description="Clio sync and reconciliation engine",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(dataops.router, prefix="/data-operations", tags=["data-operations"])
    for exc_class, status_code in ERROR_STATUS:
        app.add_exception_handler(exc_class, _handler(status_code))

    return app


# Module-level app instance for uvicorn
app = create_app()
