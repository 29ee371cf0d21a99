"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from bonus_engine import __version__
from bonus_engine.api.routes import configs_router, health_router, results_router, runs_router
from bonus_engine.calculators.validation import ConfigurationError
from bonus_engine.database import create_schema, dispose_db, init_db
from bonus_engine.services.locking_service import RunConflictError
from bonus_engine.services.run_service import (
    RunCancelledError,
    RunFailedError,
    RunNotFoundError,
    RunValidationError,
)
from bonus_engine.services.review_service import ResultNotFoundError
from bonus_engine.services.state_machine import StateConflictError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    init_db()
    await create_schema()
    yield
    await dispose_db()


def _error(status_code: int, code: str, detail: str, **extra) -> JSONResponse:
    content = {"detail": detail, "code": code}
    content.update({k: v for k, v in extra.items() if v is not None})
    return JSONResponse(status_code=status_code, content=content)


def register_exception_handlers(app: FastAPI) -> None:
    """Map domain errors to structured HTTP responses."""

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
        return _error(
            status.HTTP_422_UNPROCESSABLE_ENTITY, "INVALID_CONFIGURATION", str(exc), errors=exc.errors
        )

    @app.exception_handler(RunValidationError)
    async def run_validation_handler(request: Request, exc: RunValidationError) -> JSONResponse:
        return _error(
            status.HTTP_422_UNPROCESSABLE_ENTITY, "INVALID_RUN_REQUEST", str(exc), errors=exc.errors
        )

    @app.exception_handler(RunConflictError)
    async def run_conflict_handler(request: Request, exc: RunConflictError) -> JSONResponse:
        return _error(status.HTTP_409_CONFLICT, "RUN_IN_FLIGHT", str(exc))

    @app.exception_handler(RunCancelledError)
    async def run_cancelled_handler(request: Request, exc: RunCancelledError) -> JSONResponse:
        return _error(status.HTTP_409_CONFLICT, "RUN_CANCELLED", str(exc))

    @app.exception_handler(RunFailedError)
    async def run_failed_handler(request: Request, exc: RunFailedError) -> JSONResponse:
        return _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR, "RUN_FAILED", str(exc), errors=exc.reasons
        )

    @app.exception_handler(StateConflictError)
    async def state_conflict_handler(request: Request, exc: StateConflictError) -> JSONResponse:
        return _error(
            status.HTTP_409_CONFLICT,
            "STATE_CONFLICT",
            str(exc),
            current=exc.current,
            requested=exc.requested,
        )

    async def not_found_handler(request: Request, exc: LookupError) -> JSONResponse:
        return _error(status.HTTP_404_NOT_FOUND, "NOT_FOUND", str(exc))

    app.add_exception_handler(ResultNotFoundError, not_found_handler)
    app.add_exception_handler(RunNotFoundError, not_found_handler)

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR, "INTERNAL_ERROR", "An unexpected error occurred"
        )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Bonus Engine API",
        description="Bonus computation, allocation and review",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    app.include_router(health_router)
    app.include_router(configs_router, prefix="/api/v1")
    app.include_router(runs_router, prefix="/api/v1")
    app.include_router(results_router, prefix="/api/v1")

    return app


# Default app instance for uvicorn
app = create_app()
