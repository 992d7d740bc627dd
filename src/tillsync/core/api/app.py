"""
FastAPI application setup for the tillsync local API.

Lets a UI process on the same machine read the sync status, trigger passes
and resolve conflicts without embedding the engine. The app is built around
an explicitly constructed ``SyncService`` via ``create_app()``.
"""

from __future__ import annotations

import logging
import traceback
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from enum import Enum

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from tillsync import __version__
from tillsync.core.api.routes import conflicts, sync
from tillsync.core.sync.exceptions import (
    ConflictPendingError,
    EntryNotFoundError,
    InvalidTransitionError,
    SyncError,
)
from tillsync.core.sync.service import SyncService

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    """Standard error codes for API responses."""

    # Client errors (4xx)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    INVALID_REQUEST = "INVALID_REQUEST"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    CONFLICT_PENDING = "CONFLICT_PENDING"

    # Server errors (5xx)
    SYNC_ERROR = "SYNC_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorResponse(BaseModel):
    """Standard error response model."""

    error_code: ErrorCode
    message: str
    detail: str | None = None
    request_id: str | None = None


def _error(
    request: Request,
    http_status: int,
    error_code: ErrorCode,
    message: str,
    detail: str | None = None,
) -> JSONResponse:
    body = ErrorResponse(
        error_code=error_code,
        message=message,
        detail=detail if detail is not None else message,
        request_id=str(id(request)),
    )
    return JSONResponse(status_code=http_status, content=body.model_dump(mode="json"))


def create_app(
    service: SyncService,
    *,
    manage_lifecycle: bool = True,
    allowed_origins: list[str] | None = None,
) -> FastAPI:
    """
    Build the API around a service.

    Args:
        service: The sync service to expose
        manage_lifecycle: Start the service's automatic triggers on startup
            and close it on shutdown
        allowed_origins: CORS origins (defaults to local dev servers)

    Returns:
        Configured FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if manage_lifecycle:
            await service.start()
        try:
            yield
        finally:
            if manage_lifecycle:
                await service.close()

    app = FastAPI(
        title="tillsync API",
        description="Local API over the tillsync sync engine",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins
        or ["http://localhost:5173", "http://localhost:3000"],  # Vite and backend dev ports
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(sync.router, prefix="/api", tags=["sync"])
    app.include_router(conflicts.router, prefix="/api", tags=["conflicts"])

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "healthy"}

    _register_exception_handlers(app)
    return app


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(EntryNotFoundError)
    async def not_found_handler(request: Request, exc: EntryNotFoundError) -> JSONResponse:
        logger.info("Not found on %s %s: %s", request.method, request.url.path, exc)
        return _error(request, status.HTTP_404_NOT_FOUND, ErrorCode.NOT_FOUND, str(exc))

    @app.exception_handler(InvalidTransitionError)
    async def transition_handler(request: Request, exc: InvalidTransitionError) -> JSONResponse:
        logger.info("Invalid transition on %s %s: %s", request.method, request.url.path, exc)
        return _error(request, status.HTTP_409_CONFLICT, ErrorCode.INVALID_TRANSITION, str(exc))

    @app.exception_handler(ConflictPendingError)
    async def conflict_pending_handler(
        request: Request, exc: ConflictPendingError
    ) -> JSONResponse:
        return _error(request, status.HTTP_409_CONFLICT, ErrorCode.CONFLICT_PENDING, str(exc))

    @app.exception_handler(SyncError)
    async def sync_error_handler(request: Request, exc: SyncError) -> JSONResponse:
        logger.error("Sync error on %s %s: %s", request.method, request.url.path, exc)
        return _error(
            request, status.HTTP_500_INTERNAL_SERVER_ERROR, ErrorCode.SYNC_ERROR, str(exc)
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        return _error(request, status.HTTP_400_BAD_REQUEST, ErrorCode.INVALID_REQUEST, str(exc))

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        error_code = ErrorCode.INTERNAL_ERROR
        if exc.status_code == status.HTTP_404_NOT_FOUND:
            error_code = ErrorCode.NOT_FOUND
        elif exc.status_code < 500:
            error_code = ErrorCode.INVALID_REQUEST
        detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
        return _error(request, exc.status_code, error_code, detail)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        logger.warning(
            "Validation error on %s %s: %s", request.method, request.url.path, exc.errors()
        )
        first_error = exc.errors()[0] if exc.errors() else {}
        field = " -> ".join(str(loc) for loc in first_error.get("loc", []))
        error_msg = first_error.get("msg", "Invalid input")
        return _error(
            request,
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            ErrorCode.VALIDATION_ERROR,
            "Request validation failed",
            f"{field}: {error_msg}" if field else error_msg,
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "Unhandled exception on %s %s: %s\n%s",
            request.method,
            request.url.path,
            exc,
            traceback.format_exc(),
        )
        error_code = ErrorCode.INTERNAL_ERROR
        message = "An internal server error occurred"
        if "database" in str(exc).lower() or "sqlite" in str(exc).lower():
            error_code = ErrorCode.DATABASE_ERROR
            message = "Database operation failed"
        return _error(
            request, status.HTTP_500_INTERNAL_SERVER_ERROR, error_code, message, str(exc)
        )
