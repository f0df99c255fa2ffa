"""
FastAPI application factory
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..config import EngineSettings
from ..core.service import WorkflowService
from ..exceptions import (
    ConcurrencyConflictError, DefinitionIntegrityError, DefinitionNotFoundError,
    InstanceNotFoundError, InvalidStateTransition, TokenNotFoundError, WorkflowEngineError,
    WorkflowParseError
)
from ..storage.sqlalchemy_repository import DatabaseManager, SQLAlchemyWorkflowStore
from .middleware import RequestLoggingMiddleware
from .models import HealthCheckResponse
from .routers import definitions, instances


logger = logging.getLogger(__name__)


ERROR_STATUS = [
    ((DefinitionNotFoundError, InstanceNotFoundError, TokenNotFoundError), status.HTTP_404_NOT_FOUND),
    ((InvalidStateTransition, ConcurrencyConflictError), status.HTTP_409_CONFLICT),
    ((WorkflowParseError,), status.HTTP_400_BAD_REQUEST),
    ((DefinitionIntegrityError,), status.HTTP_422_UNPROCESSABLE_ENTITY),
]


def status_for(error: WorkflowEngineError) -> int:
    """HTTP status for an engine error; evaluation, assignment and action errors are 422"""
    for error_types, status_code in ERROR_STATUS:
        if isinstance(error, error_types):
            return status_code
    return status.HTTP_422_UNPROCESSABLE_ENTITY


def create_app(service: Optional[WorkflowService] = None, settings: Optional[EngineSettings] = None) -> FastAPI:
    """Build the API around an injected service, or a SQLAlchemy-backed one from settings"""
    settings = settings or EngineSettings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if service is not None:
            app.state.service = service
            yield
            return

        logger.info("Starting process engine API...")
        store = SQLAlchemyWorkflowStore(DatabaseManager(settings.database_url))
        await store.initialize()
        app.state.service = WorkflowService(store, settings=settings)
        logger.info("Process engine API started")

        yield

        logger.info("Shutting down process engine API...")
        await store.close()

    app = FastAPI(
        title="Process Engine API",
        description="Workflow execution core",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(definitions.router, prefix="/api/v1/definitions", tags=["definitions"])
    app.include_router(instances.router, prefix="/api/v1/instances", tags=["instances"])

    @app.exception_handler(WorkflowEngineError)
    async def engine_error_handler(request: Request, exc: WorkflowEngineError):
        status_code = status_for(exc)
        if status_code >= 500:
            logger.error(f"Engine error: {exc}", exc_info=True)
        else:
            logger.info(f"Engine error [{exc.code}]: {exc}")
        return JSONResponse(
            status_code=status_code,
            content={
                "error": exc.code,
                "message": exc.message,
                "retriable": exc.retriable,
                "node_id": exc.node_id,
                "request_id": getattr(request.state, "request_id", None),
            },
        )

    @app.get("/", tags=["root"])
    async def root():
        return {
            "name": "Process Engine API",
            "version": __version__,
            "docs": "/docs",
            "health": "/health",
        }

    @app.get("/health", response_model=HealthCheckResponse, tags=["root"])
    async def health(request: Request) -> HealthCheckResponse:
        ready = getattr(request.app.state, "service", None) is not None
        return HealthCheckResponse(status="healthy" if ready else "unhealthy", version=__version__)

    return app
