"""
Main FastAPI application.
"""
import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from cat_engine.api.v1.api import api_router
from cat_engine.core.cat.exposure_store import ExposureStore, create_exposure_store
from cat_engine.core.config import settings
from cat_engine.core.error_responses import ErrorMessages
from cat_engine.core.errors import InvalidConfiguration, InvalidStateTransition
from cat_engine.core.exam_registry import ExamRegistry
from cat_engine.core.logging_config import request_id_context, setup_logging

# Initialize logging configuration at startup
setup_logging()

logger = logging.getLogger(__name__)


def _create_exposure_store() -> ExposureStore:
    """Build the exposure store selected by CAT_EXPOSURE_STORE."""
    store = create_exposure_store(
        backend=settings.EXPOSURE_STORE,
        redis_url=settings.EXPOSURE_REDIS_URL,
        key_prefix=settings.EXPOSURE_KEY_PREFIX,
        max_retries=settings.EXPOSURE_MAX_RETRIES,
    )
    logger.info(f"Using {settings.EXPOSURE_STORE} exposure store")
    return store


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan event handler.

    - On startup: loads exam definitions from CAT_EXAM_DEFINITIONS_PATH
    - On shutdown: closes the exposure store's connection pool, if any
    """
    registry: ExamRegistry = app.state.registry
    if settings.EXAM_DEFINITIONS_PATH:
        registry.load_file(settings.EXAM_DEFINITIONS_PATH)

    yield

    store = registry.exposure_store
    if hasattr(store, "close"):
        store.close()
        logger.info("Closed exposure store connection pool")


# OpenAPI tags metadata
tags_metadata = [
    {
        "name": "health",
        "description": "Health check endpoints for monitoring application status",
    },
    {
        "name": "attempts",
        "description": "Stateless adaptive attempt lifecycle: start, next item, "
        "responses, termination and scoring",
    },
]


def create_application(registry: Optional[ExamRegistry] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        registry: Exam registry to serve. A new one backed by the configured
            exposure store is created if omitted.
    """
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        lifespan=lifespan,
        description=(
            "Computer Adaptive Testing engine.\n\n"
            "Clients hold the attempt state and send it back on every call; "
            "the service keeps no per-attempt state."
        ),
        openapi_tags=tags_metadata,
    )
    app.state.registry = registry or ExamRegistry(_create_exposure_store())

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Bind a request id to the logging context for the request's lifetime."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        token = request_id_context.set(request_id)
        try:
            response = await call_next(request)
        finally:
            request_id_context.reset(token)
        response.headers["X-Request-ID"] = request_id
        return response

    app.include_router(api_router, prefix=settings.API_V1_PREFIX)

    @app.exception_handler(InvalidStateTransition)
    async def invalid_transition_handler(
        request: Request, exc: InvalidStateTransition
    ):
        logger.info(f"Rejected transition on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"detail": ErrorMessages.invalid_transition(exc.message)},
        )

    @app.exception_handler(InvalidConfiguration)
    async def invalid_configuration_handler(
        request: Request, exc: InvalidConfiguration
    ):
        logger.warning(f"Invalid configuration on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "detail": ErrorMessages.INVALID_EXAM_CONFIGURATION,
                "reason": exc.message,
            },
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """
        Handle unexpected exceptions.

        Generates a unique error_id for each exception so that a response can
        be traced to the logged stack trace.
        """
        error_id = str(uuid.uuid4())
        logger.exception(
            f"Unhandled exception [error_id={error_id}]: {exc}",
            extra={"error_id": error_id},
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "Internal server error",
                "error_id": error_id,
            },
        )

    return app


app = create_application()
