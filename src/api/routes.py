"""FastAPI application for the study planner automation layer.

This module provides:
- Application factory with service wiring and lifespan management
- Automation endpoints (task generation, webhook dispatch, key gateway)
- Health check endpoint
- Error handling that renders every failure as ``{"error": ...}``
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.api.dependencies import Services
from src.api.functions import router as functions_router
from src.config import Settings
from src.errors import StudyPlannerError
from src.observability.logging import setup_logging
from src.storage.store import PlannerStore

logger = structlog.get_logger(__name__)

API_DESCRIPTION = """
Background automation for the study planner.

* **Daily scheduler** derives each user's revision tasks from due questions
  and scheduled recordings. Safe to run more than once a day.
* **Webhooks** deliver signed domain events (`X-Lovable-Signature:
  sha256=<hex>`) to user-registered endpoints with retries.
* **Read-only key gateway** lets automation clients holding a `jee_` API key
  call a fixed set of query functions.
"""


def create_app(
    settings: Settings | None = None,
    *,
    services: Services | None = None,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Application settings (loaded from the environment if omitted).
        services: Pre-built services; when omitted they are created on startup
            around a store opened at ``settings.DATABASE_PATH``.
        cors_origins: Allowed CORS origins.

    Returns:
        Configured FastAPI application.
    """
    settings = settings or (services.settings if services else Settings.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Open the store on startup and close it on shutdown."""
        setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)
        owned_store: PlannerStore | None = None
        if getattr(app.state, "services", None) is None:
            owned_store = PlannerStore(settings.DATABASE_PATH)
            await owned_store.initialize()
            app.state.services = Services.build(settings, owned_store)
        logger.info("application_started", database=settings.DATABASE_PATH)
        try:
            yield
        finally:
            if owned_store is not None:
                await owned_store.close()
                app.state.services = None
            logger.info("application_stopped")

    app = FastAPI(
        title="Study Planner Automation API",
        version="1.0.0",
        description=API_DESCRIPTION,
        lifespan=lifespan,
        debug=settings.DEBUG,
    )
    app.state.services = services

    origins = cors_origins or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StudyPlannerError)
    async def planner_error_handler(
        request: Request, exc: StudyPlannerError  # noqa: ARG001
    ) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("request_failed", **exc.to_dict())
        return JSONResponse(status_code=exc.status_code, content=exc.to_response())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError  # noqa: ARG001
    ) -> JSONResponse:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = first.get("msg", "Invalid request")
        return JSONResponse(
            status_code=400,
            content={"error": f"{location}: {message}" if location else message},
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(
        request: Request, exc: HTTPException  # noqa: ARG001
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail if isinstance(exc.detail, str) else str(exc.detail)},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception  # noqa: ARG001
    ) -> JSONResponse:
        logger.error("unhandled_exception", error=str(exc), exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": str(exc) if app.debug else "Internal server error"},
        )

    register_routes(app)

    return app


def register_routes(app: FastAPI) -> None:
    """Register all routes on the application.

    Args:
        app: FastAPI application.
    """
    app.include_router(functions_router)

    @app.get("/health", tags=["Health"])
    async def health() -> dict[str, Any]:
        """Basic liveness check."""
        return {"status": "ok", "timestamp": datetime.now(UTC).isoformat()}


# Default application instance for ``uvicorn src.api.routes:app``
app = create_app()
