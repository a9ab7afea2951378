"""FastAPI application factory for the grant event pipeline service."""

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import settings
from src.database.engine import engine
from src.database.session import get_session_factory
from src.exceptions import AppException

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Optionally run the event pipeline in-process; dispose the engine on shutdown."""
    pipeline = None
    if settings.event_workers_in_app:
        from src.worker import EventPipeline

        pipeline = EventPipeline.from_settings()
        pipeline.start()
    app.state.pipeline = pipeline
    try:
        yield
    finally:
        if pipeline is not None:
            await pipeline.stop()
        await engine.dispose()


def _get_request_id(request: Request) -> str:
    return request.headers.get("X-Request-ID", "unknown")


def _error_response(status_code: int, code: str, message: str, request_id: str, details: list | None = None) -> JSONResponse:
    """Build a structured error JSONResponse."""
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "code": code,
                "message": message,
                "details": details or [],
                "requestId": request_id,
            }
        },
    )


def create_app() -> FastAPI:
    """Build and configure the FastAPI application."""
    application = FastAPI(
        title="Grant Event Pipeline",
        description="Durable event queue, handler dispatch and event log projections.",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/internal/docs" if settings.environment == "development" else None,
        redoc_url=None,
        openapi_url="/internal/openapi.json" if settings.environment == "development" else None,
    )

    # --- Routers ---
    from src.api.internal import internal_router

    application.include_router(internal_router)

    # --- Exception Handlers ---

    @application.exception_handler(AppException)
    async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
        return _error_response(
            status_code=exc.status_code,
            code=exc.code,
            message=exc.message,
            request_id=_get_request_id(request),
            details=exc.details,
        )

    @application.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        details = [
            {"field": ".".join(str(loc) for loc in err.get("loc", [])), "message": err.get("msg", "")}
            for err in exc.errors()
        ]
        return _error_response(
            status_code=422,
            code="VALIDATION_ERROR",
            message="Validation failed",
            request_id=_get_request_id(request),
            details=details,
        )

    @application.exception_handler(Exception)
    async def generic_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.exception("Unhandled exception: %s", exc)
        return _error_response(
            status_code=500,
            code="INTERNAL_ERROR",
            message="An unexpected error occurred.",
            request_id=_get_request_id(request),
        )

    # Health checks
    @application.get("/health")
    async def health_check() -> dict:
        return {"status": "ok"}

    @application.get("/internal/isalive")
    async def is_alive(request: Request) -> JSONResponse:
        pipeline = getattr(request.app.state, "pipeline", None)
        if pipeline is not None and not pipeline.running:
            return JSONResponse(status_code=503, content={"status": "pipeline stopped"})
        return JSONResponse(content={"status": "alive"})

    @application.get("/internal/isready")
    async def is_ready(
        session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    ) -> JSONResponse:
        try:
            async with session_factory() as session:
                await session.execute(text("SELECT 1"))
        except Exception:
            logger.warning("Readiness check failed", exc_info=True)
            return JSONResponse(status_code=503, content={"status": "database unavailable"})
        return JSONResponse(content={"status": "ready"})

    return application


app = create_app()
