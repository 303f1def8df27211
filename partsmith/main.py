from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from partsmith.modules.partitioning.api.v1.partitions import router as partitions_router
from partsmith.shared.core.config import get_settings
from partsmith.shared.core.exceptions import PartsmithException
from partsmith.shared.core.logging import setup_logging
from partsmith.shared.db.session import async_session_maker, get_engine

setup_logging()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    settings = get_settings()
    scheduler = None
    if settings.SCHEDULER_ENABLED and not settings.TESTING:
        # Imported lazily so the API can start without APScheduler jobs
        from partsmith.modules.partitioning.scheduler import MaintenanceScheduler

        scheduler = MaintenanceScheduler(async_session_maker)
        scheduler.start()
    listener = None
    if settings.PREMAKE_LISTENER_ENABLED and not settings.TESTING:
        from partsmith.modules.partitioning.listener import PremakeListener

        listener = PremakeListener(get_engine(), async_session_maker)
        await listener.start()
    logger.info(
        "app_started",
        app=settings.APP_NAME,
        scheduler_enabled=scheduler is not None,
        premake_listener_enabled=listener is not None,
    )
    yield
    if listener is not None:
        await listener.stop()
    if scheduler is not None:
        scheduler.stop()
    logger.info("app_stopped", app=settings.APP_NAME)


async def partsmith_exception_handler(request: Request, exc: PartsmithException) -> JSONResponse:
    """Handle engine exceptions with their own status code and error code."""
    logger.warning(
        "api_request_failed",
        path=request.url.path,
        code=exc.code,
        status_code=exc.status_code,
        error=exc.message,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "code": exc.code, "details": exc.details},
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTP exceptions with standardized format."""
    detail_text = str(exc.detail) if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": detail_text, "code": "HTTP_ERROR", "message": detail_text},
    )


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.APP_NAME, version=settings.VERSION, lifespan=lifespan)
    app.add_exception_handler(PartsmithException, partsmith_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.include_router(partitions_router, prefix="/api/v1")

    @app.get("/health", tags=["Lifecycle"])
    async def health() -> dict[str, str]:
        return {"status": "ok", "version": settings.VERSION}

    return app


app = create_app()
