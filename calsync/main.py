"""
FastAPI application for calendar integrations

Thin HTTP layer - syncing happens in the Celery workers
"""
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from calsync.api.v1.router import api_v1_router
from calsync.config.settings import get_settings
from calsync.core.exceptions import (
    AuthorizationDenied,
    CalendarIntegrationError,
    DataConflict,
    ProviderUnavailable,
    TokenExpiredNoRefresh,
)
from calsync.core.middleware import correlation_id_middleware, request_logging_middleware
from calsync.core.monitoring import health_router
from calsync.utils.my_logging import setup_logging

settings = get_settings()
logger = logging.getLogger(__name__)

# Most specific first; anything else in the taxonomy is a 400
ERROR_STATUS_CODES = (
    (AuthorizationDenied, 403),
    (DataConflict, 409),
    (TokenExpiredNoRefresh, 409),
    (ProviderUnavailable, 502),
)


def status_code_for(exc: CalendarIntegrationError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return 400


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    setup_logging()
    logger.info(f"{settings.APP_NAME} starting up")
    yield
    logger.info(f"{settings.APP_NAME} shutting down")


async def calendar_error_handler(request: Request, exc: CalendarIntegrationError):
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected ({status_code}): {exc.message}")

    content = {"detail": exc.message, "error": type(exc).__name__}
    if isinstance(exc, DataConflict):
        content["conflicting_events"] = exc.conflicting_titles
    return JSONResponse(status_code=status_code, content=content)


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""

    app = FastAPI(
        title=settings.APP_NAME,
        description="Calendar integrations: OAuth connect, two-way sync and availability",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE"],
        allow_headers=["*"],
    )

    app.middleware("http")(request_logging_middleware)
    app.middleware("http")(correlation_id_middleware)

    app.add_exception_handler(CalendarIntegrationError, calendar_error_handler)

    app.include_router(health_router, prefix="/health", tags=["monitoring"])
    app.include_router(api_v1_router, prefix="/api/v1")

    @app.get("/")
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": "0.1.0",
            "status": "running",
            "endpoints": {
                "api": "/api/v1",
                "health": "/health",
                "docs": "/docs" if settings.DEBUG else "disabled"
            }
        }

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "calsync.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info"
    )
