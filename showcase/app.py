"""
FastAPI application entry point for the showcase backend.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from showcase.config import Settings, get_settings
from showcase.dependencies import Services, build_services
from showcase.errors import (
    BlobNotFoundError,
    DocumentNotFoundError,
    DocumentValidationError,
    InvalidReferenceError,
    UploadFailedError,
    UploadTooLargeError,
)
from showcase.routes import media_router, router

logger = logging.getLogger(__name__)

ERROR_STATUS = (
    (InvalidReferenceError, 400),
    (DocumentValidationError, 400),
    (DocumentNotFoundError, 404),
    (BlobNotFoundError, 404),
    (UploadTooLargeError, 413),
    (UploadFailedError, 500),
)


def _error_handler(status_code: int):
    async def handle(request: Request, exc: Exception) -> JSONResponse:
        if status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    return handle


def create_app(
    settings: Optional[Settings] = None, services: Optional[Services] = None
) -> FastAPI:
    settings = settings or get_settings()
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        services.close()

    app = FastAPI(title="Showcase Backend (FastAPI)", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.services = services
    for error_type, status_code in ERROR_STATUS:
        app.add_exception_handler(error_type, _error_handler(status_code))
    app.include_router(router, prefix=settings.api_prefix)
    app.include_router(media_router)
    return app


app = create_app()
