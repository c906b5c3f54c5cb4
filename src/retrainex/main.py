"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from retrainex.api.routes import router
from retrainex.config import get_settings
from retrainex.errors import (
    DegenerateBatchSizeError,
    EmptyDatasetError,
    InvalidImageError,
    InvalidLabelError,
    InvalidTopKError,
    ModelNotReadyError,
    RetrainXError,
    TrainingCancelledError,
    TrainingInProgressError,
)
from retrainex.ml.image_classifier import ImageClassifier

logger = logging.getLogger(__name__)

# Checked in order; ModelLoadError is covered by ModelNotReadyError.
ERROR_STATUS: list[tuple[type[RetrainXError], int]] = [
    (ModelNotReadyError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (InvalidImageError, 422),
    (InvalidLabelError, 422),
    (InvalidTopKError, 422),
    (EmptyDatasetError, status.HTTP_409_CONFLICT),
    (DegenerateBatchSizeError, status.HTTP_409_CONFLICT),
    (TrainingInProgressError, status.HTTP_409_CONFLICT),
    (TrainingCancelledError, status.HTTP_409_CONFLICT),
]


def status_for_error(exc: RetrainXError) -> int:
    for error_type, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def _handle_retrainex_error(request: Request, exc: RetrainXError) -> JSONResponse:
    code = status_for_error(exc)
    if code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=code, content={"detail": str(exc)})


async def _handle_timeout(request: Request, exc: Exception) -> JSONResponse:
    logger.warning("%s %s timed out waiting for a worker", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Server busy, try again later"},
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: start loading on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting RetrainX (device=%s, max_concurrent=%s, extractor=%s, classes=%s)",
        settings.device,
        settings.max_concurrent,
        settings.extractor_model,
        settings.classifier.num_classes,
    )

    classifier = ImageClassifier(settings, on_ready=lambda: logger.info("RetrainX ready"))
    app.state.classifier = classifier

    yield

    logger.info("Shutting down RetrainX")
    await classifier.close()
    logger.info("RetrainX shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="RetrainX",
        description="Transfer-learning image classifier with on-device head training",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.add_exception_handler(RetrainXError, _handle_retrainex_error)  # type: ignore[arg-type]
    application.add_exception_handler(TimeoutError, _handle_timeout)
    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the app with uvicorn on the configured host and port."""
    import uvicorn

    settings = get_settings()
    uvicorn.run("retrainex.main:app", host=settings.host, port=settings.port)
