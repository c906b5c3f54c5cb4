"""API route definitions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, Form, HTTPException, Query, UploadFile, status

from retrainex.api.dependencies import get_app_settings, get_classifier, verify_api_key
from retrainex.api.schemas import (
    AddExampleResponse,
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    ModelsResponse,
    Prediction,
    TrainResponse,
)
from retrainex.config import Settings
from retrainex.ml.image_classifier import ImageClassifier
from retrainex.ml.model_manager import MODEL_REGISTRY
from retrainex.ml.preprocessing import decode_image

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

SettingsDep = Annotated[Settings, Depends(get_app_settings)]
ClassifierDep = Annotated[ImageClassifier, Depends(get_classifier)]

# Starlette renamed the constants for these two codes.
HTTP_413_CONTENT_TOO_LARGE = 413
HTTP_422_UNPROCESSABLE = 422

_UNAVAILABLE = {status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse}}


async def _read_image(file: UploadFile, settings: Settings, classifier: ImageClassifier) -> NDArray[np.uint8]:
    data = await file.read()
    if len(data) > settings.max_file_size:
        raise HTTPException(
            status_code=HTTP_413_CONTENT_TOO_LARGE,
            detail=f"File exceeds {settings.max_file_size} bytes",
        )
    return await classifier.inference_pool.run(decode_image, data, settings.max_image_pixels)


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses={
        **_UNAVAILABLE,
        HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse},
        HTTP_422_UNPROCESSABLE: {"model": ErrorResponse},
    },
    summary="Classify an image",
)
async def classify_image(
    file: UploadFile,
    settings: SettingsDep,
    classifier: ClassifierDep,
    k: Annotated[int | None, Query(description="Number of predictions to return")] = None,
) -> ClassifyImageResponse:
    """Classify an uploaded image and return ranked predictions.

    Requests that arrive while the extractor is loading are held and answered
    once it is ready.
    """
    image = await _read_image(file, settings, classifier)
    trained = classifier.is_trained
    results = await classifier.predict(image, k)
    return ClassifyImageResponse(
        predictions=[Prediction(class_name=r.class_name, probability=r.probability) for r in results],
        trained=trained,
    )


@router.post(
    "/examples",
    response_model=AddExampleResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        **_UNAVAILABLE,
        HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse},
        HTTP_422_UNPROCESSABLE: {"model": ErrorResponse},
    },
    summary="Add a labeled training example",
)
async def add_example(
    file: UploadFile,
    label: Annotated[int, Form(description="Class id in [0, num_classes)")],
    settings: SettingsDep,
    classifier: ClassifierDep,
) -> AddExampleResponse:
    """Embed an uploaded image and store it under ``label``."""
    image = await _read_image(file, settings, classifier)
    await classifier.add_image(label, image)
    return AddExampleResponse(num_examples=classifier.num_examples, class_counts=classifier.class_counts)


@router.delete(
    "/examples",
    response_model=AddExampleResponse,
    responses={status.HTTP_409_CONFLICT: {"model": ErrorResponse}},
    summary="Discard all examples and the trained head",
)
async def reset_examples(classifier: ClassifierDep) -> AddExampleResponse:
    """Clear the dataset and return to the stock classifier."""
    classifier.reset()
    return AddExampleResponse(num_examples=classifier.num_examples, class_counts=classifier.class_counts)


@router.post(
    "/train",
    response_model=TrainResponse,
    responses={
        **_UNAVAILABLE,
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
    },
    summary="Train the classifier head",
)
async def train(classifier: ClassifierDep) -> TrainResponse:
    """Fit a new head on every example added so far."""

    def _log_progress(loss: float) -> None:
        logger.debug("train | loss=%.5f", loss)

    result = await classifier.train(_log_progress)
    return TrainResponse(
        epochs=result.epochs,
        batch_size=result.batch_size,
        num_examples=result.num_examples,
        final_loss=result.final_loss,
        losses=result.losses,
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(settings: SettingsDep, classifier: ClassifierDep) -> HealthResponse:
    """Return service health status."""
    pool = classifier.inference_pool
    return HealthResponse(
        status="ok",
        model_state=str(classifier.state),
        gpu=settings.device == "cuda",
        trained=classifier.is_trained,
        training=classifier.is_training,
        num_examples=classifier.num_examples,
        pending_predictions=classifier.pending_predictions,
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available feature extractors",
)
async def list_models(settings: SettingsDep, classifier: ClassifierDep) -> ModelsResponse:
    """Return available extractors, which one is active, and which are loaded."""
    loaded = set(classifier.loaded_models)
    models = [
        ModelInfo(
            name=spec.name,
            status="active" if spec.name == settings.extractor_model else "available",
            loaded=spec.name in loaded,
            embedding_layer=spec.embedding_output,
            input_size=spec.input_size,
            license=spec.license,
        )
        for spec in MODEL_REGISTRY.values()
    ]
    return ModelsResponse(models=models)
