"""Retrainable image classifier.

Composes the feature pipeline, the pretrained extractor, the example dataset
and the trainable head behind three calls::

    clf = ImageClassifier(settings, frame_source=camera, on_ready=...)
    await clf.add_image(0)            # label the current frame as class 0
    await clf.train(print)            # fit the head, reporting loss per batch
    await clf.predict(k=3)            # ranked predictions for the current frame

Construction starts loading the extractor in the background. ``predict``
may be called right away; those calls are held until the model is ready.
``add_image`` and ``train`` raise ``ModelNotReadyError`` until then.
Without a trained head, ``predict`` ranks the extractor's own ImageNet output.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

import numpy as np

from retrainex.config import get_settings
from retrainex.errors import InvalidImageError, TrainingInProgressError
from retrainex.ml.classifier_head import ClassifierHead, TrainingResult, fit_head
from retrainex.ml.dataset import Dataset
from retrainex.ml.feature_extractor import load_onnx_extractor
from retrainex.ml.inference import InferencePool
from retrainex.ml.labels import imagenet_classes
from retrainex.ml.lifecycle import ModelLifecycle, ModelState, PendingPrediction
from retrainex.ml.model_manager import OnnxModelManager, get_spec
from retrainex.ml.preprocessing import FeaturePipeline, FrameSource
from retrainex.ml.ranking import RankedPrediction, top_k_classes, validate_top_k

if TYPE_CHECKING:
    from collections.abc import Callable

    from numpy.typing import NDArray

    from retrainex.config import Settings
    from retrainex.ml.feature_extractor import FeatureExtractor
    from retrainex.ml.lifecycle import PredictionCallback

    ImageInput = NDArray[np.generic] | FrameSource

logger = logging.getLogger(__name__)


class ImageClassifier:
    """Transfer-learning classifier over a pretrained feature extractor.

    Must be constructed inside a running event loop.

    Args:
        settings: Service settings; ``settings.classifier`` holds the head options.
        frame_source: Live source used when no image is passed. When given,
            one warm-up inference runs during load.
        on_ready: Called once the extractor is loaded and queued predictions
            have been delivered.
        extractor_factory: Blocking callable returning a ready extractor.
            Defaults to downloading ``settings.extractor_model`` and opening
            it with ONNX Runtime.
        inference_pool: Worker pool for blocking calls. One is created (and
            owned) when omitted.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        frame_source: FrameSource | None = None,
        on_ready: Callable[[], None] | None = None,
        extractor_factory: Callable[[], FeatureExtractor] | None = None,
        inference_pool: InferencePool | None = None,
    ) -> None:
        self._settings = settings if settings is not None else get_settings()
        self._options = self._settings.classifier
        self._frame_source = frame_source

        self._owns_pool = inference_pool is None
        self._pool = inference_pool if inference_pool is not None else InferencePool(self._settings.max_concurrent)
        self._model_manager: OnnxModelManager | None = None
        self._extractor_factory = extractor_factory if extractor_factory is not None else self._load_default_extractor

        self._pipeline: FeaturePipeline | None = None
        self._dataset = Dataset(self._options.num_classes)
        self._head: ClassifierHead | None = None
        self._class_names = self._options.class_names or [str(i) for i in range(self._options.num_classes)]
        self._append_lock = asyncio.Lock()
        self._training = False

        self._lifecycle: ModelLifecycle[FeatureExtractor] = ModelLifecycle()
        self._lifecycle.start(self._load, self._execute, on_ready)

    # -- Properties ---------------------------------------------------------

    @property
    def state(self) -> ModelState:
        return self._lifecycle.state

    @property
    def is_ready(self) -> bool:
        return self._lifecycle.state is ModelState.READY

    @property
    def is_trained(self) -> bool:
        return self._head is not None

    @property
    def is_training(self) -> bool:
        return self._training

    @property
    def num_examples(self) -> int:
        return self._dataset.size()

    @property
    def class_counts(self) -> list[int]:
        return self._dataset.class_counts()

    @property
    def pending_predictions(self) -> int:
        return self._lifecycle.pending_count

    @property
    def inference_pool(self) -> InferencePool:
        return self._pool

    @property
    def loaded_models(self) -> list[str]:
        """Names of extractors with an open ONNX session."""
        if self._model_manager is None:
            return []
        return self._model_manager.get_loaded_models()

    # -- Public API ---------------------------------------------------------

    async def wait_until_ready(self) -> None:
        """Wait for the extractor to finish loading.

        Raises:
            ModelLoadError: If loading failed.
        """
        await self._lifecycle.wait_until_ready()

    async def add_image(
        self,
        label: int,
        image: ImageInput | None = None,
        callback: Callable[[], None] | None = None,
    ) -> None:
        """Embed an image and store it as a training example for ``label``.

        Args:
            label: Class id in [0, num_classes).
            image: RGB array or frame source. Defaults to the bound frame source.
            callback: Called after the example is stored.

        Raises:
            ModelNotReadyError: If the extractor is still loading.
            ModelLoadError: If the extractor failed to load.
            InvalidLabelError: If ``label`` is out of range.
            InvalidImageError: If the image is malformed or none is available.
        """
        extractor = self._lifecycle.require_extractor()
        self._dataset.validate_label(label)
        source = self._resolve_input(image)

        async with self._append_lock:
            embedding = await self._pool.run(self._embed_image, extractor, source)
            self._dataset.append(embedding, label)
        logger.debug("Added example (label=%d, total=%d)", label, self._dataset.size())

        if callback is not None:
            callback()

    async def train(
        self,
        on_progress: Callable[[float], None] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> TrainingResult:
        """Fit a new head on all examples added so far.

        The new head replaces the previous one only if training completes.

        Raises:
            ModelNotReadyError: If the extractor is still loading.
            TrainingInProgressError: If another training session is running.
            EmptyDatasetError: If no examples were added.
            DegenerateBatchSizeError: If the batch size fraction floors to zero.
            TrainingCancelledError: If ``cancel_event`` was set mid-training.
        """
        self._lifecycle.require_extractor()
        if self._training:
            raise TrainingInProgressError("A training session is already running")

        self._training = True
        try:
            head, result = await fit_head(self._dataset, self._options, on_progress, cancel_event)
        finally:
            self._training = False

        self._head = head
        return result

    async def predict(
        self,
        image: ImageInput | None = None,
        k: int | None = None,
        callback: PredictionCallback | None = None,
    ) -> list[RankedPrediction]:
        """Return the ``k`` most probable classes for an image.

        Calls made before the extractor is loaded are queued and answered in
        order once it is.

        Args:
            image: RGB array or frame source. Defaults to the bound frame source.
            k: Number of predictions. Defaults to ``default_top_k``; clamped to
                the number of classes.
            callback: Called with ``(results, None)`` on success or
                ``(None, error)`` on failure.

        Raises:
            InvalidTopKError: If ``k`` is not positive.
            InvalidImageError: If no image is given and no frame source is bound.
            ModelLoadError: If the extractor failed to load.
        """
        top_k = validate_top_k(self._options.default_top_k if k is None else k)
        source = self._resolve_input(image)
        return await self._lifecycle.submit(PendingPrediction(source=source, k=top_k, callback=callback))

    def reset(self) -> None:
        """Drop all examples and the trained head.

        Raises:
            TrainingInProgressError: If a training session is running.
        """
        if self._training:
            raise TrainingInProgressError("Cannot reset while training")
        self._dataset.clear()
        self._head = None
        logger.info("Classifier reset")

    async def close(self) -> None:
        """Stop loading if still in progress and release workers."""
        await self._lifecycle.shutdown()
        if self._model_manager is not None:
            self._model_manager.shutdown()
        if self._owns_pool:
            self._pool.shutdown()

    # -- Internal -----------------------------------------------------------

    def _load_default_extractor(self) -> FeatureExtractor:
        spec = get_spec(self._settings.extractor_model)
        self._model_manager = OnnxModelManager(self._settings)
        return load_onnx_extractor(self._model_manager, spec)

    async def _load(self) -> FeatureExtractor:
        extractor = await self._pool.run(self._extractor_factory)
        self._pipeline = FeaturePipeline(extractor.input_size)
        if self._frame_source is not None:
            # Warm-up; the output is discarded.
            await self._pool.run(self._classify_image, extractor, self._frame_source)
            logger.info("Warm-up inference done")
        return extractor

    async def _execute(self, entry: PendingPrediction) -> list[RankedPrediction]:
        extractor = self._lifecycle.extractor
        if extractor is None:
            raise RuntimeError("Prediction executed before the extractor was loaded")
        # Capture the head once so a concurrent train() cannot swap it mid-call.
        head = self._head

        if head is None:
            probabilities = await self._pool.run(self._classify_image, extractor, entry.source)
            names: list[str] | tuple[str, ...] = imagenet_classes()
        else:
            embedding = await self._pool.run(self._embed_image, extractor, entry.source)
            probabilities = head.predict_proba(embedding)
            names = self._class_names

        return top_k_classes(probabilities[0], entry.k, names)

    def _embed_image(self, extractor: FeatureExtractor, source: ImageInput) -> NDArray[np.float32]:
        return extractor.embed(self._require_pipeline().transform(self._read_pixels(source)))

    def _classify_image(self, extractor: FeatureExtractor, source: ImageInput) -> NDArray[np.float32]:
        # Runs on a worker, so frame sources are read off the event loop.
        return extractor.classify(self._require_pipeline().transform(self._read_pixels(source)))

    def _require_pipeline(self) -> FeaturePipeline:
        if self._pipeline is None:
            raise RuntimeError("Feature pipeline used before the extractor was loaded")
        return self._pipeline

    def _resolve_input(self, image: ImageInput | None) -> ImageInput:
        if image is None:
            if self._frame_source is None:
                raise InvalidImageError("No image given and no frame source bound")
            return self._frame_source
        if isinstance(image, np.ndarray):
            return image
        if isinstance(image, FrameSource):
            if self._frame_source is None:
                self._frame_source = image
            return image
        raise InvalidImageError(f"Unsupported image input: {type(image).__name__}")

    @staticmethod
    def _read_pixels(source: object) -> NDArray[np.generic]:
        if isinstance(source, np.ndarray):
            return source
        if isinstance(source, FrameSource):
            return source.read()
        raise InvalidImageError(f"Unsupported image input: {type(source).__name__}")
