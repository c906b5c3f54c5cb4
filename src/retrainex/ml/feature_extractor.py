"""Pretrained feature extractor backed by an ONNX Runtime session."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

import numpy as np

if TYPE_CHECKING:
    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

    from retrainex.ml.model_manager import ModelManager, ModelSpec

logger = logging.getLogger(__name__)


class FeatureExtractor(Protocol):
    """Protocol for pretrained feature extractors."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    @property
    def input_size(self) -> int:
        """Return the square input resolution the network expects."""
        ...

    def embed(self, batch: NDArray[np.float32]) -> NDArray[np.float32]:
        """Run the network truncated at its embedding layer.

        Args:
            batch: Preprocessed images, shape (N, size, size, 3).

        Returns:
            Embeddings, shape (N, *embedding_shape).
        """
        ...

    def classify(self, batch: NDArray[np.float32]) -> NDArray[np.float32]:
        """Run the full network and return class probabilities, shape (N, num_labels)."""
        ...


def softmax(logits: NDArray[np.float32], axis: int = -1) -> NDArray[np.float32]:
    shifted = logits - np.max(logits, axis=axis, keepdims=True)
    exp = np.exp(shifted)
    return (exp / np.sum(exp, axis=axis, keepdims=True)).astype(np.float32)


class OnnxFeatureExtractor:
    """Feature extractor over a single ONNX session exposing two outputs."""

    def __init__(self, session: InferenceSession, spec: ModelSpec) -> None:
        self._session = session
        self._spec = spec
        self._input_name: str = session.get_inputs()[0].name

    @property
    def model_name(self) -> str:
        return self._spec.name

    @property
    def input_size(self) -> int:
        return self._spec.input_size

    def embed(self, batch: NDArray[np.float32]) -> NDArray[np.float32]:
        (embedding,) = self._session.run([self._spec.embedding_output], {self._input_name: self._to_layout(batch)})
        return np.asarray(embedding, dtype=np.float32)

    def classify(self, batch: NDArray[np.float32]) -> NDArray[np.float32]:
        (output,) = self._session.run([self._spec.logits_output], {self._input_name: self._to_layout(batch)})
        output = np.asarray(output, dtype=np.float32)
        if not self._spec.outputs_probabilities:
            output = softmax(output)
        return output

    def _to_layout(self, batch: NDArray[np.float32]) -> NDArray[np.float32]:
        if self._spec.channels_first:
            return np.ascontiguousarray(batch.transpose(0, 3, 1, 2))
        return batch


def load_onnx_extractor(manager: ModelManager, spec: ModelSpec) -> OnnxFeatureExtractor:
    """Download (if needed) and open the extractor described by ``spec``.

    Blocking; run it on the inference pool.
    """
    session = manager.get_session(spec.name)
    extractor = OnnxFeatureExtractor(session, spec)
    logger.info(
        "Feature extractor ready (model=%s, embedding=%s, input=%dx%d)",
        spec.name,
        spec.embedding_output,
        spec.input_size,
        spec.input_size,
    )
    return extractor
