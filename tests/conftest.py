"""Shared fixtures: a deterministic stand-in extractor and settings helpers."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

import numpy as np
import pytest

from retrainex.config import ClassifierOptions, Settings
from retrainex.ml.labels import IMAGENET_NUM_CLASSES

if TYPE_CHECKING:
    from numpy.typing import NDArray

FAKE_INPUT_SIZE = 28


class FakeExtractor:
    """Average-pools the network input down to a 7x7x3 "embedding".

    ``classify`` returns a 1000-way probability vector whose first three
    entries track the mean of each color channel.
    """

    model_name = "fake"
    input_size = FAKE_INPUT_SIZE

    def __init__(self) -> None:
        self.embed_calls = 0
        self.classify_calls = 0

    def embed(self, batch: NDArray[np.float32]) -> NDArray[np.float32]:
        self.embed_calls += 1
        n = batch.shape[0]
        return batch.reshape(n, 7, 4, 7, 4, 3).mean(axis=(2, 4)).astype(np.float32)

    def classify(self, batch: NDArray[np.float32]) -> NDArray[np.float32]:
        self.classify_calls += 1
        n = batch.shape[0]
        logits = np.zeros((n, IMAGENET_NUM_CLASSES), dtype=np.float32)
        logits[:, :3] = batch.mean(axis=(1, 2)) * 10.0
        exp = np.exp(logits - logits.max(axis=1, keepdims=True))
        return (exp / exp.sum(axis=1, keepdims=True)).astype(np.float32)


class GatedFactory:
    """Extractor factory that blocks its worker thread until released."""

    def __init__(self, extractor: FakeExtractor | None = None, error: Exception | None = None) -> None:
        self.extractor = extractor or FakeExtractor()
        self.error = error
        self.gate = threading.Event()

    def __call__(self) -> FakeExtractor:
        if not self.gate.wait(timeout=10):
            raise TimeoutError("Gate was never released")
        if self.error is not None:
            raise self.error
        return self.extractor

    def release(self) -> None:
        self.gate.set()


class FakeCamera:
    """Frame source that returns the same frame every time."""

    def __init__(self, frame: NDArray[np.uint8]) -> None:
        self.frame = frame
        self.reads = 0
        self.threads: list[str] = []

    def read(self) -> NDArray[np.uint8]:
        self.reads += 1
        self.threads.append(threading.current_thread().name)
        return self.frame


def make_settings(tmp_path: object = None, **classifier_overrides: object) -> Settings:
    options = ClassifierOptions(**classifier_overrides)  # type: ignore[arg-type]
    return Settings(
        classifier=options,
        models_dir=str(tmp_path) if tmp_path is not None else "/tmp/retrainex_test_models",
        max_concurrent=2,
    )


def solid_image(value: int, size: tuple[int, int] = (32, 40), jitter: int = 0, seed: int = 0) -> NDArray[np.uint8]:
    """A flat-colored RGB image, optionally with per-pixel noise."""
    rng = np.random.default_rng(seed)
    base = np.full((*size, 3), value, dtype=np.int16)
    if jitter:
        base += rng.integers(-jitter, jitter + 1, size=base.shape, dtype=np.int16)
    return np.clip(base, 0, 255).astype(np.uint8)


@pytest.fixture()
def rng() -> np.random.Generator:
    """Deterministic random generator."""
    return np.random.default_rng(42)
