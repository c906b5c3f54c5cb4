"""Tests for the image -> network input pipeline."""

from __future__ import annotations

import io

import numpy as np
import pytest
from PIL import Image

from retrainex.errors import InvalidImageError
from retrainex.ml.preprocessing import (
    FeaturePipeline,
    FrameSource,
    center_crop,
    decode_image,
    resize_bilinear,
)


def _png_bytes(array: np.ndarray) -> bytes:
    buf = io.BytesIO()
    Image.fromarray(array).save(buf, format="PNG")
    return buf.getvalue()


class TestCenterCrop:
    def test_landscape_crops_width(self) -> None:
        image = np.arange(4 * 6 * 3).reshape(4, 6, 3)
        cropped = center_crop(image)
        assert cropped.shape == (4, 4, 3)
        np.testing.assert_array_equal(cropped, image[:, 1:5])

    def test_portrait_crops_height(self) -> None:
        image = np.arange(7 * 3 * 3).reshape(7, 3, 3)
        cropped = center_crop(image)
        assert cropped.shape == (3, 3, 3)
        np.testing.assert_array_equal(cropped, image[2:5])

    def test_square_is_unchanged(self) -> None:
        image = np.zeros((5, 5, 3))
        assert center_crop(image).shape == (5, 5, 3)


class TestResize:
    def test_constant_image_stays_constant(self) -> None:
        image = np.full((50, 50, 3), 200, dtype=np.uint8)
        resized = resize_bilinear(image, 20)
        assert resized.shape == (20, 20, 3)
        assert resized.dtype == np.float32
        np.testing.assert_allclose(resized, 200.0, atol=1e-3)

    def test_channels_resized_independently(self) -> None:
        image = np.zeros((10, 10, 3), dtype=np.uint8)
        image[..., 0] = 10
        image[..., 1] = 100
        image[..., 2] = 250
        resized = resize_bilinear(image, 4)
        np.testing.assert_allclose(resized[..., 0], 10.0, atol=1e-3)
        np.testing.assert_allclose(resized[..., 1], 100.0, atol=1e-3)
        np.testing.assert_allclose(resized[..., 2], 250.0, atol=1e-3)


class TestFeaturePipeline:
    def test_output_shape_and_range(self, rng: np.random.Generator) -> None:
        image = rng.integers(0, 256, size=(120, 90, 3), dtype=np.uint8)
        out = FeaturePipeline(input_size=64).transform(image)
        assert out.shape == (1, 64, 64, 3)
        assert out.dtype == np.float32
        assert out.min() >= -1.0
        assert out.max() <= 1.0

    def test_normalization_endpoints(self) -> None:
        pipeline = FeaturePipeline(input_size=8)
        black = pipeline.transform(np.zeros((8, 8, 3), dtype=np.uint8))
        white = pipeline.transform(np.full((8, 8, 3), 255, dtype=np.uint8))
        np.testing.assert_allclose(black, -1.0)
        np.testing.assert_allclose(white, 1.0)

    def test_deterministic(self, rng: np.random.Generator) -> None:
        image = rng.integers(0, 256, size=(300, 200, 3), dtype=np.uint8)
        pipeline = FeaturePipeline(input_size=224)
        first = pipeline.transform(image)
        second = pipeline.transform(image.copy())
        assert first.tobytes() == second.tobytes()

    def test_does_not_mutate_input(self, rng: np.random.Generator) -> None:
        image = rng.integers(0, 256, size=(40, 30, 3), dtype=np.uint8)
        before = image.copy()
        FeaturePipeline(input_size=16).transform(image)
        np.testing.assert_array_equal(image, before)

    @pytest.mark.parametrize(
        "shape",
        [(0, 10, 3), (10, 0, 3), (10, 10, 4), (10, 10, 1), (10, 10)],
    )
    def test_rejects_malformed_images(self, shape: tuple[int, ...]) -> None:
        with pytest.raises(InvalidImageError):
            FeaturePipeline(input_size=8).transform(np.zeros(shape, dtype=np.uint8))

    def test_rejects_non_arrays(self) -> None:
        with pytest.raises(InvalidImageError, match="numpy array"):
            FeaturePipeline().transform([[1, 2, 3]])  # type: ignore[arg-type]


class TestDecodeImage:
    def test_decodes_png_to_rgb(self, rng: np.random.Generator) -> None:
        array = rng.integers(0, 256, size=(12, 16, 3), dtype=np.uint8)
        decoded = decode_image(_png_bytes(array))
        assert decoded.shape == (12, 16, 3)
        assert decoded.dtype == np.uint8
        np.testing.assert_array_equal(decoded, array)

    def test_grayscale_converted_to_rgb(self) -> None:
        gray = np.full((5, 5), 80, dtype=np.uint8)
        decoded = decode_image(_png_bytes(gray))
        assert decoded.shape == (5, 5, 3)

    def test_garbage_bytes_raise(self) -> None:
        with pytest.raises(InvalidImageError, match="Could not decode"):
            decode_image(b"definitely not an image")

    def test_pixel_limit(self) -> None:
        data = _png_bytes(np.zeros((20, 20, 3), dtype=np.uint8))
        with pytest.raises(InvalidImageError, match="limit"):
            decode_image(data, max_pixels=100)


class TestFrameSourceProtocol:
    def test_object_with_read_is_a_frame_source(self) -> None:
        class Camera:
            def read(self) -> np.ndarray:
                return np.zeros((2, 2, 3), dtype=np.uint8)

        assert isinstance(Camera(), FrameSource)

    def test_array_is_not_a_frame_source(self) -> None:
        assert not isinstance(np.zeros((2, 2, 3)), FrameSource)
