"""Image preprocessing pipeline.

Turns raw RGB pixel buffers into the fixed-shape float32 batch the feature
extractor consumes: center crop, bilinear resize, normalize, add batch dim.
The same pipeline feeds training examples and predictions.
"""

from __future__ import annotations

import io
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from retrainex.errors import InvalidImageError

if TYPE_CHECKING:
    from numpy.typing import NDArray

NORMALIZATION_OFFSET: float = 127.5


@runtime_checkable
class FrameSource(Protocol):
    """A live source of frames, such as a camera or a video stream."""

    def read(self) -> NDArray[np.uint8]:
        """Return the current frame as an HxWx3 RGB array."""
        ...


def validate_image(image: object) -> NDArray[np.generic]:
    """Check that ``image`` is an HxWx3 array with non-zero spatial dims."""
    if not isinstance(image, np.ndarray):
        raise InvalidImageError(f"Expected a numpy array, got {type(image).__name__}")
    if image.ndim != 3:
        raise InvalidImageError(f"Expected an HxWxC array, got shape {image.shape}")
    height, width, channels = image.shape
    if height == 0 or width == 0:
        raise InvalidImageError(f"Image has zero size: {height}x{width}")
    if channels != 3:
        raise InvalidImageError(f"Expected 3 channels, got {channels}")
    return image


def center_crop(image: NDArray[np.generic]) -> NDArray[np.generic]:
    """Crop the largest centered square from an HxWxC array."""
    height, width = image.shape[:2]
    size = min(height, width)
    top = (height - size) // 2
    left = (width - size) // 2
    return image[top : top + size, left : left + size]


def resize_bilinear(image: NDArray[np.generic], size: int) -> NDArray[np.float32]:
    """Resize an HxWx3 array to ``size`` x ``size`` with a bilinear filter.

    Each channel is resampled in Pillow's 32-bit float mode so no precision
    is lost to uint8 rounding.
    """
    if image.shape[0] == size and image.shape[1] == size:
        return image.astype(np.float32)
    channels = [
        np.asarray(
            Image.fromarray(np.ascontiguousarray(image[:, :, c], dtype=np.float32)).resize(
                (size, size), Image.Resampling.BILINEAR
            ),
            dtype=np.float32,
        )
        for c in range(image.shape[2])
    ]
    return np.stack(channels, axis=-1)


class FeaturePipeline:
    """Deterministic image -> network input transform."""

    def __init__(self, input_size: int = 224) -> None:
        self._input_size = input_size

    @property
    def input_size(self) -> int:
        return self._input_size

    def transform(self, image: NDArray[np.generic]) -> NDArray[np.float32]:
        """Preprocess one RGB image for the feature extractor.

        Args:
            image: HxWx3 array with values in [0, 255].

        Returns:
            Float32 array of shape (1, input_size, input_size, 3) in [-1, 1].

        Raises:
            InvalidImageError: If the array is not a non-empty 3-channel image.
        """
        pixels = validate_image(image)
        cropped = center_crop(pixels)
        resized = resize_bilinear(cropped, self._input_size)
        normalized = (resized - NORMALIZATION_OFFSET) / NORMALIZATION_OFFSET
        return normalized[np.newaxis, ...].astype(np.float32, copy=False)


def decode_image(image_bytes: bytes, max_pixels: int | None = None) -> NDArray[np.uint8]:
    """Decode raw image bytes into an RGB uint8 numpy array.

    EXIF orientation is applied before conversion so photos taken in portrait
    mode are not fed to the network sideways.

    Args:
        image_bytes: Raw file bytes (any format Pillow can read).
        max_pixels: Reject images with more than this many pixels.

    Returns:
        HxWx3 RGB uint8 numpy array.

    Raises:
        InvalidImageError: If the image cannot be decoded or exceeds size limits.
    """
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            if max_pixels is not None and img.width * img.height > max_pixels:
                raise InvalidImageError(
                    f"Image has {img.width * img.height} pixels, limit is {max_pixels}"
                )
            oriented = ImageOps.exif_transpose(img)
            rgb = oriented.convert("RGB")
            return np.asarray(rgb, dtype=np.uint8)
    except (UnidentifiedImageError, OSError) as exc:
        raise InvalidImageError(f"Could not decode image: {exc}") from exc
