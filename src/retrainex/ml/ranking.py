"""Top-K ranking of class probabilities."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from retrainex.errors import InvalidTopKError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray


@dataclass(frozen=True)
class RankedPrediction:
    """A single class prediction."""

    class_name: str
    probability: float


def validate_top_k(k: int) -> int:
    if isinstance(k, bool) or not isinstance(k, (int, np.integer)) or k <= 0:
        raise InvalidTopKError(f"k must be a positive integer, got {k!r}")
    return int(k)


def top_k_classes(
    probabilities: NDArray[np.floating],
    k: int,
    class_names: Sequence[str],
) -> list[RankedPrediction]:
    """Rank the ``k`` most probable classes.

    Ties keep ascending class-index order. ``k`` larger than the number of
    classes is clamped rather than rejected.

    Args:
        probabilities: Probability vector, shape (num_classes,) or (1, num_classes).
        k: Number of results to return.
        class_names: Name for each class index.

    Returns:
        Predictions sorted by descending probability.

    Raises:
        InvalidTopKError: If ``k`` is not a positive integer.
    """
    k = validate_top_k(k)
    values = np.asarray(probabilities, dtype=np.float32).reshape(-1)
    if len(class_names) != values.shape[0]:
        raise ValueError(f"Got {values.shape[0]} probabilities for {len(class_names)} class names")

    order = np.argsort(-values, kind="stable")[: min(k, values.shape[0])]
    return [RankedPrediction(class_name=class_names[i], probability=float(values[i])) for i in order]
