"""Append-only store of (embedding, one-hot label) training pairs."""

from __future__ import annotations

import logging
import numbers
from typing import TYPE_CHECKING

import torch
import torch.nn.functional as F

from retrainex.errors import InvalidLabelError

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


class Dataset:
    """Accumulates embeddings and one-hot labels as two growing tensors.

    Rows are only ever added by concatenation. Each append builds new tensors
    and drops the previous ones, so a snapshot taken before an append keeps
    seeing exactly the rows it was taken with.
    """

    def __init__(self, num_classes: int) -> None:
        self._num_classes = num_classes
        self._features: torch.Tensor | None = None
        self._labels: torch.Tensor | None = None

    @property
    def num_classes(self) -> int:
        return self._num_classes

    def append(self, embedding: NDArray[np.float32], label: int) -> None:
        """Add one example.

        Args:
            embedding: Extractor output for one image, shape (1, *embedding_shape).
            label: Class id in [0, num_classes).

        Raises:
            InvalidLabelError: If ``label`` is not an integer in range.
            ValueError: If the embedding shape differs from the stored rows.
        """
        one_hot = self._encode_label(label)
        with torch.no_grad():
            x = torch.as_tensor(embedding, dtype=torch.float32)
            if x.ndim == 0:
                raise ValueError("Embedding must have at least one dimension")
            if x.shape[0] != 1:
                x = x.unsqueeze(0)

            if self._features is None or self._labels is None:
                self._features = x.clone()
                self._labels = one_hot
                return

            if x.shape[1:] != self._features.shape[1:]:
                raise ValueError(
                    f"Embedding shape {tuple(x.shape[1:])} does not match dataset shape "
                    f"{tuple(self._features.shape[1:])}"
                )

            old_features, old_labels = self._features, self._labels
            self._features = torch.cat([old_features, x], dim=0)
            self._labels = torch.cat([old_labels, one_hot], dim=0)
            del old_features, old_labels

    def snapshot(self) -> tuple[torch.Tensor, torch.Tensor]:
        """Return the current (features, labels) tensors.

        Raises:
            ValueError: If the dataset is empty.
        """
        if self._features is None or self._labels is None:
            raise ValueError("Dataset is empty")
        return self._features, self._labels

    def size(self) -> int:
        return 0 if self._features is None else int(self._features.shape[0])

    def __len__(self) -> int:
        return self.size()

    def is_empty(self) -> bool:
        return self._features is None

    def class_counts(self) -> list[int]:
        """Number of stored examples per class id."""
        if self._labels is None:
            return [0] * self._num_classes
        return [int(c) for c in self._labels.sum(dim=0).tolist()]

    def clear(self) -> None:
        self._features = None
        self._labels = None
        logger.info("Dataset cleared")

    def validate_label(self, label: int) -> None:
        """Raise ``InvalidLabelError`` unless ``label`` is an integer in [0, num_classes)."""
        if isinstance(label, bool) or not isinstance(label, numbers.Integral):
            raise InvalidLabelError(f"Label must be an integer, got {label!r}")
        if not 0 <= label < self._num_classes:
            raise InvalidLabelError(f"Label {label} is outside [0, {self._num_classes})")

    def _encode_label(self, label: int) -> torch.Tensor:
        self.validate_label(label)
        return F.one_hot(torch.tensor([int(label)]), num_classes=self._num_classes).to(torch.float32)
