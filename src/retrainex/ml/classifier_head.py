"""Trainable classifier head and its training loop.

Architecture::

    embedding -> Flatten -> Linear(hidden_units) + ReLU -> Linear(num_classes, no bias) -> softmax

The head is trained from scratch on every ``fit_head`` call with Adam and
categorical cross-entropy. The loop runs one mini-batch at a time and yields
to the event loop between batches so predictions keep flowing while it trains.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import torch
import torch.nn.functional as F
from torch import nn

from retrainex.errors import DegenerateBatchSizeError, EmptyDatasetError, TrainingCancelledError

if TYPE_CHECKING:
    from collections.abc import Callable

    import numpy as np
    from numpy.typing import NDArray

    from retrainex.config import ClassifierOptions
    from retrainex.ml.dataset import Dataset

logger = logging.getLogger(__name__)

LOSS_DECIMALS: int = 5


@dataclass(frozen=True)
class TrainingResult:
    """Summary of a completed training session."""

    epochs: int
    batch_size: int
    num_examples: int
    final_loss: float
    losses: list[float] = field(default_factory=list)


def _variance_scaling_(weight: torch.Tensor) -> None:
    # Truncated normal, fan-in, scale 1.0.
    fan_in = weight.shape[1]
    std = math.sqrt(1.0 / fan_in) / 0.87962566103423978
    nn.init.trunc_normal_(weight, mean=0.0, std=std, a=-2 * std, b=2 * std)


class ClassifierHead(nn.Module):
    """Two-layer MLP over flattened embeddings."""

    def __init__(self, in_features: int, hidden_units: int, num_classes: int) -> None:
        super().__init__()
        self.in_features = in_features
        self.num_classes = num_classes

        self.flatten = nn.Flatten()
        self.hidden = nn.Linear(in_features, hidden_units, bias=True)
        self.output = nn.Linear(hidden_units, num_classes, bias=False)

        _variance_scaling_(self.hidden.weight)
        nn.init.zeros_(self.hidden.bias)
        _variance_scaling_(self.output.weight)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """Return unnormalized class scores, shape (B, num_classes)."""
        x = self.flatten(x)
        x = F.relu(self.hidden(x))
        return self.output(x)

    def predict_proba(self, embedding: NDArray[np.float32]) -> NDArray[np.float32]:
        """Class probabilities for a batch of embeddings, shape (B, num_classes)."""
        self.eval()
        with torch.no_grad():
            logits = self(torch.as_tensor(embedding, dtype=torch.float32))
            return torch.softmax(logits, dim=-1).numpy()


def compute_batch_size(num_examples: int, fraction: float) -> int:
    """Mini-batch size as a fraction of the dataset.

    Raises:
        DegenerateBatchSizeError: If the fraction floors to zero examples.
    """
    batch_size = math.floor(num_examples * fraction)
    if batch_size <= 0:
        raise DegenerateBatchSizeError(
            f"Batch size is 0 for {num_examples} example(s) at fraction {fraction}. "
            "Add more examples or choose a larger fraction."
        )
    return batch_size


def categorical_cross_entropy(logits: torch.Tensor, targets: torch.Tensor) -> torch.Tensor:
    return -(targets * F.log_softmax(logits, dim=-1)).sum(dim=-1).mean()


async def fit_head(
    dataset: Dataset,
    options: ClassifierOptions,
    on_progress: Callable[[float], None] | None = None,
    cancel_event: asyncio.Event | None = None,
) -> tuple[ClassifierHead, TrainingResult]:
    """Train a fresh head on the current contents of ``dataset``.

    Args:
        dataset: Accumulated examples. Appends made while training runs are
            not seen by this session.
        options: Hyperparameters (learning rate, hidden units, epochs, batch fraction).
        on_progress: Called after every mini-batch with the loss rounded to 5 decimals.
        cancel_event: Checked between mini-batches; training stops when it is set.

    Returns:
        The trained head and a summary of the session.

    Raises:
        EmptyDatasetError: If no examples have been added.
        DegenerateBatchSizeError: If the batch size floors to zero.
        TrainingCancelledError: If ``cancel_event`` was set.
    """
    if dataset.is_empty():
        raise EmptyDatasetError("Add some examples before training")

    features, labels = dataset.snapshot()
    num_examples = int(features.shape[0])
    batch_size = compute_batch_size(num_examples, options.batch_size)

    generator = torch.Generator().manual_seed(options.seed)
    with torch.random.fork_rng(devices=[]):
        torch.manual_seed(options.seed)
        head = ClassifierHead(
            in_features=int(features[0].numel()),
            hidden_units=options.hidden_units,
            num_classes=labels.shape[1],
        )
    optimizer = torch.optim.Adam(head.parameters(), lr=options.learning_rate)

    logger.info(
        "Training head (examples=%d, batch_size=%d, epochs=%d, lr=%s)",
        num_examples,
        batch_size,
        options.epochs,
        options.learning_rate,
    )

    losses: list[float] = []
    head.train()
    for epoch in range(options.epochs):
        order = torch.randperm(num_examples, generator=generator)
        for start in range(0, num_examples, batch_size):
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Training cancelled at epoch %d", epoch + 1)
                raise TrainingCancelledError(f"Training cancelled at epoch {epoch + 1}")

            idx = order[start : start + batch_size]
            optimizer.zero_grad()
            loss = categorical_cross_entropy(head(features[idx]), labels[idx])
            loss.backward()
            optimizer.step()

            loss_value = round(float(loss.item()), LOSS_DECIMALS)
            losses.append(loss_value)
            if on_progress is not None:
                on_progress(loss_value)
            await asyncio.sleep(0)

        logger.debug("Epoch %d/%d loss=%.5f", epoch + 1, options.epochs, losses[-1])

    head.eval()
    result = TrainingResult(
        epochs=options.epochs,
        batch_size=batch_size,
        num_examples=num_examples,
        final_loss=losses[-1],
        losses=losses,
    )
    logger.info("Training finished (final_loss=%.5f)", result.final_loss)
    return head, result
