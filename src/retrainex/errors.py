"""Exception hierarchy for the classifier pipeline."""

from __future__ import annotations


class RetrainXError(Exception):
    """Base class for all RetrainX errors."""


class InvalidImageError(RetrainXError, ValueError):
    """The pixel buffer is malformed (empty, wrong rank, or not 3 channels)."""


class ModelNotReadyError(RetrainXError):
    """The feature extractor has not finished loading."""


class ModelLoadError(ModelNotReadyError):
    """The feature extractor failed to load; the classifier is unusable."""


class EmptyDatasetError(RetrainXError):
    """Training was requested before any example was added."""


class InvalidLabelError(RetrainXError, ValueError):
    """A label is outside [0, num_classes)."""


class DegenerateBatchSizeError(RetrainXError, ValueError):
    """The batch size fraction floors to zero samples for the current dataset."""


class InvalidTopKError(RetrainXError, ValueError):
    """The requested number of predictions is not a positive integer."""


class TrainingInProgressError(RetrainXError):
    """A training session is already running on this classifier."""


class TrainingCancelledError(RetrainXError):
    """Training was cancelled between mini-batches."""
