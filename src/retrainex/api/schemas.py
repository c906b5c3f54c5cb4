"""Pydantic request/response schemas for the RetrainX API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class Prediction(BaseModel):
    """A single ranked class prediction."""

    class_name: str
    probability: float = Field(ge=0.0)


class ClassifyImageResponse(BaseModel):
    """Response for the image classification endpoint."""

    predictions: list[Prediction] = Field(description="Sorted by probability (descending)")
    trained: bool = Field(description="True if the custom head was used, False for the stock ImageNet classifier")


class AddExampleResponse(BaseModel):
    """Response after storing a labeled example."""

    num_examples: int
    class_counts: list[int] = Field(description="Stored examples per class id")


class TrainResponse(BaseModel):
    """Summary of a finished training session."""

    epochs: int
    batch_size: int
    num_examples: int
    final_loss: float
    losses: list[float] = Field(description="Loss after each mini-batch, rounded to 5 decimals")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    model_state: str = Field(description="'unloaded', 'loading', 'ready', or 'failed'")
    gpu: bool
    trained: bool
    training: bool
    num_examples: int
    pending_predictions: int
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about an available feature extractor."""

    name: str
    status: str = Field(description="Model status: 'active' or 'available'")
    loaded: bool = Field(description="True if an inference session is open for this model")
    embedding_layer: str
    input_size: int
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
