"""Environment-based configuration for RetrainX."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ClassifierOptions(BaseModel):
    """Hyperparameters for the trainable classifier head."""

    learning_rate: float = Field(default=1e-4, gt=0.0)
    hidden_units: int = Field(default=100, ge=1)
    epochs: int = Field(default=20, ge=1)
    num_classes: int = Field(default=2, ge=1)
    # Fraction of the dataset used per mini-batch, not an absolute count.
    batch_size: float = Field(default=0.4, gt=0.0, le=1.0)

    default_top_k: int = Field(default=10, ge=1)
    seed: int = 0
    class_names: list[str] | None = None

    @model_validator(mode="after")
    def _check_class_names(self) -> ClassifierOptions:
        if self.class_names is not None and len(self.class_names) != self.num_classes:
            raise ValueError(
                f"class_names has {len(self.class_names)} entries, expected num_classes={self.num_classes}"
            )
        return self


class Settings(BaseSettings):
    """Application settings loaded from RETRAINEX_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="RETRAINEX_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Feature extractor
    extractor_model: str = "mobilenet_v1_025_224"
    models_dir: str = "models"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=209_715_200, ge=1)

    # Classifier head
    classifier: ClassifierOptions = Field(default_factory=ClassifierOptions)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
