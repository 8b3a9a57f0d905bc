"""Pydantic schemas for training orchestration."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

InputMode = Literal["raw", "embedding"]


class TrainingConfig(BaseModel):
    """Training hyperparameters and input selection."""

    epochs: int = Field(default=50, ge=1, le=1000)
    learning_rate: float = Field(default=1e-3, gt=0, le=1)
    batch_size: int = Field(default=32, ge=1, le=4096)
    validation_split: float = Field(default=0.2, ge=0.0, le=0.9)
    seed: int | None = None
    device: Literal["cpu", "cuda", "mps", "auto"] = "cpu"
    # None follows the orchestrator's current mode.
    input_mode: InputMode | None = None
    dropout: float = Field(default=0.2, ge=0.0, le=0.9)


class EpochReport(BaseModel):
    """Per-epoch progress payload surfaced to observers."""

    epoch: int
    total_epochs: int
    progress: float
    train_loss: float
    train_accuracy: float
    val_loss: float | None = None
    val_accuracy: float | None = None
    seconds_remaining: float | None = None
