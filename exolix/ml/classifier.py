"""Feed-forward classifier and the trainer contract used by the orchestrator."""

from __future__ import annotations

import asyncio
import io
import time
from dataclasses import dataclass, field
from typing import Callable, Protocol

import numpy as np
import structlog
import torch
import torch.nn as nn
from torch.utils.data import DataLoader, TensorDataset

from exolix.schemas.training import TrainingConfig

logger = structlog.get_logger(__name__)


@dataclass
class PreparedTensors:
    """Train/validation arrays handed to a trainer; ``y_*`` are one-hot, ``labels_*`` indices."""

    x_train: np.ndarray
    y_train: np.ndarray
    x_val: np.ndarray
    y_val: np.ndarray
    labels_train: np.ndarray
    labels_val: np.ndarray
    class_labels: list[str] = field(default_factory=list)

    @property
    def input_dimension(self) -> int:
        return int(self.x_train.shape[1]) if self.x_train.ndim == 2 else 0

    @property
    def has_validation(self) -> bool:
        return int(self.labels_val.shape[0]) > 0


@dataclass
class EpochMetrics:
    """Metrics for one epoch."""

    epoch: int
    train_loss: float
    train_accuracy: float
    val_loss: float | None
    val_accuracy: float | None
    duration_sec: float


EpochCallback = Callable[[EpochMetrics], None]


class TabularClassifier(nn.Module):
    """Dense 1024 (sigmoid) -> batch norm -> dropout -> dense 64 -> dense 8 -> logits."""

    def __init__(self, num_features: int, num_classes: int, dropout: float = 0.2) -> None:
        super().__init__()
        self.num_features = num_features
        self.num_classes = num_classes
        self.dropout = dropout
        self.network = nn.Sequential(
            nn.Linear(num_features, 1024),
            nn.Sigmoid(),
            nn.BatchNorm1d(1024),
            nn.Dropout(dropout),
            nn.Linear(1024, 64),
            nn.ReLU(),
            nn.Linear(64, 8),
            nn.ReLU(),
            nn.Linear(8, num_classes),
        )

    def forward(self, features: torch.Tensor) -> torch.Tensor:
        return self.network(features)


@dataclass
class TrainedModel:
    model: TabularClassifier
    class_labels: list[str]
    metrics_history: list[EpochMetrics] = field(default_factory=list)
    config: dict[str, object] = field(default_factory=dict)
    stopped_early: bool = False

    @property
    def final_metrics(self) -> EpochMetrics | None:
        return self.metrics_history[-1] if self.metrics_history else None

    def predict(self, inputs: np.ndarray) -> np.ndarray:
        """Class indices for a batch of feature rows."""
        self.model.eval()
        device = next(self.model.parameters()).device
        with torch.no_grad():
            logits = self.model(torch.as_tensor(np.asarray(inputs, dtype=np.float32), device=device))
        return torch.argmax(logits, dim=1).cpu().numpy()

    def to_bytes(self) -> bytes:
        """Serialize weights, architecture and class labels as a torch checkpoint."""
        checkpoint = {
            "model_state_dict": {key: value.cpu() for key, value in self.model.state_dict().items()},
            "num_features": self.model.num_features,
            "num_classes": self.model.num_classes,
            "dropout": self.model.dropout,
            "class_labels": list(self.class_labels),
            "config": dict(self.config),
            "metrics_history": [
                {
                    "epoch": m.epoch,
                    "train_loss": m.train_loss,
                    "train_accuracy": m.train_accuracy,
                    "val_loss": m.val_loss,
                    "val_accuracy": m.val_accuracy,
                }
                for m in self.metrics_history
            ],
        }
        buffer = io.BytesIO()
        torch.save(checkpoint, buffer)
        return buffer.getvalue()


def load_model_bytes(payload: bytes, device: str = "cpu") -> TrainedModel:
    """
    Restore a model serialized by ``TrainedModel.to_bytes``.

    Raises:
        ValueError: If the payload is not a valid checkpoint
    """
    try:
        checkpoint = torch.load(io.BytesIO(payload), map_location=device, weights_only=True)
        model = TabularClassifier(
            num_features=int(checkpoint["num_features"]),
            num_classes=int(checkpoint["num_classes"]),
            dropout=float(checkpoint.get("dropout", 0.2)),
        )
        model.load_state_dict(checkpoint["model_state_dict"])
    except Exception as e:
        logger.error("failed_to_load_checkpoint", error=str(e))
        raise ValueError(f"Failed to load checkpoint: {e}") from e

    model.to(device)
    model.eval()
    history = [
        EpochMetrics(
            epoch=int(entry["epoch"]),
            train_loss=float(entry["train_loss"]),
            train_accuracy=float(entry["train_accuracy"]),
            val_loss=entry.get("val_loss"),
            val_accuracy=entry.get("val_accuracy"),
            duration_sec=0.0,
        )
        for entry in checkpoint.get("metrics_history", [])
    ]
    return TrainedModel(
        model=model,
        class_labels=list(checkpoint.get("class_labels", [])),
        metrics_history=history,
        config=dict(checkpoint.get("config", {})),
    )


class Trainer(Protocol):
    async def fit(
        self,
        tensors: PreparedTensors,
        *,
        num_classes: int,
        config: TrainingConfig,
        progress_callback: EpochCallback | None = None,
    ) -> TrainedModel: ...


class TabularTrainer:
    """Adam + cross-entropy training loop that yields to the event loop after every epoch."""

    def __init__(self, stop_signal: Callable[[], bool] | None = None) -> None:
        self.stop_signal = stop_signal

    @staticmethod
    def _resolve_device(requested: str) -> torch.device:
        if requested != "auto":
            return torch.device(requested)
        if torch.cuda.is_available():
            return torch.device("cuda")
        if getattr(torch.backends, "mps", None) and torch.backends.mps.is_available():
            return torch.device("mps")
        return torch.device("cpu")

    async def fit(
        self,
        tensors: PreparedTensors,
        *,
        num_classes: int,
        config: TrainingConfig,
        progress_callback: EpochCallback | None = None,
    ) -> TrainedModel:
        train_rows = int(tensors.labels_train.shape[0])
        if train_rows < 2:
            raise ValueError(f"Training needs at least 2 rows; got {train_rows}.")
        if config.seed is not None:
            torch.manual_seed(config.seed)

        device = self._resolve_device(config.device)
        model = TabularClassifier(tensors.input_dimension, num_classes, dropout=config.dropout).to(device)
        optimizer = torch.optim.Adam(model.parameters(), lr=config.learning_rate)
        criterion = nn.CrossEntropyLoss()

        train_loader = DataLoader(
            TensorDataset(
                torch.as_tensor(tensors.x_train, dtype=torch.float32),
                torch.as_tensor(tensors.labels_train, dtype=torch.long),
            ),
            batch_size=config.batch_size,
            shuffle=True,
        )
        val_loader = DataLoader(
            TensorDataset(
                torch.as_tensor(tensors.x_val, dtype=torch.float32),
                torch.as_tensor(tensors.labels_val, dtype=torch.long),
            ),
            batch_size=config.batch_size,
        )

        logger.info(
            "training_started",
            train_size=int(tensors.labels_train.shape[0]),
            val_size=int(tensors.labels_val.shape[0]),
            input_dimension=tensors.input_dimension,
            num_classes=num_classes,
            epochs=config.epochs,
            device=str(device),
        )

        history: list[EpochMetrics] = []
        stopped_early = False
        for epoch in range(1, config.epochs + 1):
            started = time.perf_counter()
            train_loss, train_accuracy = self._train_epoch(model, train_loader, optimizer, criterion, device)
            val_loss, val_accuracy = None, None
            if tensors.has_validation:
                val_loss, val_accuracy = self._validate(model, val_loader, criterion, device)

            metrics = EpochMetrics(
                epoch=epoch,
                train_loss=train_loss,
                train_accuracy=train_accuracy,
                val_loss=val_loss,
                val_accuracy=val_accuracy,
                duration_sec=time.perf_counter() - started,
            )
            history.append(metrics)
            if progress_callback:
                progress_callback(metrics)

            await asyncio.sleep(0)

            if self.stop_signal and self.stop_signal():
                logger.info("training_interrupted_by_stop_signal", epoch=epoch)
                stopped_early = True
                break

        final = history[-1] if history else None
        logger.info(
            "training_finished",
            epochs_run=len(history),
            train_accuracy=final.train_accuracy if final else None,
            val_accuracy=final.val_accuracy if final else None,
        )
        return TrainedModel(
            model=model,
            class_labels=list(tensors.class_labels),
            metrics_history=history,
            config=config.model_dump(),
            stopped_early=stopped_early,
        )

    @staticmethod
    def _train_epoch(
        model: TabularClassifier,
        dataloader: DataLoader,
        optimizer: torch.optim.Optimizer,
        criterion: nn.Module,
        device: torch.device,
    ) -> tuple[float, float]:
        model.train()
        total_loss = 0.0
        correct = 0
        total = 0
        steps = 0
        for features, labels in dataloader:
            # Batch norm cannot train on a single row.
            if features.size(0) < 2:
                continue
            features = features.to(device)
            labels = labels.to(device)

            optimizer.zero_grad(set_to_none=True)
            logits = model(features)
            loss = criterion(logits, labels)
            loss.backward()
            optimizer.step()

            total_loss += float(loss.item())
            correct += int((torch.argmax(logits, dim=1) == labels).sum().item())
            total += int(labels.size(0))
            steps += 1

        if steps == 0:
            raise ValueError("No training batch held at least 2 rows; raise batch_size.")
        return total_loss / steps, correct / total

    @staticmethod
    def _validate(
        model: TabularClassifier,
        dataloader: DataLoader,
        criterion: nn.Module,
        device: torch.device,
    ) -> tuple[float, float]:
        model.eval()
        total_loss = 0.0
        correct = 0
        total = 0
        steps = 0
        with torch.no_grad():
            for features, labels in dataloader:
                features = features.to(device)
                labels = labels.to(device)
                logits = model(features)
                total_loss += float(criterion(logits, labels).item())
                correct += int((torch.argmax(logits, dim=1) == labels).sum().item())
                total += int(labels.size(0))
                steps += 1

        avg_loss = total_loss / steps if steps > 0 else 0.0
        accuracy = correct / total if total > 0 else 0.0
        return avg_loss, accuracy
