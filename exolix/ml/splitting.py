"""Class-stratified train/validation partitioning."""

from __future__ import annotations

import math
from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np
import structlog

from exolix.ml.extraction import ExtractedDataset

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SplitIndices:
    train: np.ndarray
    val: np.ndarray


@dataclass
class DatasetSplit:
    """Train and validation views of one ExtractedDataset."""

    x_train: np.ndarray
    y_train: np.ndarray
    x_val: np.ndarray
    y_val: np.ndarray
    indices: SplitIndices

    @property
    def train_size(self) -> int:
        return int(self.y_train.shape[0])

    @property
    def val_size(self) -> int:
        return int(self.y_val.shape[0])


def validation_slice_size(class_count: int, validation_split: float) -> int:
    """Rounded validation share of one class, halves rounding up."""
    return int(math.floor(class_count * validation_split + 0.5))


class StratifiedSplitter:
    """Shuffle each class independently and carve its validation slice off the front."""

    def __init__(self, validation_split: float = 0.2, seed: int | None = None) -> None:
        if not 0.0 <= validation_split < 1.0:
            raise ValueError(f"validation_split must be in [0, 1), got {validation_split}")
        self.validation_split = float(validation_split)
        self.seed = seed

    def split_indices(self, labels: Sequence[int] | np.ndarray, num_classes: int) -> SplitIndices:
        label_array = np.asarray(labels, dtype=np.int64)
        if label_array.size == 0:
            empty = np.array([], dtype=np.int64)
            return SplitIndices(train=empty, val=empty.copy())

        if label_array.min() < 0 or label_array.max() >= num_classes:
            raise ValueError(
                f"Labels must lie in [0, {num_classes}); got range "
                f"[{int(label_array.min())}, {int(label_array.max())}]"
            )

        by_label: dict[int, list[int]] = defaultdict(list)
        for index, label in enumerate(label_array.tolist()):
            by_label[int(label)].append(index)

        rng = np.random.default_rng(self.seed)
        train_indices: list[int] = []
        val_indices: list[int] = []

        for label in sorted(by_label):
            shuffled = np.array(by_label[label], dtype=np.int64)
            rng.shuffle(shuffled)
            # At least one row of every class stays in train.
            val_count = min(validation_slice_size(len(shuffled), self.validation_split), len(shuffled) - 1)
            val_indices.extend(shuffled[:val_count].tolist())
            train_indices.extend(shuffled[val_count:].tolist())

        if not val_indices and self.validation_split > 0:
            logger.warning(
                "validation_split_empty",
                sample_count=int(label_array.size),
                validation_split=self.validation_split,
            )

        return SplitIndices(
            train=np.array(train_indices, dtype=np.int64),
            val=np.array(val_indices, dtype=np.int64),
        )

    def split(self, dataset: ExtractedDataset) -> DatasetSplit:
        indices = self.split_indices(dataset.outputs, dataset.output_dimension)
        logger.info(
            "dataset_split",
            train_size=int(indices.train.size),
            val_size=int(indices.val.size),
            validation_split=self.validation_split,
        )
        return DatasetSplit(
            x_train=dataset.inputs[indices.train],
            y_train=dataset.outputs[indices.train],
            x_val=dataset.inputs[indices.val],
            y_val=dataset.outputs[indices.val],
            indices=indices,
        )
