"""Many-to-one encoding of raw label values into target class indices."""

from __future__ import annotations

from typing import Any

import numpy as np
import structlog

from exolix.errors import LabelMappingError
from exolix.schemas.mapping import LabelMapping, TargetLabel

logger = structlog.get_logger(__name__)


def normalize_label_value(value: Any) -> str | None:
    """Normalize a raw cell to the string form stored in ``mapped_values``."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class LabelEncoder:
    """Lookup table from raw label values to class indices.

    Class indices come from each label's explicit ``index`` when present,
    otherwise from its position in ``target_labels``. Indices must form the
    contiguous range ``0..k-1`` so that ``get_all_labels()`` lines up with the
    one-hot columns used downstream.
    """

    def __init__(self, target_labels: list[TargetLabel]) -> None:
        if not target_labels:
            raise LabelMappingError("Label mapping defines no target labels.")

        self._index_to_name: dict[int, str] = {}
        self._value_to_index: dict[str, int] = {}

        for position, label in enumerate(target_labels):
            class_index = label.index if label.index is not None else position
            if class_index in self._index_to_name:
                raise LabelMappingError(
                    f"Duplicate class index {class_index} for labels "
                    f"'{self._index_to_name[class_index]}' and '{label.name}'."
                )
            self._index_to_name[class_index] = label.name

            for raw_value in label.mapped_values:
                key = normalize_label_value(raw_value)
                if key is None:
                    continue
                previous = self._value_to_index.get(key)
                if previous is not None and previous != class_index:
                    logger.warning(
                        "label_value_remapped",
                        value=key,
                        previous_index=previous,
                        new_index=class_index,
                    )
                self._value_to_index[key] = class_index

        expected = set(range(len(self._index_to_name)))
        if set(self._index_to_name) != expected:
            missing = sorted(expected - set(self._index_to_name))
            raise LabelMappingError(
                f"Class indices must be contiguous from 0; missing {missing} "
                f"(got {sorted(self._index_to_name)})."
            )

    @classmethod
    def from_label_mapping(cls, label_mapping: LabelMapping | None) -> "LabelEncoder":
        if label_mapping is None:
            raise LabelMappingError("Feature mapping has no label mapping.")
        return cls(label_mapping.target_labels)

    @property
    def num_classes(self) -> int:
        return len(self._index_to_name)

    @property
    def mapped_values(self) -> list[str]:
        return list(self._value_to_index)

    def encode(self, value: Any) -> int | None:
        """Return the class index for a raw value, or None when unmapped."""
        key = normalize_label_value(value)
        if key is None:
            return None
        return self._value_to_index.get(key)

    def decode(self, index: int) -> str | None:
        return self._index_to_name.get(int(index))

    def get_all_labels(self) -> list[str]:
        """Class names ordered by class index."""
        return [self._index_to_name[index] for index in range(self.num_classes)]

    def one_hot(self, indices: np.ndarray | list[int]) -> np.ndarray:
        """One-hot matrix whose columns follow ``get_all_labels()``."""
        index_array = np.asarray(indices, dtype=np.int64)
        encoded = np.zeros((index_array.shape[0], self.num_classes), dtype=np.float32)
        if index_array.size:
            encoded[np.arange(index_array.shape[0]), index_array] = 1.0
        return encoded
