"""CSV export of the preprocessed training dataset."""

from __future__ import annotations

import csv
import io
from datetime import date
from pathlib import Path

import numpy as np
import structlog

from exolix.errors import TrainingValidationError
from exolix.ml.extraction import ExtractedDataset

logger = structlog.get_logger(__name__)

EXPORT_FILENAME_PREFIX = "exolix_preprocessed_data"


def _format_number(value: float) -> str:
    return np.format_float_positional(np.float32(value), trim="-")


def dataset_header(input_dimension: int) -> list[str]:
    return ["table", *[f"feature_{index + 1}" for index in range(input_dimension)], "label_encoded"]


def dataset_to_csv(dataset: ExtractedDataset) -> str:
    """Render kept rows as CSV: table name, feature values, encoded label."""
    if dataset.sample_count == 0:
        raise TrainingValidationError("No valid data to export (all rows have unmapped labels).")

    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
    writer.writerow(dataset_header(dataset.input_dimension))
    for row_index in range(dataset.sample_count):
        writer.writerow(
            [
                dataset.table_names[row_index],
                *[_format_number(value) for value in dataset.inputs[row_index]],
                int(dataset.outputs[row_index]),
            ]
        )
    return buffer.getvalue()


def export_filename(day: date | None = None) -> str:
    return f"{EXPORT_FILENAME_PREFIX}_{(day or date.today()).isoformat()}.csv"


def export_dataset_csv(dataset: ExtractedDataset, directory: str | Path, *, day: date | None = None) -> Path:
    target = Path(directory) / export_filename(day)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(dataset_to_csv(dataset), encoding="utf-8")
    logger.info("dataset_exported", path=str(target), rows=dataset.sample_count)
    return target
