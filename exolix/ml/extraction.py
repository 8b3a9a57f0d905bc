"""Mapping-driven extraction of a numeric training matrix from selected tables."""

from __future__ import annotations

import math
from collections import Counter
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Any

import numpy as np
import structlog

from exolix.errors import ExtractionError
from exolix.ml.label_encoder import LabelEncoder, normalize_label_value
from exolix.schemas.mapping import FeatureMapping
from exolix.schemas.selection import TableSelection

logger = structlog.get_logger(__name__)

Record = Mapping[str, Any]

MAX_LOGGED_UNMAPPED = 3


@dataclass(frozen=True)
class TaggedRecord:
    """One record plus the position of its table in tab order."""

    table_index: int
    record: Record


@dataclass
class ExtractedDataset:
    """Numeric matrix, encoded labels and per-row provenance for kept rows."""

    inputs: np.ndarray
    outputs: np.ndarray
    output_raw: list[str]
    table_indices: np.ndarray
    table_names: list[str]
    input_dimension: int
    output_dimension: int
    skipped_count: int = 0
    total_rows: int = 0
    label_names: list[str] = field(default_factory=list)

    @property
    def sample_count(self) -> int:
        return int(self.outputs.shape[0])

    def label_distribution(self) -> dict[str, int]:
        """Count kept rows per target label name, in class order."""
        counts = Counter(int(value) for value in self.outputs.tolist())
        distribution: dict[str, int] = {}
        for index, name in enumerate(self.label_names):
            distribution[name] = counts.get(index, 0)
        return distribution

    def with_inputs(self, inputs: np.ndarray) -> "ExtractedDataset":
        """Copy with a substituted input matrix; labels and provenance are kept."""
        matrix = np.asarray(inputs, dtype=np.float32)
        if matrix.ndim != 2 or matrix.shape[0] != self.sample_count:
            raise ExtractionError(
                f"Substituted matrix has shape {matrix.shape}; expected {self.sample_count} rows."
            )
        return replace(self, inputs=matrix, input_dimension=int(matrix.shape[1]))


def coerce_numeric(value: Any) -> float:
    """Convert a raw cell to float; blank, null, non-numeric and non-finite become 0.0."""
    if value is None:
        return 0.0
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number):
        return 0.0
    return number


def concatenate_tables(table_records: Sequence[Sequence[Record]]) -> list[TaggedRecord]:
    """Flatten per-table record lists, tagging each record with its table index."""
    rows: list[TaggedRecord] = []
    for table_index, records in enumerate(table_records):
        for record in records:
            rows.append(TaggedRecord(table_index=table_index, record=record))
    return rows


class FeatureExtractor:
    """Resolve a FeatureMapping against tagged records.

    Missing or invalid feature cells are zero-filled so that rows stay
    usable; rows whose label maps to no target label are dropped entirely.
    """

    def __init__(self, mapping: FeatureMapping, encoder: LabelEncoder | None = None) -> None:
        self.mapping = mapping
        self.encoder = encoder or LabelEncoder.from_label_mapping(mapping.label_mapping)
        self.skipped_count = 0

    def _input_row(self, tagged: TaggedRecord) -> list[float]:
        row: list[float] = []
        for feature in self.mapping.input_features:
            column = feature.column_for_table(tagged.table_index)
            if column is None:
                row.append(0.0)
                continue
            row.append(coerce_numeric(tagged.record.get(column.column_name)))
        return row

    def _output_value(self, tagged: TaggedRecord) -> Any:
        column = self.mapping.output_feature.column_for_table(tagged.table_index)
        if column is None:
            return None
        return tagged.record.get(column.column_name)

    def extract(
        self,
        table_records: Sequence[Sequence[Record]],
        tables: Sequence[TableSelection] | None = None,
    ) -> ExtractedDataset:
        """Build the dataset from records grouped per table in tab order."""
        rows = concatenate_tables(table_records)
        return self.extract_rows(rows, tables)

    def extract_rows(
        self,
        rows: Sequence[TaggedRecord],
        tables: Sequence[TableSelection] | None = None,
    ) -> ExtractedDataset:
        expected_width = self.mapping.input_dimension
        inputs: list[list[float]] = []
        outputs: list[int] = []
        output_raw: list[str] = []
        table_indices: list[int] = []
        table_names: list[str] = []
        unmapped_examples: list[str] = []
        self.skipped_count = 0

        for tagged in rows:
            raw_label = self._output_value(tagged)
            encoded = self.encoder.encode(raw_label)
            if encoded is None:
                self.skipped_count += 1
                if len(unmapped_examples) < MAX_LOGGED_UNMAPPED:
                    unmapped_examples.append(normalize_label_value(raw_label) or "unknown")
                continue

            row = self._input_row(tagged)
            if len(row) != expected_width:
                raise ExtractionError(
                    f"Row from table {tagged.table_index} resolved {len(row)} values; "
                    f"mapping declares {expected_width} input features."
                )

            inputs.append(row)
            outputs.append(encoded)
            output_raw.append(normalize_label_value(raw_label) or "unknown")
            table_indices.append(tagged.table_index)
            table_names.append(self._table_name(tagged.table_index, tables))

        matrix = np.asarray(inputs, dtype=np.float32).reshape(len(inputs), expected_width)
        if matrix.shape[1] != expected_width:
            raise ExtractionError(
                f"Extracted matrix width {matrix.shape[1]} differs from {expected_width} declared features."
            )

        dataset = ExtractedDataset(
            inputs=matrix,
            outputs=np.asarray(outputs, dtype=np.int64),
            output_raw=output_raw,
            table_indices=np.asarray(table_indices, dtype=np.int64),
            table_names=table_names,
            input_dimension=expected_width,
            output_dimension=self.encoder.num_classes,
            skipped_count=self.skipped_count,
            total_rows=len(rows),
            label_names=self.encoder.get_all_labels(),
        )

        if self.skipped_count:
            logger.warning(
                "rows_skipped_unmapped_label",
                skipped=self.skipped_count,
                total_rows=len(rows),
                examples=unmapped_examples,
            )
        logger.info(
            "dataset_extracted",
            sample_count=dataset.sample_count,
            skipped=dataset.skipped_count,
            input_dimension=dataset.input_dimension,
            output_dimension=dataset.output_dimension,
        )
        return dataset

    def _table_name(self, table_index: int, tables: Sequence[TableSelection] | None) -> str:
        if tables is not None and 0 <= table_index < len(tables) and tables[table_index].tab_name:
            return tables[table_index].tab_name
        if 0 <= table_index < len(self.mapping.table_order):
            return self.mapping.table_order[table_index]
        return f"table_{table_index}"
