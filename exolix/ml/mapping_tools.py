"""Helpers that build and check a FeatureMapping before it is handed to training."""

from __future__ import annotations

from collections.abc import Sequence

import structlog

from exolix.errors import TrainingValidationError
from exolix.ml.extraction import Record
from exolix.ml.label_encoder import normalize_label_value
from exolix.schemas.mapping import ColumnRef, Feature, FeatureMapping, LabelMapping, TargetLabel
from exolix.schemas.selection import TableSelection

logger = structlog.get_logger(__name__)


def analyze_output_labels(
    mapping: FeatureMapping,
    table_records: Sequence[Sequence[Record]],
) -> LabelMapping:
    """Collect the distinct output values and map each one to its own target label.

    Values are stringified and trimmed; empty cells are ignored. Labels are
    named ``Label 0..n-1`` following the sorted value order.
    """
    if not mapping.output_feature.columns:
        raise TrainingValidationError("No output feature columns defined.")

    unique_values: set[str] = set()
    for column in mapping.output_feature.columns:
        if column.table_index >= len(table_records):
            continue
        for record in table_records[column.table_index]:
            value = normalize_label_value(record.get(column.column_name))
            if value is not None:
                unique_values.add(value)

    if not unique_values:
        raise TrainingValidationError(
            "No values found in output columns; they are empty or missing from the data."
        )

    ordered = sorted(unique_values)
    label_mapping = LabelMapping(
        unique_values=ordered,
        target_labels=[
            TargetLabel(id=f"label_{position + 1}", name=f"Label {position}", index=position, mapped_values=[value])
            for position, value in enumerate(ordered)
        ],
    )
    logger.info("output_labels_analyzed", unique_values=len(ordered))
    return label_mapping


def assigned_column_names(mapping: FeatureMapping) -> set[str]:
    names = {column.column_name for feature in mapping.input_features for column in feature.columns}
    names.update(column.column_name for column in mapping.output_feature.columns)
    return names


def add_common_columns_as_features(
    mapping: FeatureMapping,
    tables: Sequence[TableSelection],
) -> tuple[FeatureMapping, list[str]]:
    """Add one input feature per column present in every table and not yet assigned.

    ``tables`` must already be in tab order. Returns the updated mapping and
    the column names that were added.
    """
    if not tables:
        return mapping, []

    common = [column for column in tables[0].columns if all(column in table.columns for table in tables[1:])]
    assigned = assigned_column_names(mapping)
    to_add = [column for column in common if column not in assigned]

    features = list(mapping.input_features)
    for column_name in to_add:
        features.append(
            Feature(
                id=f"input_{len(features) + 1}",
                name=column_name,
                columns=[
                    ColumnRef(table_index=table_index, column_name=column_name, table_name=table.tab_name)
                    for table_index, table in enumerate(tables)
                ],
            )
        )

    logger.info("common_columns_added", common=len(common), added=len(to_add))
    updated = mapping.model_copy(
        update={"input_features": features, "table_order": [table.tab_name for table in tables]}
    )
    return updated, to_add


def find_incomplete_features(mapping: FeatureMapping, table_count: int) -> list[int]:
    """Positions of input features mapped in some, but not all, tables."""
    return [
        position
        for position, feature in enumerate(mapping.input_features)
        if 0 < len(feature.columns) < table_count
    ]


def count_unmapped_values(label_mapping: LabelMapping | None) -> int:
    if label_mapping is None:
        return 0
    mapped = label_mapping.mapped_value_set()
    return sum(1 for value in label_mapping.unique_values if value not in mapped)


def prepare_mapping_for_training(mapping: FeatureMapping, tables: Sequence[TableSelection]) -> FeatureMapping:
    """Validate completeness and freeze class indices by label position.

    Every kept input feature and the output feature must read one column from
    each table. Unmapped label values are allowed; their rows are dropped
    during extraction.
    """
    table_count = len(tables)
    if table_count == 0:
        raise TrainingValidationError("No tables selected for training.")

    incomplete = find_incomplete_features(mapping, table_count)
    if incomplete:
        raise TrainingValidationError(
            f"Features {incomplete} are incomplete: each feature needs exactly one column "
            f"from each of the {table_count} tables."
        )

    complete_inputs = [feature for feature in mapping.input_features if len(feature.columns) == table_count]
    if not complete_inputs or len(mapping.output_feature.columns) != table_count:
        raise TrainingValidationError(
            "Map at least one complete input feature and one complete output label "
            "(both with columns from all tables)."
        )

    label_mapping = mapping.label_mapping
    if label_mapping is not None:
        if not label_mapping.target_labels:
            raise TrainingValidationError("Create at least one target label.")
        unmapped = count_unmapped_values(label_mapping)
        if unmapped:
            logger.warning("label_values_unmapped", unmapped=unmapped)
        label_mapping = label_mapping.model_copy(
            update={
                "target_labels": [
                    label.model_copy(update={"index": position})
                    for position, label in enumerate(label_mapping.target_labels)
                ]
            }
        )

    return mapping.model_copy(
        update={
            "input_features": complete_inputs,
            "label_mapping": label_mapping,
            "table_order": [table.tab_name for table in tables],
        }
    )
