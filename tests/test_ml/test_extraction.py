"""Tests for mapping-driven feature extraction."""

from __future__ import annotations

import math

import numpy as np
import pytest

from exolix.errors import ExtractionError
from exolix.ml.extraction import FeatureExtractor, coerce_numeric, concatenate_tables
from exolix.schemas.mapping import FeatureMapping
from exolix.schemas.selection import TableSelection


def _single_table_mapping() -> FeatureMapping:
    return FeatureMapping.model_validate(
        {
            "inputFeatures": [
                {"columns": [{"tableIndex": 0, "columnName": "period", "tableName": "kepler"}]},
                {"columns": [{"tableIndex": 0, "columnName": "radius", "tableName": "kepler"}]},
            ],
            "outputFeature": {"columns": [{"tableIndex": 0, "columnName": "disposition", "tableName": "kepler"}]},
            "labelMapping": {
                "uniqueValues": ["CONFIRMED", "CANDIDATE", "FALSE POSITIVE", "REFUTED"],
                "targetLabels": [
                    {"id": "label_1", "name": "planet", "index": 0, "mappedValues": ["CONFIRMED", "CANDIDATE"]},
                    {"id": "label_2", "name": "not planet", "index": 1, "mappedValues": ["FALSE POSITIVE"]},
                ],
            },
            "tableOrder": ["kepler"],
        }
    )


def _two_table_mapping() -> FeatureMapping:
    return FeatureMapping.model_validate(
        {
            "inputFeatures": [
                {
                    "columns": [
                        {"tableIndex": 1, "columnName": "pl_orbper", "tableName": "tess"},
                        {"tableIndex": 0, "columnName": "koi_period", "tableName": "kepler"},
                    ]
                },
                {"columns": [{"tableIndex": 0, "columnName": "koi_depth", "tableName": "kepler"}]},
            ],
            "outputFeature": {
                "columns": [
                    {"tableIndex": 0, "columnName": "koi_disposition", "tableName": "kepler"},
                    {"tableIndex": 1, "columnName": "tfopwg_disp", "tableName": "tess"},
                ]
            },
            "labelMapping": {
                "uniqueValues": ["CONFIRMED", "CP", "FP"],
                "targetLabels": [
                    {"name": "planet", "mappedValues": ["CONFIRMED", "CP"]},
                    {"name": "false positive", "mappedValues": ["FP"]},
                ],
            },
            "tableOrder": ["kepler", "tess"],
        }
    )


def test_unmapped_labels_exclude_rows_and_are_counted() -> None:
    dispositions = ["CONFIRMED"] * 4 + ["FALSE POSITIVE"] * 4 + ["REFUTED", None]
    records = [
        {"period": str(index + 1), "radius": index * 0.5, "disposition": disposition}
        for index, disposition in enumerate(dispositions)
    ]

    dataset = FeatureExtractor(_single_table_mapping()).extract([records])

    assert dataset.sample_count == 8
    assert dataset.skipped_count == 2
    assert dataset.total_rows == 10
    assert dataset.sample_count + dataset.skipped_count == dataset.total_rows
    assert dataset.inputs.shape == (8, 2)
    assert all(len(row) == 2 for row in dataset.inputs)
    assert dataset.outputs.tolist() == [0, 0, 0, 0, 1, 1, 1, 1]
    assert "REFUTED" not in dataset.output_raw


def test_invalid_feature_values_are_zero_filled() -> None:
    records = [
        {"period": "", "radius": None, "disposition": "CONFIRMED"},
        {"period": "abc", "radius": "nan", "disposition": "CONFIRMED"},
        {"period": float("inf"), "disposition": "CANDIDATE"},
        {"period": " 3.5 ", "radius": 2, "disposition": "FALSE POSITIVE"},
    ]

    dataset = FeatureExtractor(_single_table_mapping()).extract([records])

    assert dataset.inputs.dtype == np.float32
    assert dataset.inputs.tolist() == [[0.0, 0.0], [0.0, 0.0], [0.0, 0.0], [3.5, 2.0]]
    assert dataset.sample_count == 4


def test_heterogeneous_tables_resolve_per_table_columns() -> None:
    kepler = [
        {"koi_period": "10.5", "koi_depth": "200", "koi_disposition": "CONFIRMED"},
        {"koi_period": "3.1", "koi_depth": "50", "koi_disposition": "FP"},
    ]
    tess = [
        {"pl_orbper": "7.25", "tfopwg_disp": "CP"},
        {"pl_orbper": "1.0", "tfopwg_disp": "KP"},
    ]
    tables = [
        TableSelection(dataset_id="k", tab_name="kepler", tab_order=0),
        TableSelection(dataset_id="t", tab_name="tess", tab_order=1),
    ]

    dataset = FeatureExtractor(_two_table_mapping()).extract([kepler, tess], tables)

    # The depth feature has no TESS column, so TESS rows read 0.0 there.
    np.testing.assert_allclose(dataset.inputs, [[10.5, 200.0], [3.1, 50.0], [7.25, 0.0]], rtol=1e-6)
    assert dataset.outputs.tolist() == [0, 1, 0]
    assert dataset.table_indices.tolist() == [0, 0, 1]
    assert dataset.table_names == ["kepler", "kepler", "tess"]
    assert dataset.skipped_count == 1
    assert dataset.output_dimension == 2


def test_table_names_fall_back_to_mapping_order() -> None:
    kepler = [{"koi_period": "1", "koi_depth": "2", "koi_disposition": "FP"}]

    dataset = FeatureExtractor(_two_table_mapping()).extract([kepler, []])

    assert dataset.table_names == ["kepler"]


def test_blank_tab_names_fall_back_to_mapping_order_then_position() -> None:
    kepler = [{"koi_period": "1", "koi_depth": "2", "koi_disposition": "FP"}]
    tess = [{"pl_orbper": "4", "tfopwg_disp": "CP"}]
    unnamed = [TableSelection(dataset_id="a", tab_name=""), TableSelection(dataset_id="b", tab_name="")]

    named = FeatureExtractor(_two_table_mapping()).extract([kepler, tess], unnamed)
    no_order = _two_table_mapping().model_copy(update={"table_order": []})
    positional = FeatureExtractor(no_order).extract([kepler, tess], unnamed)

    assert named.table_names == ["kepler", "tess"]
    assert positional.table_names == ["table_0", "table_1"]


def test_label_distribution_counts_kept_rows() -> None:
    records = [{"period": 1, "radius": 1, "disposition": value} for value in ["CONFIRMED", "CANDIDATE", "FALSE POSITIVE"]]

    dataset = FeatureExtractor(_single_table_mapping()).extract([records])

    assert dataset.label_distribution() == {"planet": 2, "not planet": 1}


def test_empty_input_yields_empty_matrix_with_declared_width() -> None:
    dataset = FeatureExtractor(_single_table_mapping()).extract([[]])

    assert dataset.inputs.shape == (0, 2)
    assert dataset.sample_count == 0
    assert dataset.total_rows == 0


def test_with_inputs_substitutes_matrix_and_keeps_labels() -> None:
    records = [{"period": 1, "radius": 1, "disposition": "CONFIRMED"}, {"period": 2, "radius": 2, "disposition": "FALSE POSITIVE"}]
    dataset = FeatureExtractor(_single_table_mapping()).extract([records])

    embedded = dataset.with_inputs(np.ones((2, 5)))

    assert embedded.input_dimension == 5
    assert embedded.outputs.tolist() == dataset.outputs.tolist()
    assert dataset.input_dimension == 2
    with pytest.raises(ExtractionError):
        dataset.with_inputs(np.ones((3, 5)))


def test_concatenate_tables_tags_rows_with_position() -> None:
    rows = concatenate_tables([[{"a": 1}], [{"a": 2}, {"a": 3}]])

    assert [row.table_index for row in rows] == [0, 1, 1]
    assert rows[2].record == {"a": 3}


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("4.2", 4.2), (7, 7.0), (True, 1.0), ("  ", 0.0), (None, 0.0), ("1e3", 1000.0), ("-inf", 0.0), ([1], 0.0)],
)
def test_coerce_numeric(raw, expected) -> None:
    assert math.isclose(coerce_numeric(raw), expected)
