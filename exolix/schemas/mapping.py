"""Pydantic schemas for feature mapping documents."""

from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator


class _Document(BaseModel):
    """Accept snake_case and the camelCase keys written by the mapping editor."""

    model_config = ConfigDict(populate_by_name=True)


class ColumnRef(_Document):
    """One source column of one table."""

    table_index: int = Field(ge=0, validation_alias=AliasChoices("table_index", "tableIndex"))
    column_name: str = Field(validation_alias=AliasChoices("column_name", "columnName"))
    table_name: str = Field(default="", validation_alias=AliasChoices("table_name", "tableName"))


class Feature(_Document):
    """Logical feature assembled from at most one column per table."""

    id: str | None = None
    name: str | None = Field(default=None, validation_alias=AliasChoices("name", "featureName"))
    columns: list[ColumnRef] = Field(
        default_factory=list,
        validation_alias=AliasChoices("columns", "mappedColumns"),
    )

    @field_validator("columns")
    @classmethod
    def validate_one_column_per_table(cls, columns: list[ColumnRef]) -> list[ColumnRef]:
        """A feature never holds two columns from the same table."""
        seen: set[int] = set()
        for column in columns:
            if column.table_index in seen:
                raise ValueError(
                    f"Feature has more than one column for table index {column.table_index}."
                )
            seen.add(column.table_index)
        return sorted(columns, key=lambda column: column.table_index)

    def column_for_table(self, table_index: int) -> ColumnRef | None:
        """Return the column this feature reads from one table, if any."""
        for column in self.columns:
            if column.table_index == table_index:
                return column
        return None

    def display_name(self, position: int) -> str:
        return self.name or f"feature_{position}"


class TargetLabel(_Document):
    """Named output class and the raw values that collapse into it."""

    id: str | None = None
    name: str
    index: int | None = Field(default=None, ge=0)
    mapped_values: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("mapped_values", "mappedValues"),
    )

    @field_validator("mapped_values", mode="before")
    @classmethod
    def stringify_values(cls, values: Any) -> list[str]:
        if values is None:
            return []
        return [str(value).strip() for value in values]


class LabelMapping(_Document):
    """Raw label values seen in data and their grouping into target labels."""

    unique_values: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("unique_values", "uniqueValues"),
    )
    target_labels: list[TargetLabel] = Field(
        default_factory=list,
        validation_alias=AliasChoices("target_labels", "targetLabels"),
    )

    @field_validator("unique_values", mode="before")
    @classmethod
    def stringify_unique_values(cls, values: Any) -> list[str]:
        if values is None:
            return []
        return sorted({str(value).strip() for value in values})

    def mapped_value_set(self) -> set[str]:
        return {value for label in self.target_labels for value in label.mapped_values}


class FeatureMapping(_Document):
    """User-declared assignment of table columns to inputs and the output label."""

    input_features: list[Feature] = Field(
        default_factory=list,
        validation_alias=AliasChoices("input_features", "inputFeatures"),
    )
    output_feature: Feature = Field(
        default_factory=Feature,
        validation_alias=AliasChoices("output_feature", "outputFeature"),
    )
    label_mapping: LabelMapping | None = Field(
        default=None,
        validation_alias=AliasChoices("label_mapping", "labelMapping"),
    )
    table_order: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("table_order", "tableOrder"),
    )

    @model_validator(mode="before")
    @classmethod
    def unwrap_stored_document(cls, data: Any) -> Any:
        """Stored documents may wrap the mapping as ``{"mapping": {...}}``."""
        if isinstance(data, dict) and "mapping" in data and isinstance(data["mapping"], dict):
            return data["mapping"]
        return data

    @property
    def input_dimension(self) -> int:
        return len(self.input_features)

    def is_empty(self) -> bool:
        return not self.input_features and not self.output_feature.columns
