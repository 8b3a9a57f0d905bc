"""Pydantic schemas for the rows selected for training."""

from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator


class TableSelection(BaseModel):
    """Rows picked from one loaded table."""

    model_config = ConfigDict(populate_by_name=True)

    dataset_id: str = Field(validation_alias=AliasChoices("dataset_id", "datasetId"))
    selected_ids: list[str | int] = Field(
        default_factory=list,
        validation_alias=AliasChoices("selected_ids", "selectedIds"),
    )
    columns: list[str] = Field(default_factory=list)
    tab_name: str = Field(default="", validation_alias=AliasChoices("tab_name", "tabName"))
    tab_order: int = Field(default=0, validation_alias=AliasChoices("tab_order", "tabOrder"))


class TrainingSelection(BaseModel):
    """All tables contributing rows to one training run."""

    model_config = ConfigDict(populate_by_name=True)

    tables: list[TableSelection] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def wrap_bare_table_list(cls, data: Any) -> Any:
        """Stored selections may be a bare list of tables."""
        if isinstance(data, list):
            return {"tables": data}
        return data

    def sorted_tables(self) -> list[TableSelection]:
        """Tables in tab order; positions in this list are the table indices."""
        return sorted(self.tables, key=lambda table: table.tab_order)

    @property
    def total_count(self) -> int:
        return sum(len(table.selected_ids) for table in self.tables)

    def is_empty(self) -> bool:
        return not self.tables
