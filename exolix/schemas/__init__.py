"""Pydantic schemas for mapping, selection and training documents."""

from exolix.schemas.mapping import ColumnRef, Feature, FeatureMapping, LabelMapping, TargetLabel
from exolix.schemas.selection import TableSelection, TrainingSelection
from exolix.schemas.training import EpochReport, InputMode, TrainingConfig

__all__ = [
    "ColumnRef",
    "EpochReport",
    "Feature",
    "FeatureMapping",
    "InputMode",
    "LabelMapping",
    "TableSelection",
    "TargetLabel",
    "TrainingConfig",
    "TrainingSelection",
]
