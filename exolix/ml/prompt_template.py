"""Prompt templates with ``{{i}}`` placeholders referring to input feature positions."""

from __future__ import annotations

import re
from collections.abc import Sequence
from typing import Any

from exolix.errors import TrainingValidationError

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*(\d+)\s*\}\}")
MISSING_VALUE = "unknown"

DEFAULT_PREAMBLE = (
    "You are an astrophysics assistant. Each row describes an exoplanet candidate observation."
)
DEFAULT_CLOSING = "Summarize the information to create a meaningful embedding."


def extract_placeholder_indices(template: str) -> list[int]:
    """Sorted unique feature positions referenced by the template."""
    return sorted({int(match) for match in PLACEHOLDER_PATTERN.findall(template)})


def validate_template(template: str, feature_count: int) -> list[int]:
    """Return the referenced indices, rejecting any outside ``0..feature_count-1``."""
    indices = extract_placeholder_indices(template)
    invalid = [index for index in indices if index >= feature_count]
    if invalid:
        raise TrainingValidationError(
            f"Template uses invalid index: {', '.join(str(index) for index in invalid)} "
            f"(only {feature_count} input features)."
        )
    return indices


def render_template(template: str, row: Sequence[Any]) -> str:
    """Fill placeholders from one row; missing, blank or out-of-range values read ``unknown``."""

    def substitute(match: re.Match[str]) -> str:
        index = int(match.group(1))
        if index >= len(row):
            return MISSING_VALUE
        value = row[index]
        if value is None or value == "":
            return MISSING_VALUE
        return str(value)

    return PLACEHOLDER_PATTERN.sub(substitute, template)


def build_default_template(feature_count: int, feature_names: Sequence[str | None] | None = None) -> str:
    if feature_count <= 0:
        return "I have data with feature {{0}}."

    if not feature_names:
        parts = ", ".join(f"feature {index} {{{{{index}}}}}" for index in range(feature_count))
        return f"I have this exoplanet data with {parts}. {DEFAULT_CLOSING}"

    lines = []
    for index in range(feature_count):
        name = feature_names[index] if index < len(feature_names) else None
        lines.append(f"- {name or f'feature_{index}'}: {{{{{index}}}}}")
    return f"{DEFAULT_PREAMBLE}\n\nFeatures:\n" + "\n".join(lines) + f"\n\n{DEFAULT_CLOSING}"
