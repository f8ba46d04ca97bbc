"""
Human-readable series labels for charts.

Priority: aggregation label for the synthetic ``value`` field, then the
column's display name, then a Title Case rendering of the raw key.
"""
from __future__ import annotations

from typing import Sequence

from src.core.config import get_settings
from src.widgets.chart_data import SERIES_SEPARATOR, VALUE_FIELD
from src.widgets.spec import ChartConfig, ColumnMeta

_AGGREGATION_LABELS = {
    "sum": "Sum",
    "avg": "Average",
    "min": "Minimum",
    "max": "Maximum",
}


def format_column_name(column: str | None) -> str:
    """``order_total`` -> ``Order Total``."""
    if not column:
        return "Records"
    if column == "*":
        return "All Records"
    return " ".join(word[:1].upper() + word[1:].lower() for word in column.split("_"))


def truncate_label(label: str, max_length: int | None = None) -> str:
    limit = max_length or get_settings().label_max_length
    if len(label) <= limit:
        return label
    return label[: limit - 3] + "..."


def _display_name(key: str, columns: Sequence[ColumnMeta | dict] | None) -> str | None:
    for column in columns or []:
        meta = column if isinstance(column, ColumnMeta) else ColumnMeta.model_validate(column)
        if meta.name == key:
            return meta.display_name or None
    return None


def is_aggregation_field(key: str, config: ChartConfig) -> bool:
    return key == VALUE_FIELD and config.aggregation is not None


def aggregation_label(config: ChartConfig) -> str:
    aggregation = (config.aggregation or "").lower()
    column = config.y_axis

    if not aggregation:
        return "Value"
    if aggregation == "count":
        if column == "*":
            return "Total Count"
        return f"Count of {format_column_name(column)}"

    name = _AGGREGATION_LABELS.get(aggregation, aggregation.upper())
    if column and column != "*":
        return f"{name} of {format_column_name(column)}"
    return f"{name} Value"


def generate_label(key: str, config: ChartConfig, columns: Sequence[ColumnMeta | dict] | None = None) -> str:
    if is_aggregation_field(key, config):
        return truncate_label(aggregation_label(config))

    display = _display_name(key, columns)
    if display:
        return truncate_label(display)

    if SERIES_SEPARATOR in key:
        parts = [_display_name(p, columns) or format_column_name(p) for p in key.split(SERIES_SEPARATOR)]
        return truncate_label(SERIES_SEPARATOR.join(parts))

    return truncate_label(format_column_name(key))


def generate_labels(
    config: ChartConfig,
    series_keys: Sequence[str],
    columns: Sequence[ColumnMeta | dict] | None = None,
) -> dict[str, str]:
    """Label every series key."""
    return {key: generate_label(key, config, columns) for key in series_keys}
