"""
Widget configuration checks run before a query is built.

Configs here are the raw camelCase mappings the dashboard stores; each check
returns a (possibly amended) copy and never mutates its input.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence

from src.core.errors import ValidationError
from src.core.logging import get_logger
from src.widgets.aggregation import Err, check_metric_required, validate_aggregation
from src.widgets.catalog import load_catalog
from src.widgets.spec import WIDGET_TYPES, ColumnMeta

logger = get_logger(__name__)


@dataclass
class ConfigValidationReport:
    config: dict[str, Any]
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def _columns(columns: Sequence[ColumnMeta | dict] | None) -> list[ColumnMeta]:
    return [c if isinstance(c, ColumnMeta) else ColumnMeta.model_validate(c) for c in columns or []]


def date_columns(columns: Sequence[ColumnMeta | dict] | None) -> list[ColumnMeta]:
    """Columns that can be time-bucketed."""
    catalog = load_catalog()
    return [c for c in _columns(columns) if catalog.is_time_bucketable(c.data_type)]


def validate_time_aggregation(
    config: dict[str, Any],
    widget_type: str,
    columns: Sequence[ColumnMeta | dict] | None,
) -> tuple[dict[str, Any], list[str]]:
    """Drop ``timeAggregation`` when the chart x-axis cannot be time-bucketed.

    Raises ``ValidationError`` when the x-axis column does not exist.
    """
    validated = dict(config)
    warnings: list[str] = []

    if widget_type != "chart" or not config.get("timeAggregation") or not config.get("xAxis"):
        return validated, warnings

    x_axis = config["xAxis"]
    known = _columns(columns)
    column = next((c for c in known if c.name == x_axis), None)
    if column is None:
        raise ValidationError(
            f"Column '{x_axis}' not found in table. "
            f"Available columns: {', '.join(c.name for c in known)}",
            message_key="dashboard:validation.columnNotFound",
            path=("xAxis",),
        )

    if not load_catalog().is_time_bucketable(column.data_type):
        validated.pop("timeAggregation", None)
        warnings.append(
            f"Time aggregation disabled for non-date column '{x_axis}' (type: {column.data_type}). "
            "Time aggregation requires date/timestamp columns."
        )
        logger.info("Dropped timeAggregation for non-date x-axis '%s'", x_axis)

    return validated, warnings


def validate_widget_config(widget_type: str, config: dict[str, Any] | None) -> list[str]:
    """Structural requirements per widget type; returns error messages."""
    config = config or {}
    errors: list[str] = []
    if widget_type not in WIDGET_TYPES:
        errors.append(f"Unsupported widget type: {widget_type}")
    elif widget_type == "chart" and not config.get("xAxis"):
        errors.append("Chart widgets require xAxis configuration")
    return errors


def validate_configuration(
    config: dict[str, Any] | None,
    widget_type: str,
    columns: Sequence[ColumnMeta | dict] | None,
) -> ConfigValidationReport:
    """Run every check and collect the results into one report."""
    report = ConfigValidationReport(config=dict(config or {}))
    report.errors.extend(validate_widget_config(widget_type, report.config))

    try:
        report.config, warnings = validate_time_aggregation(report.config, widget_type, columns)
        report.warnings.extend(warnings)
    except ValidationError as exc:
        report.errors.append(exc.message)

    if widget_type in ("chart", "metric"):
        metric_key = "yAxis" if widget_type == "chart" else "metric"
        aggregation = report.config.get("aggregation")
        metric = report.config.get(metric_key)

        check = check_metric_required(aggregation, metric, path=(metric_key,))
        if isinstance(check, Err):
            report.errors.append(check.message)
        elif aggregation:
            result = validate_aggregation(aggregation, metric, columns)
            if not result.is_valid:
                report.errors.append(result.error)

    return report
