"""
Aggregation / metric-column validation.

``COUNT`` works on anything, including ``*``.  ``SUM``, ``AVG``, ``MIN`` and
``MAX`` need a specific numeric column.  Results are field-scoped so a form
can attach them to the metric input; nothing here auto-corrects silently,
``auto_correct`` is an explicit opt-in.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Sequence, Union

from src.core.errors import ValidationError
from src.core.logging import get_logger
from src.widgets.catalog import load_catalog
from src.widgets.spec import AGGREGATIONS, ColumnMeta

logger = get_logger(__name__)

COLUMN_REQUIRED_KEY = "dashboard:validation.columnRequired"

_KEY_PREFIX = "dashboard:validation."
_WILDCARDS = ("", "*")

_DISPLAY_NAMES = {
    "count": "Count records",
    "sum": "Add up values",
    "avg": "Calculate average",
    "min": "Find minimum value",
    "max": "Find maximum value",
}


# ── Results ─────────────────────────────────────────────


@dataclass(frozen=True)
class AggregationValidationResult:
    is_valid: bool
    error: str | None = None
    suggestion: str | None = None
    message_key: str | None = None

    def raise_for_error(self, path: tuple[str, ...] = ("metric",)) -> None:
        if not self.is_valid:
            raise ValidationError(
                self.error or "Invalid aggregation",
                message_key=self.message_key,
                suggestion=self.suggestion,
                path=path,
            )


_VALID = AggregationValidationResult(is_valid=True)


def _invalid(key: str, error: str, suggestion: str) -> AggregationValidationResult:
    return AggregationValidationResult(
        is_valid=False, error=error, suggestion=suggestion, message_key=_KEY_PREFIX + key
    )


@dataclass(frozen=True)
class Ok:
    pass


@dataclass(frozen=True)
class Err:
    field: str
    message: str
    path: tuple[str, ...] = ("metric",)


MetricCheck = Union[Ok, Err]


@dataclass(frozen=True)
class AggregationConfig:
    aggregation: str | None
    metric: str | None
    columns: tuple[ColumnMeta, ...] | None = None  # None: no metadata available


# ── Helpers ─────────────────────────────────────────────


def normalize_aggregation(aggregation: str | None) -> str | None:
    """Lower-case a known aggregation; ``None`` for empty or unknown values."""
    if not aggregation or not isinstance(aggregation, str):
        return None
    lowered = aggregation.strip().lower()
    return lowered if lowered in AGGREGATIONS else None


def aggregation_display_name(aggregation: str | None) -> str:
    if not aggregation:
        return ""
    return _DISPLAY_NAMES.get(aggregation.lower(), aggregation.upper())


def _columns(columns: Sequence[ColumnMeta | dict] | None) -> list[ColumnMeta]:
    return [c if isinstance(c, ColumnMeta) else ColumnMeta.model_validate(c) for c in columns or []]


def _is_wildcard(metric: str | None) -> bool:
    return metric is None or metric.strip() in _WILDCARDS


def suggest_metric_for_aggregation(aggregation: str | None, columns: Sequence[ColumnMeta | dict] | None) -> str:
    """``*`` for COUNT, otherwise the first numeric column (``""`` when none)."""
    if not aggregation or aggregation.lower() == "count":
        return "*"
    catalog = load_catalog()
    for column in _columns(columns):
        if catalog.is_numeric_type(column.data_type):
            return column.name
    return ""


# ── Validation ──────────────────────────────────────────


def validate_aggregation(
    aggregation: str | None,
    metric: str | None,
    columns: Sequence[ColumnMeta | dict] | None = None,
) -> AggregationValidationResult:
    """Validate an aggregation / metric pair.

    ``columns=None`` means no metadata is available and column resolution
    is skipped; any list, even an empty one, must contain the metric.
    """
    if not aggregation:
        return _invalid(
            "aggregationRequired",
            "Aggregation type is required.",
            "Please select an aggregation function.",
        )

    agg = normalize_aggregation(aggregation)
    if agg is None:
        return _invalid(
            "unsupportedAggregation",
            f"Unsupported aggregation '{aggregation}'.",
            f"Please select one of: {', '.join(a.upper() for a in AGGREGATIONS)}.",
        )

    if agg == "count":
        return _VALID

    if _is_wildcard(metric):
        return _invalid(
            "columnRequired",
            f"{agg.upper()} requires a specific column. You cannot {agg} all columns (*).",
            "Please select a specific numeric column to perform this aggregation on.",
        )

    if columns is None:
        return _VALID

    metric = metric.strip()
    selected = next((c for c in _columns(columns) if c.name == metric), None)
    if selected is None:
        return _invalid(
            "columnNotFound",
            f'Column "{metric}" not found in the selected table.',
            "Please select a valid column from the available options.",
        )

    if not load_catalog().is_numeric_type(selected.data_type):
        return _invalid(
            "numericColumnRequired",
            f'Cannot perform {agg.upper()} on non-numeric column "{metric}" '
            f"(type: {selected.data_type or 'unknown'}).",
            "Please select a numeric column for mathematical aggregations, "
            "or use COUNT to count records.",
        )

    return _VALID


def check_metric_required(
    aggregation: str | None,
    metric: str | None,
    path: tuple[str, ...] = ("metric",),
) -> MetricCheck:
    """A metric column is required unless the aggregation is COUNT.

    A missing aggregation counts as COUNT, the builder's default.
    """
    agg = (aggregation or "count").strip().lower()
    if agg != "count" and _is_wildcard(metric):
        return Err(field=path[-1], message=COLUMN_REQUIRED_KEY, path=path)
    return Ok()


def auto_correct(config: AggregationConfig) -> AggregationConfig:
    """Return a valid configuration derived from ``config``.

    Never raises.  A wildcard metric on a numeric aggregation becomes
    ``COUNT(*)``; a missing, unknown or non-numeric metric is replaced by the
    first numeric column, or by ``COUNT(*)`` when the table has none.
    """
    result = validate_aggregation(config.aggregation, config.metric, config.columns)
    if result.is_valid:
        return config

    agg = normalize_aggregation(config.aggregation)
    fallback = replace(config, aggregation="count", metric="*")

    if agg is None:
        logger.info("Auto-correct: unusable aggregation %r -> COUNT(*)", config.aggregation)
        return fallback

    if config.metric is not None and config.metric.strip() == "*":
        logger.info("Auto-correct: %s(*) -> COUNT(*)", agg.upper())
        return fallback

    suggested = suggest_metric_for_aggregation(agg, config.columns)
    if suggested:
        logger.info("Auto-correct: %s metric %r -> %r", agg.upper(), config.metric, suggested)
        return replace(config, aggregation=agg, metric=suggested)

    logger.info("Auto-correct: no numeric column for %s -> COUNT(*)", agg.upper())
    return fallback
