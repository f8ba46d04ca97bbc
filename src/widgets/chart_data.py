"""
Turns rows returned for a chart widget into chart-ready data.

Steps, in order:
  1. numeric coercion of aggregate fields (Postgres often returns them as strings)
  2. timestamp strings on the x-axis field -> epoch milliseconds
  3. single series: rows pass through, series key = resolved y field
     multi series:  rows pivoted on the x value, one key per group value
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Sequence

from src.core.config import get_settings
from src.core.errors import DateParseError
from src.core.logging import get_logger
from src.widgets.dates import DateResolver
from src.widgets.query_builder import parse_typed_config
from src.widgets.spec import ChartConfig

logger = get_logger(__name__)

TIME_BUCKET_FIELD = "time_bucket"
VALUE_FIELD = "value"
EMPTY_SERIES_LABEL = "(empty)"
SERIES_SEPARATOR = " | "

_TIMESTAMP_RE = re.compile(r"^\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}")
_INTEGER_RE = re.compile(r"^-?\d+$")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Column names that usually hold aggregate output.
_COMMON_AGGREGATE_FIELDS = (
    "count", "sum", "avg", "average", "min", "max", "total", "amount",
    "quantity", "price", "revenue", "score", "rating", "percentage", "ratio",
)


@dataclass(frozen=True)
class FieldMapping:
    field_name: str
    is_aggregation: bool


@dataclass
class ChartDataResult:
    chart_data: list[Any]
    series_keys: list[str]
    original_config: ChartConfig | None = None


@dataclass
class NumericStats:
    total_records: int = 0
    transformed_fields: int = 0
    string_to_number_conversions: int = 0
    invalid_conversions: int = 0
    skipped_records: int = 0


@dataclass
class NumericTransformResult:
    data: list[Any]
    stats: NumericStats
    warnings: list[str] = field(default_factory=list)


# ── Numeric coercion ────────────────────────────────────


def parse_numeric_string(text: str) -> int | float | None:
    """Parse ``"1,234.50"`` / ``"$12"`` style strings; ``None`` when not a number."""
    cleaned = text.replace(",", "").strip()
    if cleaned.startswith("$"):
        cleaned = cleaned[1:]
    if not cleaned:
        return None
    if _INTEGER_RE.match(cleaned):
        return int(cleaned)
    try:
        number = float(cleaned)
    except ValueError:
        return None
    if number != number or number in (float("inf"), float("-inf")):
        return None
    return number


def aggregation_fields(config: ChartConfig) -> list[str]:
    """Fields that should hold numbers for this chart."""
    fields: list[str] = []
    if config.aggregation:
        fields.append(VALUE_FIELD)
    if config.y_axis and config.y_axis != "*":
        fields.append(config.y_axis)
    fields.extend(_COMMON_AGGREGATE_FIELDS)
    return list(dict.fromkeys(fields))


def coerce_numeric_fields(
    rows: Sequence[Any],
    fields: Sequence[str],
    default: int | float = 0,
) -> NumericTransformResult:
    """Coerce the named fields of every row to numbers.

    Unparseable, empty and null values become ``default``.  Rows that are not
    mappings are passed through untouched.
    """
    stats = NumericStats(total_records=len(rows))
    warnings: list[str] = []
    out: list[Any] = []

    for index, row in enumerate(rows):
        if not isinstance(row, dict):
            stats.skipped_records += 1
            warnings.append(f"Skipped invalid record at index {index}: not an object")
            out.append(row)
            continue

        record = dict(row)
        for name in fields:
            if name not in row:
                continue
            value = row[name]
            if isinstance(value, bool) or not isinstance(value, (int, float, str)):
                record[name] = default
                stats.transformed_fields += 1
                stats.invalid_conversions += 1
                warnings.append(f"Field '{name}' at record {index}: unsupported value {value!r}, using default")
            elif isinstance(value, str):
                parsed = parse_numeric_string(value)
                stats.transformed_fields += 1
                stats.string_to_number_conversions += 1
                if parsed is None:
                    record[name] = default
                    stats.invalid_conversions += 1
                    warnings.append(f"Field '{name}' at record {index}: cannot parse {value!r}, using default")
                else:
                    record[name] = parsed
            elif value != value or value in (float("inf"), float("-inf")):
                record[name] = default
                stats.transformed_fields += 1
                stats.invalid_conversions += 1
                warnings.append(f"Field '{name}' at record {index}: invalid number, using default")
        out.append(record)

    if warnings:
        logger.warning("Numeric coercion: %d issue(s), first: %s", len(warnings), warnings[0])
    return NumericTransformResult(data=out, stats=stats, warnings=warnings)


# ── Field resolution ────────────────────────────────────


def determine_x_axis_field(config: ChartConfig) -> str | None:
    """Time-bucketed charts come back keyed by ``time_bucket``."""
    if config.time_aggregation and config.x_axis:
        return TIME_BUCKET_FIELD
    return config.x_axis


def determine_y_axis_field(config: ChartConfig, rows: Sequence[Any]) -> FieldMapping:
    configured = config.y_axis or VALUE_FIELD
    first = rows[0] if rows and isinstance(rows[0], dict) else None

    if first is not None and configured in first:
        return FieldMapping(configured, is_aggregation=False)
    if config.aggregation or configured == "*" or (first is not None and VALUE_FIELD in first):
        return FieldMapping(VALUE_FIELD, is_aggregation=True)
    return FieldMapping(configured, is_aggregation=False)


def is_timestamp_string(value: Any) -> bool:
    return isinstance(value, str) and bool(_TIMESTAMP_RE.match(value))


def convert_timestamps(rows: Sequence[Any], field_name: str, resolver: DateResolver) -> list[Any]:
    """Replace timestamp strings in ``field_name`` with epoch milliseconds."""
    out: list[Any] = []
    for row in rows:
        if isinstance(row, dict) and is_timestamp_string(row.get(field_name)):
            try:
                instant, _ = resolver.parse_instant(row[field_name])
            except DateParseError:
                out.append(row)
                continue
            row = {**row, field_name: (instant - _EPOCH) // timedelta(milliseconds=1)}
        out.append(row)
    return out


# ── Pivoting ────────────────────────────────────────────


def series_key(record: dict[str, Any], group_columns: Sequence[str]) -> str:
    return SERIES_SEPARATOR.join(
        EMPTY_SERIES_LABEL if record.get(c) is None else str(record.get(c)) for c in group_columns
    )


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def pivot_series(
    rows: Sequence[Any],
    x_key: str,
    y_key: str,
    group_columns: Sequence[str],
    max_series: int,
) -> tuple[list[dict[str, Any]], list[str]]:
    """Pivot ``[{x, group, y}, ...]`` into ``[{x, <series>: y, ...}, ...]``.

    Only the ``max_series`` most frequent series are kept.  Duplicate
    numeric values for the same x and series are summed and series missing
    at some x are filled with 0.
    """
    records = [r for r in rows if isinstance(r, dict)]

    frequency: dict[str, int] = {}
    for record in records:
        key = series_key(record, group_columns)
        frequency[key] = frequency.get(key, 0) + 1
    ranked = sorted(frequency.items(), key=lambda kv: kv[1], reverse=True)
    allowed = {key for key, _ in ranked[:max_series]}
    if len(frequency) > max_series:
        logger.info("Keeping top %d of %d series", max_series, len(frequency))

    pivot: dict[str, dict[str, Any]] = {}
    keys: dict[str, None] = {}
    for record in records:
        x_value = record.get(x_key)
        y_value = record.get(y_key)
        if x_value is None or y_value is None:
            continue
        key = series_key(record, group_columns)
        if key not in allowed:
            continue
        keys[key] = None

        row = pivot.setdefault(str(x_value), {x_key: x_value})
        current = row.get(key)
        if _is_number(current) and _is_number(y_value):
            row[key] = current + y_value
        else:
            row[key] = y_value

    series_keys = list(keys)
    for row in pivot.values():
        for key in series_keys:
            row.setdefault(key, 0)
    return list(pivot.values()), series_keys


# ── Entry point ─────────────────────────────────────────


def transform_chart_data(
    raw: Any,
    config: ChartConfig | dict[str, Any],
    *,
    max_series: int | None = None,
    timezone_name: str | None = None,
) -> ChartDataResult:
    """Transform rows (or a ``{"data": [...]}`` payload) for charting.

    Parameters
    ----------
    raw : list or dict
        Rows as returned by the query, or the response envelope.
    config : ChartConfig or mapping
        The chart widget config.
    max_series : int, optional
        Cap on pivoted series.  Defaults to ``multiSeries.maxSeries`` then
        ``WIDGET_MAX_SERIES``.
    timezone_name : str, optional
        Zone for naive timestamp strings on the x-axis.
    """
    chart = config if isinstance(config, ChartConfig) else parse_typed_config("chart", config)

    rows = raw.get("data") if isinstance(raw, dict) else raw
    if not isinstance(rows, list):
        return ChartDataResult(chart_data=[], series_keys=[], original_config=chart)

    data = coerce_numeric_fields(rows, aggregation_fields(chart)).data

    x_field = determine_x_axis_field(chart)
    if x_field:
        data = convert_timestamps(data, x_field, DateResolver(timezone_name=timezone_name))

    y_mapping = determine_y_axis_field(chart, data)
    group_columns = chart.group_columns()

    if not group_columns or not x_field:
        return ChartDataResult(chart_data=data, series_keys=[y_mapping.field_name], original_config=chart)

    limit = max_series
    if limit is None and chart.multi_series is not None and chart.multi_series.enabled:
        limit = chart.multi_series.max_series
    if limit is None:
        limit = get_settings().max_series

    pivoted, keys = pivot_series(data, x_field, y_mapping.field_name, group_columns, limit)
    logger.debug("Pivoted %d row(s) into %d point(s) x %d series", len(data), len(pivoted), len(keys))
    return ChartDataResult(chart_data=pivoted, series_keys=keys, original_config=chart)
