"""
Trend support for metric widgets.

A metric widget may tag one date filter with ``config.isTrendFilter``.  That
filter's range is the current period; the previous period has the same
duration and ends where the current one starts.  The metric is queried once
per period and the two values are compared.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal, Mapping, Sequence

from src.core.clock import get_clock
from src.core.errors import ConfigError, DateParseError
from src.core.logging import get_logger
from src.widgets.chart_data import parse_numeric_string
from src.widgets.dates import DateRange, DateResolver, format_instant, is_relative_date
from src.widgets.filters import FilterCompiler
from src.widgets.query_builder import build_query_params, parse_widget_config
from src.widgets.spec import ColumnMeta, FilterCondition, Pagination, WidgetDescriptor

logger = get_logger(__name__)

STABLE_THRESHOLD = 0.01  # relative change below 1% is "stable"

_METRIC_COLUMNS = ("count", "sum", "avg", "min", "max", "value")


@dataclass(frozen=True)
class TrendPeriods:
    current: DateRange
    previous: DateRange
    column: str


@dataclass(frozen=True)
class TrendResult:
    direction: Literal["up", "down", "stable"]
    percentage: float


# ── Filters ─────────────────────────────────────────────


def is_trend_filter(condition: Any) -> bool:
    if isinstance(condition, FilterCondition):
        return condition.is_trend_filter
    if isinstance(condition, Mapping):
        return bool((condition.get("config") or {}).get("isTrendFilter"))
    return False


def split_trend_filters(filters: Sequence[Any] | None) -> tuple[list[Any], list[Any]]:
    """Return ``(trend, regular)`` preserving order."""
    trend: list[Any] = []
    regular: list[Any] = []
    for condition in filters or []:
        (trend if is_trend_filter(condition) else regular).append(condition)
    return trend, regular


def _value_of(condition: Any) -> Any:
    if isinstance(condition, FilterCondition):
        return condition.value
    return condition.get("value") if isinstance(condition, Mapping) else None


def _column_of(condition: Any) -> str | None:
    if isinstance(condition, FilterCondition):
        return condition.column
    return condition.get("column") if isinstance(condition, Mapping) else None


# ── Periods ─────────────────────────────────────────────


def parse_trend_period(condition: Any, now: datetime, resolver: DateResolver | None = None) -> DateRange:
    """The current period for a trend filter.

    Accepts a relative-date token or an absolute ``"start,end"`` string.
    """
    resolver = resolver or DateResolver()
    value = _value_of(condition)

    if not value or not isinstance(value, str):
        raise ConfigError("Trend filter must have a valid string value.")

    if is_relative_date(value):
        return resolver.resolve(value, now)

    if "," in value:
        period = resolver.parse_range(value)
        if period.start >= period.end:
            raise DateParseError(value, "start date must be before end date")
        return period

    raise ConfigError(
        f'Invalid trend filter date range format: "{value}". '
        'Expected "__rel_date:option" or "start,end" format.'
    )


def parse_trend_filters(
    filters: Sequence[Any],
    now: datetime,
    resolver: DateResolver | None = None,
) -> TrendPeriods:
    """Current and previous periods from the first trend filter."""
    trend, _ = split_trend_filters(filters)
    if not trend:
        raise ConfigError("No trend filters provided for trend analysis.")
    if len(trend) > 1:
        logger.info("Metric has %d trend filters; using the first", len(trend))

    first = trend[0]
    column = _column_of(first)
    if not column:
        raise ConfigError("Trend filter has no column.")

    current = parse_trend_period(first, now, resolver)
    previous = DateRange(start=current.start - current.duration, end=current.start)
    return TrendPeriods(current=current, previous=previous, column=column)


# ── Values ──────────────────────────────────────────────


def calculate_trend(current: float, previous: float) -> TrendResult:
    if previous == 0:
        if current > 0:
            return TrendResult("up", 100.0)
        return TrendResult("stable", 0.0)

    percentage = (current - previous) / previous * 100
    if abs(percentage / 100) < STABLE_THRESHOLD:
        direction = "stable"
    else:
        direction = "up" if current > previous else "down"
    return TrendResult(direction, round(percentage, 2))


def _as_number(value: Any) -> float | int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        return parse_numeric_string(value)
    return None


def extract_metric_value(rows: Sequence[Any] | None) -> float | int:
    """The aggregate value of a single-row metric result; 0 when absent."""
    if not rows or not isinstance(rows[0], Mapping):
        return 0
    first = rows[0]

    for column in _METRIC_COLUMNS:
        if column in first:
            number = _as_number(first[column])
            return 0 if number is None else number

    for value in first.values():
        number = _as_number(value)
        if number is not None:
            return number
    return 0


# ── Queries ─────────────────────────────────────────────


def build_trend_query_params(
    widget: WidgetDescriptor | Mapping[str, Any],
    config: Any,
    pagination: Pagination | Mapping[str, Any] | None = None,
    *,
    columns: Sequence[ColumnMeta | dict] | None = None,
    now: datetime | None = None,
    compiler: FilterCompiler | None = None,
) -> dict[str, Any]:
    """Query parameters for both periods of a metric trend.

    The trend filter itself is replaced by a ``BETWEEN`` on each period;
    the remaining filters apply to both queries.
    """
    now = now or get_clock().now()
    compiler = compiler or FilterCompiler()
    raw = parse_widget_config(config)
    trend, regular = split_trend_filters(raw.get("filters"))
    periods = parse_trend_filters(trend, now, compiler.resolver)

    base = build_query_params(
        widget, {**raw, "filters": regular}, pagination, columns=columns, now=now, compiler=compiler
    )

    def _for_period(period: DateRange) -> dict[str, Any]:
        condition = FilterCondition(
            column=periods.column,
            operator="between",
            value=[format_instant(period.start), format_instant(period.end)],
        )
        predicate = compiler.compile_condition(condition, None, now)
        params = {**base, "filters": [*base.get("filters", []), predicate.sql]}
        params["where"] = f"({base['where']}) AND {predicate.sql}" if base.get("where") else predicate.sql
        return params

    return {
        "current": _for_period(periods.current),
        "previous": _for_period(periods.previous),
        "trendColumn": periods.column,
        "currentPeriod": {
            "start": format_instant(periods.current.start),
            "end": format_instant(periods.current.end),
        },
        "previousPeriod": {
            "start": format_instant(periods.previous.start),
            "end": format_instant(periods.previous.end),
        },
    }
