"""
Unit tests -- metric trend support: trend filters, periods, trend maths.
"""
from datetime import datetime, timezone

import pytest

from src.core.errors import ConfigError, DateParseError
from src.widgets.dates import DateResolver, format_instant
from src.widgets.spec import FilterCondition
from src.widgets.trend import (
    TrendResult,
    build_trend_query_params,
    calculate_trend,
    extract_metric_value,
    is_trend_filter,
    parse_trend_filters,
    parse_trend_period,
    split_trend_filters,
)

NOW = datetime(2024, 3, 15, 14, 30, tzinfo=timezone.utc)

TREND_FILTER = {
    "column": "created_at",
    "operator": "during",
    "value": "__rel_date:last7Days",
    "config": {"isTrendFilter": True},
}
STATUS_FILTER = {"column": "status", "operator": "eq", "value": "paid"}


@pytest.fixture(scope="module")
def resolver() -> DateResolver:
    return DateResolver(timezone_name="UTC")


# ── Filters ──────────────────────────────────────────────

def test_is_trend_filter():
    assert is_trend_filter(TREND_FILTER)
    assert not is_trend_filter(STATUS_FILTER)
    assert is_trend_filter(FilterCondition.model_validate(TREND_FILTER))
    assert not is_trend_filter("created_at")


def test_split_trend_filters():
    trend, regular = split_trend_filters([STATUS_FILTER, TREND_FILTER])
    assert trend == [TREND_FILTER]
    assert regular == [STATUS_FILTER]
    assert split_trend_filters(None) == ([], [])


# ── Periods ──────────────────────────────────────────────

def test_relative_period(resolver):
    period = parse_trend_period(TREND_FILTER, NOW, resolver)
    assert format_instant(period.start) == "2024-03-09T00:00:00.000Z"
    assert format_instant(period.end) == "2024-03-15T23:59:59.999Z"


def test_absolute_period(resolver):
    period = parse_trend_period({"value": "2024-03-01,2024-03-10"}, NOW, resolver)
    assert format_instant(period.start) == "2024-03-01T00:00:00.000Z"
    assert format_instant(period.end) == "2024-03-10T23:59:59.999Z"


def test_period_start_must_precede_end(resolver):
    with pytest.raises(DateParseError):
        parse_trend_period({"value": "2024-03-10T00:00:00Z,2024-03-10T00:00:00Z"}, NOW, resolver)
    with pytest.raises(DateParseError):
        parse_trend_period({"value": "2024-03-10,2024-03-01"}, NOW, resolver)


@pytest.mark.parametrize("value", [None, 5, "", "2024-03-01"])
def test_period_bad_shapes(resolver, value):
    with pytest.raises(ConfigError):
        parse_trend_period({"value": value}, NOW, resolver)


def test_previous_period_is_adjacent(resolver):
    periods = parse_trend_filters([STATUS_FILTER, TREND_FILTER], NOW, resolver)
    assert periods.column == "created_at"
    assert periods.previous.end == periods.current.start
    assert periods.previous.duration == periods.current.duration


def test_no_trend_filter(resolver):
    with pytest.raises(ConfigError):
        parse_trend_filters([STATUS_FILTER], NOW, resolver)


# ── Trend maths ──────────────────────────────────────────

@pytest.mark.parametrize(
    "current, previous, expected",
    [
        (110, 100, TrendResult("up", 10.0)),
        (90, 100, TrendResult("down", -10.0)),
        (100, 100, TrendResult("stable", 0.0)),
        (100.5, 100, TrendResult("stable", 0.5)),
        (5, 0, TrendResult("up", 100.0)),
        (0, 0, TrendResult("stable", 0.0)),
        (-3, 0, TrendResult("stable", 0.0)),
    ],
)
def test_calculate_trend(current, previous, expected):
    assert calculate_trend(current, previous) == expected


@pytest.mark.parametrize(
    "rows, expected",
    [
        ([{"count": "42"}], 42),
        ([{"sum": 10.5}], 10.5),
        ([{"value": "7"}], 7),
        ([{"label": "x", "total": "3.5"}], 3.5),
        ([{"sum": None}], 0),
        ([{"label": "x"}], 0),
        ([], 0),
        (None, 0),
    ],
)
def test_extract_metric_value(rows, expected):
    assert extract_metric_value(rows) == expected


# ── Queries ──────────────────────────────────────────────

def test_build_trend_query_params():
    columns = [
        {"name": "created_at", "dataType": "timestamptz"},
        {"name": "status", "dataType": "text"},
        {"name": "amount", "dataType": "numeric"},
    ]
    result = build_trend_query_params(
        {"schemaName": "public", "tableName": "orders", "widgetType": "metric"},
        {"metric": "amount", "aggregation": "sum", "filters": [TREND_FILTER, STATUS_FILTER]},
        columns=columns,
        now=NOW,
    )
    assert result["trendColumn"] == "created_at"
    assert result["currentPeriod"] == {"start": "2024-03-09T00:00:00.000Z", "end": "2024-03-15T23:59:59.999Z"}
    assert result["previousPeriod"] == {"start": "2024-03-02T00:00:00.001Z", "end": "2024-03-09T00:00:00.000Z"}

    current = result["current"]
    assert current["aggregation"] == "SUM"
    assert current["aggregationColumn"] == "amount"
    assert current["filters"] == [
        "\"status\" = 'paid'",
        "\"created_at\" BETWEEN '2024-03-09T00:00:00.000Z' AND '2024-03-15T23:59:59.999Z'",
    ]
    assert current["where"] == (
        "(\"status\" = 'paid') AND "
        "\"created_at\" BETWEEN '2024-03-09T00:00:00.000Z' AND '2024-03-15T23:59:59.999Z'"
    )
    assert result["previous"]["filters"][-1] == (
        "\"created_at\" BETWEEN '2024-03-02T00:00:00.001Z' AND '2024-03-09T00:00:00.000Z'"
    )
