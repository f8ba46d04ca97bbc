"""
Unit tests -- query params builder: per-widget keys, filters, pagination,
determinism and error cases.
"""
import json
from datetime import datetime, timezone

import pytest

from src.core.clock import FixedClock, set_clock
from src.core.errors import ConfigError
from src.widgets.query_builder import (
    build_query_params,
    build_table_query_params,
    default_config,
    is_aggregated_widget,
    parse_typed_config,
    parse_widget_config,
    query_params_cache_key,
)
from src.widgets.spec import ChartConfig, MetricConfig, TableConfig

NOW = datetime(2024, 3, 15, 14, 30, tzinfo=timezone.utc)

COLUMNS = [
    {"name": "created_at", "dataType": "timestamptz"},
    {"name": "status", "dataType": "text"},
    {"name": "email", "dataType": "text"},
    {"name": "amount", "dataType": "numeric"},
]


def _widget(widget_type: str) -> dict:
    return {"schemaName": "public", "tableName": "orders", "widgetType": widget_type}


@pytest.fixture
def frozen_clock():
    previous = set_clock(FixedClock(NOW))
    yield
    set_clock(previous)


# ── Chart ────────────────────────────────────────────────

def test_chart_basic():
    params = build_query_params(_widget("chart"), {"xAxis": "status", "yAxis": "amount", "aggregation": "sum"})
    assert params == {
        "schemaName": "public",
        "tableName": "orders",
        "page": 1,
        "pageSize": 100,
        "xAxis": "status",
        "yAxis": "amount",
        "aggregation": "SUM",
    }


def test_chart_defaults():
    params = build_query_params(_widget("chart"), {"xAxis": "status"})
    assert params["yAxis"] == "*"
    assert params["aggregation"] == "COUNT"
    for key in ("timeAggregation", "groupBy", "multiSeries", "orderBy", "limit", "filters"):
        assert key not in params


def test_chart_time_aggregation_kept_without_type_hint():
    params = build_query_params(_widget("chart"), {"xAxis": "email", "timeAggregation": "day"})
    assert params["xAxis"] == "email"
    assert params["timeAggregation"] == "day"
    assert "xAxisDataType" not in params


def test_chart_group_by():
    params = build_query_params(_widget("chart"), {"xAxis": "created_at", "groupBy": "status"})
    assert params["groupBy"] == ["status"]


def test_chart_multi_series():
    params = build_query_params(
        _widget("chart"),
        {
            "xAxis": "created_at",
            "groupBy": "status",
            "multiSeries": {"enabled": True, "groupByColumns": ["status", "email"]},
        },
    )
    assert params["groupBy"] == ["status", "email"]
    assert params["multiSeries"] == {
        "enabled": True,
        "groupByColumns": ["status", "email"],
        "seriesType": "grouped",
        "maxSeries": 10,
    }


def test_chart_disabled_multi_series_omitted():
    params = build_query_params(
        _widget("chart"),
        {"xAxis": "created_at", "multiSeries": {"enabled": False, "groupByColumns": ["status"]}},
    )
    assert "multiSeries" not in params
    assert "groupBy" not in params


def test_chart_order_and_limit():
    params = build_query_params(
        _widget("chart"),
        {"xAxis": "status", "orderBy": [{"column": "status", "direction": "desc"}], "limit": 5},
    )
    assert params["orderBy"] == [{"column": "status", "direction": "desc"}]
    assert params["limit"] == 5


def test_aggregation_is_upper_cased():
    params = build_query_params(_widget("chart"), {"xAxis": "status", "aggregation": "sum", "yAxis": "amount"})
    assert params["aggregation"] == "SUM"


# ── Metric ───────────────────────────────────────────────

def test_metric():
    params = build_query_params(_widget("metric"), {"metric": "amount", "aggregation": "avg"})
    assert params["aggregation"] == "AVG"
    assert params["aggregationColumn"] == "amount"
    for key in ("xAxis", "yAxis", "timeAggregation", "groupBy"):
        assert key not in params


def test_metric_defaults():
    params = build_query_params(_widget("metric"), {})
    assert params["aggregation"] == "COUNT"
    assert params["aggregationColumn"] == "*"


# ── Table ────────────────────────────────────────────────

def test_table_columns():
    params = build_query_params(_widget("table"), {"columns": ["id", "email"]})
    assert params["properties"] == {"columns": ["id", "email"]}


def test_table_without_columns():
    assert "properties" not in build_query_params(_widget("table"), {"columns": []})
    assert "properties" not in build_query_params(_widget("table"), {})


def test_table_never_has_chart_keys():
    params = build_query_params(
        _widget("table"),
        {"xAxis": "a", "yAxis": "b", "timeAggregation": "day", "aggregation": "sum"},
    )
    for key in ("xAxis", "yAxis", "timeAggregation", "aggregation", "aggregationColumn"):
        assert key not in params


# ── Pagination ───────────────────────────────────────────

def test_pagination():
    params = build_query_params(_widget("table"), {}, {"page": 3, "pageSize": 25})
    assert (params["page"], params["pageSize"]) == (3, 25)


def test_pagination_falsy_values_use_defaults():
    params = build_query_params(_widget("table"), {}, {"page": 0, "pageSize": None})
    assert (params["page"], params["pageSize"]) == (1, 100)


# ── Filters ──────────────────────────────────────────────

def test_filters_compiled_and_malformed_dropped():
    params = build_query_params(
        _widget("table"),
        {"filters": [{"column": "status", "operator": "eq", "value": "paid"}, {"operator": "eq"}]},
        columns=COLUMNS,
        now=NOW,
    )
    assert params["filters"] == ["\"status\" = 'paid'"]
    assert params["where"] == "\"status\" = 'paid'"
    assert "havingFilters" not in params


def test_empty_filter_list():
    params = build_query_params(_widget("table"), {"filters": []}, now=NOW)
    assert params["filters"] == []
    assert "where" not in params
    assert "havingFilters" not in params


def test_relative_date_filter():
    params = build_query_params(
        _widget("chart"),
        {"xAxis": "status", "filters": [{"column": "created_at", "operator": "eq", "value": "__rel_date:today"}]},
        columns=COLUMNS,
        now=NOW,
    )
    assert params["filters"] == [
        "\"created_at\" BETWEEN '2024-03-15T00:00:00.000Z' AND '2024-03-15T23:59:59.999Z'"
    ]


def test_having_filters_on_aggregated_chart():
    params = build_query_params(
        _widget("chart"),
        {
            "xAxis": "status",
            "aggregation": "count",
            "filters": [
                {"column": "value", "operator": "gt", "value": 5},
                {"column": "status", "operator": "eq", "value": "paid"},
            ],
        },
        columns=COLUMNS,
        now=NOW,
    )
    assert params["filters"] == ["\"status\" = 'paid'"]
    assert params["havingFilters"] == ["\"value\" > 5"]


def test_value_column_stays_in_where_for_tables():
    params = build_query_params(
        _widget("table"),
        {"filters": [{"column": "value", "operator": "eq", "value": "x"}]},
        now=NOW,
    )
    assert params["filters"] == ["\"value\" = 'x'"]


def test_now_defaults_to_clock(frozen_clock):
    config = {"filters": [{"column": "created_at", "operator": "eq", "value": "__rel_date:today"}]}
    assert build_query_params(_widget("table"), config) == build_query_params(_widget("table"), config, now=NOW)


# ── Determinism ──────────────────────────────────────────

def test_idempotent_with_same_now():
    config = {
        "xAxis": "created_at",
        "timeAggregation": "week",
        "filters": [{"column": "created_at", "operator": "during", "value": "__rel_date:last30Days"}],
    }
    first = build_query_params(_widget("chart"), config, columns=COLUMNS, now=NOW)
    second = build_query_params(_widget("chart"), config, columns=COLUMNS, now=NOW)
    assert first == second
    assert first is not second
    assert query_params_cache_key(first) == query_params_cache_key(second)


def test_cache_key_ignores_key_order():
    assert query_params_cache_key({"a": 1, "b": 2}) == query_params_cache_key({"b": 2, "a": 1})
    assert query_params_cache_key({"a": 1}) != query_params_cache_key({"a": 2})


def test_output_is_json_serialisable():
    params = build_query_params(
        _widget("chart"),
        {"xAxis": "status", "filters": [{"column": "created_at", "operator": "after", "value": "2024-01-01"}]},
        columns=COLUMNS,
        now=NOW,
    )
    json.dumps(params)


# ── Errors ───────────────────────────────────────────────

def test_unknown_widget_type():
    with pytest.raises(ConfigError, match="gauge"):
        build_query_params(_widget("gauge"), {})


@pytest.mark.parametrize("missing", ["schemaName", "tableName"])
def test_missing_table_identity(missing):
    widget = _widget("table")
    del widget[missing]
    with pytest.raises(ConfigError, match=missing):
        build_query_params(widget, {})


def test_invalid_aggregation():
    with pytest.raises(ConfigError):
        build_query_params(_widget("chart"), {"xAxis": "status", "aggregation": "median"})


def test_invalid_time_bucket():
    with pytest.raises(ConfigError):
        build_query_params(_widget("chart"), {"xAxis": "status", "timeAggregation": "decade"})


def test_json_string_config():
    params = build_query_params(_widget("metric"), '{"metric": "amount", "aggregation": "max"}')
    assert params["aggregation"] == "MAX"


def test_invalid_json_config():
    with pytest.raises(ConfigError, match="Invalid JSON"):
        build_query_params(_widget("metric"), "{not json")


# ── Table with search ────────────────────────────────────

def test_table_search_params():
    params = build_table_query_params(
        _widget("table"),
        {"columns": ["id"], "filters": [{"column": "status", "operator": "eq", "value": "paid"}]},
        {"page": 2, "pageSize": 50, "search": "bob", "sortColumn": "id", "sortDirection": "desc"},
        columns=COLUMNS,
        now=NOW,
    )
    assert params == {
        "schemaName": "public",
        "tableName": "orders",
        "page": 2,
        "pageSize": 50,
        "filters": ["\"status\" = 'paid'"],
        "where": "\"status\" = 'paid'",
        "properties": {"columns": ["id"]},
        "search": "bob",
        "sortColumn": "id",
        "sortDirection": "desc",
    }


def test_table_search_rejects_other_widgets():
    with pytest.raises(ConfigError):
        build_table_query_params(_widget("chart"), {}, {"page": 1, "pageSize": 10}, now=NOW)


# ── Helpers ──────────────────────────────────────────────

def test_parse_widget_config():
    assert parse_widget_config({"a": 1}) == {"a": 1}
    assert parse_widget_config('{"a": 1}') == {"a": 1}
    assert parse_widget_config(None) == {}
    assert parse_widget_config(42) == {}


def test_parse_typed_config_variants():
    assert isinstance(parse_typed_config("chart", {"xAxis": "a"}), ChartConfig)
    assert isinstance(parse_typed_config("metric", {}), MetricConfig)
    assert isinstance(parse_typed_config("table", {}), TableConfig)


def test_is_aggregated_widget():
    assert is_aggregated_widget("metric", {})
    assert is_aggregated_widget("chart", {"groupBy": "status"})
    assert is_aggregated_widget("chart", {"timeAggregation": "day"})
    assert not is_aggregated_widget("chart", {"xAxis": "status"})
    assert not is_aggregated_widget("table", {"aggregation": "sum"})


def test_default_config():
    assert default_config("chart") == {"aggregation": "count", "yAxis": "*"}
    assert default_config("metric") == {"aggregation": "count", "metric": "*"}
    assert default_config("table") == {"columns": []}
    assert default_config("gauge") == {}


def test_malformed_column_metadata_is_config_error():
    config = {"filters": [{"column": "status", "operator": "eq", "value": "paid"}]}
    with pytest.raises(ConfigError, match="column metadata"):
        build_query_params(_widget("table"), config, columns=[{"dataType": "text"}], now=NOW)
