"""
Unit tests -- aggregation validator: COUNT rules, column resolution,
metric-required check and auto-correction.
"""
import pytest

from src.core.errors import ValidationError
from src.widgets.aggregation import (
    COLUMN_REQUIRED_KEY,
    AggregationConfig,
    Err,
    Ok,
    aggregation_display_name,
    auto_correct,
    check_metric_required,
    normalize_aggregation,
    suggest_metric_for_aggregation,
    validate_aggregation,
)

COLUMNS = [
    {"name": "id", "dataType": "uuid"},
    {"name": "status", "dataType": "text"},
    {"name": "amount", "dataType": "numeric"},
    {"name": "quantity", "ui_config": {"data_type": "integer"}},
]
TEXT_ONLY = [{"name": "status", "dataType": "text"}]


# ── COUNT ────────────────────────────────────────────────

@pytest.mark.parametrize("metric", ["", "*", None, "status", "  "])
def test_count_is_always_valid(metric):
    assert validate_aggregation("count", metric).is_valid
    assert validate_aggregation("COUNT", metric, COLUMNS).is_valid


# ── Numeric aggregations ─────────────────────────────────

@pytest.mark.parametrize("metric", ["", "*", "   ", None])
def test_sum_without_column(metric):
    result = validate_aggregation("sum", metric)
    assert not result.is_valid
    assert result.message_key == COLUMN_REQUIRED_KEY
    assert result.error == "SUM requires a specific column. You cannot sum all columns (*)."
    assert "numeric column" in result.suggestion


def test_sum_without_metadata_skips_resolution():
    assert validate_aggregation("sum", "anything").is_valid


def test_column_not_found():
    result = validate_aggregation("max", "missing", COLUMNS)
    assert not result.is_valid
    assert result.error == 'Column "missing" not found in the selected table.'
    assert result.message_key == "dashboard:validation.columnNotFound"


def test_empty_column_list_still_resolves():
    assert not validate_aggregation("max", "amount", []).is_valid


def test_non_numeric_column():
    result = validate_aggregation("avg", "status", COLUMNS)
    assert not result.is_valid
    assert result.error == 'Cannot perform AVG on non-numeric column "status" (type: text).'
    assert result.message_key == "dashboard:validation.numericColumnRequired"


def test_numeric_columns_are_valid():
    assert validate_aggregation("sum", "amount", COLUMNS).is_valid
    assert validate_aggregation("min", "quantity", COLUMNS).is_valid


def test_missing_and_unknown_aggregation():
    missing = validate_aggregation(None, "amount")
    assert not missing.is_valid
    assert missing.message_key == "dashboard:validation.aggregationRequired"

    unknown = validate_aggregation("median", "amount")
    assert not unknown.is_valid
    assert unknown.message_key == "dashboard:validation.unsupportedAggregation"


def test_raise_for_error():
    validate_aggregation("count", "").raise_for_error()
    with pytest.raises(ValidationError) as exc_info:
        validate_aggregation("sum", "").raise_for_error()
    assert exc_info.value.message_key == COLUMN_REQUIRED_KEY
    assert exc_info.value.path == ("metric",)
    assert exc_info.value.to_dict()["path"] == ["metric"]


# ── Metric required ──────────────────────────────────────

def test_metric_required_for_numeric_aggregations():
    result = check_metric_required("sum", "")
    assert result == Err(field="metric", message="dashboard:validation.columnRequired", path=("metric",))
    assert isinstance(check_metric_required("avg", "*"), Err)
    assert isinstance(check_metric_required("MAX", "   "), Err)


def test_metric_not_required_for_count():
    assert check_metric_required("count", "") == Ok()
    assert check_metric_required(None, None) == Ok()
    assert check_metric_required("sum", "amount") == Ok()


def test_metric_required_custom_path():
    result = check_metric_required("sum", None, path=("config", "yAxis"))
    assert result.field == "yAxis"
    assert result.path == ("config", "yAxis")


# ── Auto-correct ─────────────────────────────────────────

def test_auto_correct_keeps_valid_config():
    config = AggregationConfig("sum", "amount", tuple(COLUMNS))
    assert auto_correct(config) is config


def test_auto_correct_without_metadata_keeps_valid_config():
    config = AggregationConfig("sum", "amount")
    assert validate_aggregation("sum", "amount", None).is_valid
    assert auto_correct(config) is config


def test_auto_correct_wildcard_becomes_count():
    corrected = auto_correct(AggregationConfig("sum", "*", tuple(COLUMNS)))
    assert (corrected.aggregation, corrected.metric) == ("count", "*")


def test_auto_correct_picks_numeric_column():
    corrected = auto_correct(AggregationConfig("avg", "", tuple(COLUMNS)))
    assert (corrected.aggregation, corrected.metric) == ("avg", "amount")


def test_auto_correct_replaces_non_numeric_metric():
    corrected = auto_correct(AggregationConfig("avg", "status", tuple(COLUMNS)))
    assert corrected.metric == "amount"


def test_auto_correct_falls_back_to_count():
    corrected = auto_correct(AggregationConfig("sum", None, tuple(TEXT_ONLY)))
    assert (corrected.aggregation, corrected.metric) == ("count", "*")
    corrected = auto_correct(AggregationConfig("median", "amount", tuple(COLUMNS)))
    assert (corrected.aggregation, corrected.metric) == ("count", "*")


def test_auto_correct_result_is_always_valid():
    for agg in ("sum", "avg", "min", "max", "count", None, "bogus"):
        for metric in ("", "*", None, "status", "amount", "ghost"):
            for columns in (COLUMNS, TEXT_ONLY, []):
                corrected = auto_correct(AggregationConfig(agg, metric, tuple(columns)))
                assert validate_aggregation(corrected.aggregation, corrected.metric, corrected.columns).is_valid


# ── Helpers ──────────────────────────────────────────────

def test_suggest_metric():
    assert suggest_metric_for_aggregation("count", COLUMNS) == "*"
    assert suggest_metric_for_aggregation(None, COLUMNS) == "*"
    assert suggest_metric_for_aggregation("sum", COLUMNS) == "amount"
    assert suggest_metric_for_aggregation("sum", TEXT_ONLY) == ""


def test_display_names():
    assert aggregation_display_name("SUM") == "Add up values"
    assert aggregation_display_name("count") == "Count records"
    assert aggregation_display_name("median") == "MEDIAN"
    assert aggregation_display_name(None) == ""


def test_normalize_aggregation():
    assert normalize_aggregation(" Sum ") == "sum"
    assert normalize_aggregation("median") is None
    assert normalize_aggregation(None) is None
