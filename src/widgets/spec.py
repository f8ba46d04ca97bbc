"""
Typed value objects for widget query compilation.

Widget configs arrive as loosely-typed mappings (camelCase keys, extra UI
fields mixed in).  They are parsed into one of three tagged models so the
builder can pattern-match on the variant instead of poking at string keys.
Unknown keys are ignored on every model.
"""
from __future__ import annotations

from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from src.widgets.catalog import ALL_OPERATORS

AGGREGATIONS = ("count", "sum", "avg", "min", "max")
TIME_BUCKETS = ("hour", "day", "week", "month", "quarter", "year")
WIDGET_TYPES = ("chart", "metric", "table")

_LOOSE = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)


def _normalize_aggregation(value: Any) -> str | None:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValueError("aggregation must be a string")
    lowered = value.strip().lower()
    if lowered not in AGGREGATIONS:
        raise ValueError(f"Unsupported aggregation '{value}'. Allowed: {', '.join(AGGREGATIONS)}")
    return lowered


# ── Filters & columns ────────────────────────────────────


class FilterCondition(BaseModel):
    """One user-authored filter condition."""

    model_config = _LOOSE

    column: str = Field(..., min_length=1)
    operator: str
    value: Any = None
    logical_operator: Literal["AND", "OR"] | None = Field(None, alias="logicalOperator")
    config: dict[str, Any] | None = None

    @field_validator("operator")
    @classmethod
    def _known_operator(cls, v: str) -> str:
        if v not in ALL_OPERATORS:
            raise ValueError(f"Unknown operator '{v}'")
        return v

    @field_validator("logical_operator", mode="before")
    @classmethod
    def _upper_logical(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    @property
    def is_trend_filter(self) -> bool:
        return bool((self.config or {}).get("isTrendFilter"))


class ColumnMeta(BaseModel):
    """Declared metadata for one table column."""

    model_config = _LOOSE

    name: str
    data_type: str | None = Field(None, alias="dataType")
    display_name: str | None = Field(None, alias="displayName")

    @model_validator(mode="before")
    @classmethod
    def _lift_ui_config(cls, data: Any) -> Any:
        # Column metadata rows keep the type and label under ui_config.
        if isinstance(data, dict) and isinstance(data.get("ui_config"), dict):
            ui = data["ui_config"]
            data = dict(data)
            data.setdefault("data_type", ui.get("data_type"))
            data.setdefault("display_name", ui.get("display_name"))
        return data


class OrderBy(BaseModel):
    model_config = _LOOSE

    column: str
    direction: Literal["asc", "desc"] = "asc"


class MultiSeries(BaseModel):
    model_config = _LOOSE

    enabled: bool = False
    group_by_columns: list[str] | None = Field(None, alias="groupByColumns")
    series_type: Literal["grouped", "stacked", "overlaid"] = Field("grouped", alias="seriesType")
    max_series: int = Field(10, ge=1, le=20, alias="maxSeries")


# ── Widget configs (tagged union) ────────────────────────


class _BaseConfig(BaseModel):
    model_config = _LOOSE

    # Kept raw: malformed entries are the filter compiler's business.
    filters: list[Any] | None = None


class ChartConfig(_BaseConfig):
    kind: Literal["chart"] = "chart"
    chart_type: str | None = Field(None, alias="chartType")
    x_axis: str | None = Field(None, alias="xAxis")
    y_axis: str | None = Field(None, alias="yAxis")
    aggregation: str | None = None
    group_by: str | None = Field(None, alias="groupBy")
    time_aggregation: Literal["hour", "day", "week", "month", "quarter", "year"] | None = Field(
        None, alias="timeAggregation"
    )
    multi_series: MultiSeries | None = Field(None, alias="multiSeries")
    order_by: list[OrderBy] | None = Field(None, alias="orderBy")
    limit: int | None = Field(None, ge=0)

    @field_validator("aggregation", mode="before")
    @classmethod
    def _check_aggregation(cls, v: Any) -> str | None:
        return _normalize_aggregation(v)

    @field_validator("x_axis", "y_axis", "group_by", "time_aggregation", mode="before")
    @classmethod
    def _blank_is_none(cls, v: Any) -> Any:
        return None if v == "" else v

    def group_columns(self) -> list[str]:
        """Grouping columns from ``multiSeries`` when enabled, else ``groupBy``."""
        ms = self.multi_series
        if ms is not None and ms.enabled and ms.group_by_columns:
            return list(ms.group_by_columns)
        return [self.group_by] if self.group_by else []


class MetricConfig(_BaseConfig):
    kind: Literal["metric"] = "metric"
    metric: str | None = None
    aggregation: str | None = None
    show_trend: bool | None = Field(None, alias="showTrend")
    trend_direction: Literal["positive", "negative"] | None = Field(None, alias="trendDirection")
    format: str | None = None
    prefix: str | None = None
    suffix: str | None = None
    precision: int | None = None

    @field_validator("aggregation", mode="before")
    @classmethod
    def _check_aggregation(cls, v: Any) -> str | None:
        return _normalize_aggregation(v)


class TableConfig(_BaseConfig):
    kind: Literal["table"] = "table"
    columns: list[str] | None = None
    order_by: list[OrderBy] | None = Field(None, alias="orderBy")


WidgetQueryConfig = Union[ChartConfig, MetricConfig, TableConfig]


# ── Widget descriptor & pagination ───────────────────────


class WidgetDescriptor(BaseModel):
    model_config = _LOOSE

    schema_name: str = Field(..., min_length=1, alias="schemaName")
    table_name: str = Field(..., min_length=1, alias="tableName")
    widget_type: str = Field(..., alias="widgetType")


class Pagination(BaseModel):
    model_config = _LOOSE

    page: int | None = None
    page_size: int | None = Field(None, alias="pageSize")


class TableSearchParams(BaseModel):
    model_config = _LOOSE

    page: int = 1
    page_size: int = Field(100, alias="pageSize")
    search: str | None = None
    sort_column: str | None = Field(None, alias="sortColumn")
    sort_direction: Literal["asc", "desc"] | None = Field(None, alias="sortDirection")
