"""
Builds backend query parameters for a widget.

Pure given its inputs: the same widget, config, pagination and ``now`` always
produce a deep-equal dict.  Only keys relevant to the widget type are
present; absent settings are omitted rather than sent as ``None``.
"""
from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Any, Mapping, Sequence

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from src.core.clock import get_clock
from src.core.config import get_settings
from src.core.errors import ConfigError
from src.core.logging import get_logger
from src.widgets.filters import CompiledPredicate, FilterCompiler, categorize_filters, combine
from src.widgets.spec import (
    ChartConfig,
    ColumnMeta,
    MetricConfig,
    Pagination,
    TableConfig,
    TableSearchParams,
    WidgetDescriptor,
    WidgetQueryConfig,
)

logger = get_logger(__name__)

_CONFIG_MODELS: dict[str, type[BaseModel]] = {
    "chart": ChartConfig,
    "metric": MetricConfig,
    "table": TableConfig,
}


# ── Parsing ─────────────────────────────────────────────


def parse_widget_config(raw: Any) -> dict[str, Any]:
    """Accept a JSON string or a mapping; anything else is an empty config."""
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ConfigError("Invalid JSON configuration") from exc
        return parsed if isinstance(parsed, dict) else {}
    if isinstance(raw, BaseModel):
        return raw.model_dump(by_alias=True, exclude_none=True)
    if isinstance(raw, Mapping):
        return dict(raw)
    return {}


def parse_typed_config(widget_type: str, raw: Any) -> WidgetQueryConfig:
    """Parse a loose config into the variant selected by ``widget_type``."""
    model = _CONFIG_MODELS.get(widget_type)
    if model is None:
        raise ConfigError(f"Unsupported widget type: {widget_type}")
    try:
        return model.model_validate(parse_widget_config(raw))
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        where = ".".join(str(p) for p in first["loc"])
        raise ConfigError(f"Invalid {widget_type} configuration ({where}): {first['msg']}") from exc


def _descriptor(widget: WidgetDescriptor | Mapping[str, Any]) -> WidgetDescriptor:
    if isinstance(widget, WidgetDescriptor):
        return widget
    try:
        return WidgetDescriptor.model_validate(dict(widget))
    except PydanticValidationError as exc:
        missing = sorted({str(e["loc"][0]) for e in exc.errors()})
        raise ConfigError(f"Widget is missing required fields: {', '.join(missing)}") from exc


def _pagination(pagination: Pagination | Mapping[str, Any] | None) -> Pagination:
    if pagination is None:
        return Pagination()
    if isinstance(pagination, Pagination):
        return pagination
    return Pagination.model_validate(dict(pagination))


# ── Helpers ─────────────────────────────────────────────


def default_config(widget_type: str) -> dict[str, Any]:
    if widget_type == "chart":
        return {"aggregation": "count", "yAxis": "*"}
    if widget_type == "metric":
        return {"aggregation": "count", "metric": "*"}
    if widget_type == "table":
        return {"columns": []}
    return {}


def is_aggregated_widget(widget_type: str, config: Any) -> bool:
    """Metrics always aggregate; charts do when grouped, bucketed or aggregated."""
    if widget_type == "metric":
        return True
    if widget_type != "chart":
        return False
    cfg = parse_widget_config(config)
    return bool(cfg.get("aggregation") or cfg.get("groupBy") or cfg.get("timeAggregation"))


def query_params_cache_key(params: Mapping[str, Any]) -> str:
    payload = json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _order_by(typed: ChartConfig | TableConfig) -> list[dict[str, str]] | None:
    if not typed.order_by:
        return None
    return [o.model_dump() for o in typed.order_by]


def _compile_filters(
    compiler: FilterCompiler,
    conditions: Sequence[Any],
    columns: Sequence[ColumnMeta | dict] | None,
    now: datetime,
    *,
    is_aggregated: bool = False,
    y_axis: str | None = None,
    aggregation: str | None = None,
) -> tuple[list[CompiledPredicate], list[CompiledPredicate]]:
    where_raw, having_raw = categorize_filters(
        conditions, is_aggregated=is_aggregated, y_axis=y_axis, aggregation=aggregation
    )
    where = compiler.compile(where_raw, columns, now)
    # Aggregate aliases are not table columns, so HAVING compiles without metadata.
    having = compiler.compile(having_raw, None, now)
    return where, having


# ── Per-type parameters ─────────────────────────────────


def _chart_params(config: ChartConfig) -> dict[str, Any]:
    params: dict[str, Any] = {
        "yAxis": config.y_axis or "*",
        "aggregation": (config.aggregation or "count").upper(),
    }
    if config.x_axis:
        params["xAxis"] = config.x_axis
    if config.time_aggregation:
        params["timeAggregation"] = config.time_aggregation
    group_columns = config.group_columns()
    if group_columns:
        params["groupBy"] = group_columns
    if config.multi_series is not None and config.multi_series.enabled:
        params["multiSeries"] = config.multi_series.model_dump(by_alias=True, exclude_none=True)
    order_by = _order_by(config)
    if order_by:
        params["orderBy"] = order_by
    if config.limit is not None:
        params["limit"] = config.limit
    return params


def _metric_params(config: MetricConfig) -> dict[str, Any]:
    return {
        "aggregation": (config.aggregation or "count").upper(),
        "aggregationColumn": (config.metric or "").strip() or "*",
    }


def _table_params(config: TableConfig) -> dict[str, Any]:
    params: dict[str, Any] = {}
    if config.columns:
        params["properties"] = {"columns": list(config.columns)}
    order_by = _order_by(config)
    if order_by:
        params["orderBy"] = order_by
    return params


# ── Public API ──────────────────────────────────────────


def build_query_params(
    widget: WidgetDescriptor | Mapping[str, Any],
    config: Any,
    pagination: Pagination | Mapping[str, Any] | None = None,
    *,
    columns: Sequence[ColumnMeta | dict] | None = None,
    now: datetime | None = None,
    compiler: FilterCompiler | None = None,
) -> dict[str, Any]:
    """Compile a widget and its config into query parameters.

    Parameters
    ----------
    widget : WidgetDescriptor or mapping
        ``schemaName``, ``tableName`` and ``widgetType``.
    config : mapping, JSON string or typed config
        The widget's stored configuration.
    pagination : Pagination or mapping, optional
        ``page`` / ``pageSize``; falsy values fall back to the settings defaults.
    columns : list of ColumnMeta, optional
        Column metadata for the table.  Enables operator legality and
        type-aware value handling in filters.
    now : datetime, optional
        Instant relative dates resolve against.  Read once from the
        process clock when omitted.
    compiler : FilterCompiler, optional
        Custom compiler (quoting, timezone).

    Raises
    ------
    ConfigError
        Unknown widget type, missing ``schemaName``/``tableName`` or an
        invalid config value (unknown aggregation or time bucket).
    """
    descriptor = _descriptor(widget)
    raw = parse_widget_config(config)
    typed = parse_typed_config(descriptor.widget_type, raw)
    settings = get_settings()
    page = _pagination(pagination)

    params: dict[str, Any] = {
        "schemaName": descriptor.schema_name,
        "tableName": descriptor.table_name,
        "page": page.page or settings.default_page,
        "pageSize": page.page_size or settings.default_page_size,
    }

    if typed.filters is not None:
        now = now or get_clock().now()
        y_axis = typed.y_axis if isinstance(typed, ChartConfig) else None
        where, having = _compile_filters(
            compiler or FilterCompiler(),
            typed.filters,
            columns,
            now,
            is_aggregated=is_aggregated_widget(descriptor.widget_type, raw),
            y_axis=y_axis,
            aggregation=getattr(typed, "aggregation", None),
        )
        params["filters"] = [p.sql for p in where]
        if having:
            params["havingFilters"] = [p.sql for p in having]
        if where:
            params["where"] = combine(where)

    match typed:
        case ChartConfig():
            params.update(_chart_params(typed))
        case MetricConfig():
            params.update(_metric_params(typed))
        case TableConfig():
            params.update(_table_params(typed))
        case _:
            raise ConfigError(f"Unsupported widget type: {descriptor.widget_type}")

    logger.debug(
        "Built %s query params for %s.%s (%d filter(s))",
        descriptor.widget_type,
        descriptor.schema_name,
        descriptor.table_name,
        len(params.get("filters", [])),
    )
    return params


def build_table_query_params(
    widget: WidgetDescriptor | Mapping[str, Any],
    config: Any,
    search_params: TableSearchParams | Mapping[str, Any],
    *,
    columns: Sequence[ColumnMeta | dict] | None = None,
    now: datetime | None = None,
    compiler: FilterCompiler | None = None,
) -> dict[str, Any]:
    """Table-widget parameters with free-text search and sorting."""
    descriptor = _descriptor(widget)
    if descriptor.widget_type != "table":
        raise ConfigError("This method only supports table widgets")

    typed = parse_typed_config("table", config)
    search = (
        search_params
        if isinstance(search_params, TableSearchParams)
        else TableSearchParams.model_validate(dict(search_params))
    )

    now = now or get_clock().now()
    where, _ = _compile_filters(compiler or FilterCompiler(), typed.filters or [], columns, now)

    params: dict[str, Any] = {
        "schemaName": descriptor.schema_name,
        "tableName": descriptor.table_name,
        "page": search.page,
        "pageSize": search.page_size,
        "filters": [p.sql for p in where],
    }
    if where:
        params["where"] = combine(where)
    params.update(_table_params(typed))
    if search.search:
        params["search"] = search.search
    if search.sort_column:
        params["sortColumn"] = search.sort_column
        params["sortDirection"] = search.sort_direction or "asc"
    return params

