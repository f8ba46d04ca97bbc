"""POST /widgets/* -- query-parameter compilation, validation and chart-data endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from src.core.errors import ValidationError, WidgetQueryError
from src.core.logging import get_logger
from src.widgets.aggregation import AggregationConfig, auto_correct, validate_aggregation
from src.widgets.chart_data import transform_chart_data
from src.widgets.config_validator import validate_configuration
from src.widgets.labels import generate_labels
from src.widgets.query_builder import build_query_params
from src.widgets.spec import ColumnMeta
from src.widgets.trend import build_trend_query_params

logger = get_logger(__name__)
router = APIRouter()

_CAMEL = ConfigDict(populate_by_name=True)


class QueryParamsRequest(BaseModel):
    model_config = _CAMEL

    widget: dict[str, Any] = Field(..., description="schemaName, tableName, widgetType")
    config: dict[str, Any] | str = Field(default_factory=dict)
    pagination: dict[str, Any] | None = None
    columns: list[ColumnMeta] | None = None
    now: datetime | None = Field(None, description="Instant relative dates resolve against")


class ValidateRequest(BaseModel):
    model_config = _CAMEL

    widget_type: str = Field(..., alias="widgetType")
    config: dict[str, Any] = Field(default_factory=dict)
    columns: list[ColumnMeta] | None = None


class ValidateResponse(BaseModel):
    is_valid: bool
    config: dict[str, Any]
    warnings: list[str]
    errors: list[str]


class AggregationRequest(BaseModel):
    aggregation: str | None = None
    metric: str | None = None
    columns: list[ColumnMeta] | None = None


class AggregationResponse(BaseModel):
    is_valid: bool
    error: str | None = None
    suggestion: str | None = None
    message_key: str | None = None


class AutoCorrectResponse(BaseModel):
    aggregation: str | None
    metric: str | None


class ChartDataRequest(BaseModel):
    model_config = _CAMEL

    rows: list[Any] | dict[str, Any]
    config: dict[str, Any]
    columns: list[ColumnMeta] | None = None
    max_series: int | None = Field(None, ge=1, alias="maxSeries")


class ChartDataResponse(BaseModel):
    chart_data: list[Any]
    series_keys: list[str]
    labels: dict[str, str]


def _bad_request(exc: WidgetQueryError) -> HTTPException:
    detail: Any = exc.to_dict() if isinstance(exc, ValidationError) else str(exc)
    return HTTPException(status_code=400, detail=detail)


@router.post("/query-params")
def query_params_endpoint(req: QueryParamsRequest) -> dict[str, Any]:
    """Compile a widget and its config into backend query parameters."""
    try:
        return build_query_params(req.widget, req.config, req.pagination, columns=req.columns, now=req.now)
    except WidgetQueryError as exc:
        logger.info("query-params rejected: %s", exc)
        raise _bad_request(exc)


@router.post("/trend-query-params")
def trend_query_params_endpoint(req: QueryParamsRequest) -> dict[str, Any]:
    """Query parameters for the current and previous period of a metric trend."""
    try:
        return build_trend_query_params(req.widget, req.config, req.pagination, columns=req.columns, now=req.now)
    except WidgetQueryError as exc:
        logger.info("trend-query-params rejected: %s", exc)
        raise _bad_request(exc)


@router.post("/validate", response_model=ValidateResponse)
def validate_endpoint(req: ValidateRequest) -> ValidateResponse:
    report = validate_configuration(req.config, req.widget_type, req.columns)
    return ValidateResponse(
        is_valid=report.is_valid,
        config=report.config,
        warnings=report.warnings,
        errors=report.errors,
    )


@router.post("/aggregation/validate", response_model=AggregationResponse)
def validate_aggregation_endpoint(req: AggregationRequest) -> AggregationResponse:
    result = validate_aggregation(req.aggregation, req.metric, req.columns)
    return AggregationResponse(
        is_valid=result.is_valid,
        error=result.error,
        suggestion=result.suggestion,
        message_key=result.message_key,
    )


@router.post("/aggregation/auto-correct", response_model=AutoCorrectResponse)
def auto_correct_endpoint(req: AggregationRequest) -> AutoCorrectResponse:
    corrected = auto_correct(
        AggregationConfig(
            aggregation=req.aggregation,
            metric=req.metric,
            columns=None if req.columns is None else tuple(req.columns),
        )
    )
    return AutoCorrectResponse(aggregation=corrected.aggregation, metric=corrected.metric)


@router.post("/chart-data", response_model=ChartDataResponse)
def chart_data_endpoint(req: ChartDataRequest) -> ChartDataResponse:
    """Transform query rows into chart-ready points, series keys and labels."""
    try:
        result = transform_chart_data(req.rows, req.config, max_series=req.max_series)
    except WidgetQueryError as exc:
        logger.info("chart-data rejected: %s", exc)
        raise _bad_request(exc)

    return ChartDataResponse(
        chart_data=result.chart_data,
        series_keys=result.series_keys,
        labels=generate_labels(result.original_config, result.series_keys, req.columns),
    )
