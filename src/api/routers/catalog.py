"""
GET /operators/{data_type}, GET /relative-dates -- metadata endpoints.
"""
from __future__ import annotations

from fastapi import APIRouter
from pydantic import BaseModel

from src.widgets.catalog import load_catalog
from src.widgets.dates import RELATIVE_DATE_OPTIONS, RELATIVE_DATE_PREFIX

router = APIRouter()


class OperatorsResponse(BaseModel):
    data_type: str
    family: str
    operators: list[str]
    range_operators: list[str]


class RelativeDatesResponse(BaseModel):
    prefix: str
    options: list[str]


@router.get("/operators/{data_type}", response_model=OperatorsResponse)
def list_operators(data_type: str) -> OperatorsResponse:
    """Filter operators legal for a column data type."""
    catalog = load_catalog()
    operators = catalog.operators_for(data_type)
    return OperatorsResponse(
        data_type=data_type,
        family=catalog.type_family(data_type),
        operators=operators,
        range_operators=[op for op in operators if catalog.is_range_operator(op)],
    )


@router.get("/relative-dates", response_model=RelativeDatesResponse)
def list_relative_dates() -> RelativeDatesResponse:
    return RelativeDatesResponse(prefix=RELATIVE_DATE_PREFIX, options=list(RELATIVE_DATE_OPTIONS))
