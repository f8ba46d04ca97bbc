"""
Loads and caches the operator catalog YAML into typed objects.

The catalog is the single source of truth for:
  - which filter operators are legal for each column data type
  - which data types count as numeric / date / json / boolean
  - how date-domain operators map onto comparison operators
  - which operators take a range value
"""
from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml

_CATALOG_PATH = Path(__file__).resolve().parent / "column_types.yml"

ALL_OPERATORS = (
    "eq", "neq", "lt", "lte", "gt", "gte",
    "contains", "startsWith", "endsWith",
    "in", "notIn", "isNull", "notNull",
    "between", "notBetween",
    "before", "beforeOrOn", "after", "afterOrOn", "during",
    "containsText", "hasKey", "keyEquals", "pathExists",
)

NULL_OPERATORS = ("isNull", "notNull")
LIST_OPERATORS = ("in", "notIn")

_FALLBACK_OPERATORS = ("eq", "neq", "isNull", "notNull")


# ── Typed catalog ────────────────────────────────────────

@dataclass(frozen=True)
class OperatorCatalog:
    version: int
    operator_sets: dict[str, tuple[str, ...]]
    data_types: dict[str, str]  # lower-cased data type -> family
    time_types: frozenset[str] = field(default_factory=frozenset)
    date_operators: dict[str, str] = field(default_factory=dict)
    range_operators: frozenset[str] = field(default_factory=frozenset)

    # ── Look-ups ─────────────────────────────────────

    def type_family(self, data_type: str | None) -> str:
        """Return the family (text, numeric, date …) for a declared type."""
        if not data_type:
            return "default"
        return self.data_types.get(data_type.strip().lower(), "default")

    def operators_for(self, data_type: str | None) -> list[str]:
        family = self.type_family(data_type)
        operators = self.operator_sets.get(family) or self.operator_sets.get("default")
        return list(operators or _FALLBACK_OPERATORS)

    def is_operator_allowed(self, operator: str, data_type: str | None) -> bool:
        return operator in self.operators_for(data_type)

    def is_range_operator(self, operator: str) -> bool:
        return operator in self.range_operators

    def map_date_operator(self, operator: str) -> str:
        return self.date_operators.get(operator, operator)

    def is_date_operator(self, operator: str) -> bool:
        return operator in self.date_operators

    def is_date_type(self, data_type: str | None) -> bool:
        return self.type_family(data_type) == "date"

    def is_time_bucketable(self, data_type: str | None) -> bool:
        """Date, timestamp and time columns can be DATE_TRUNC'd."""
        if self.is_date_type(data_type):
            return True
        return bool(data_type) and data_type.strip().lower() in self.time_types

    def is_numeric_type(self, data_type: str | None) -> bool:
        return self.type_family(data_type) == "numeric"

    def is_boolean_type(self, data_type: str | None) -> bool:
        return self.type_family(data_type) == "boolean"

    def is_json_type(self, data_type: str | None) -> bool:
        return self.type_family(data_type) == "json"


# ── Parsing ──────────────────────────────────────────────

def _parse_catalog(raw: dict[str, Any]) -> OperatorCatalog:
    operator_sets = {
        family: tuple(ops or []) for family, ops in (raw.get("operator_sets") or {}).items()
    }
    for family, ops in operator_sets.items():
        unknown = [op for op in ops if op not in ALL_OPERATORS]
        if unknown:
            raise ValueError(f"Unknown operators in family '{family}': {unknown}")
    data_types = {
        str(name).lower(): family for name, family in (raw.get("data_types") or {}).items()
    }
    return OperatorCatalog(
        version=raw.get("version", 1),
        operator_sets=operator_sets,
        data_types=data_types,
        time_types=frozenset(t.lower() for t in raw.get("time_types") or []),
        date_operators=dict(raw.get("date_operators") or {}),
        range_operators=frozenset(raw.get("range_operators") or []),
    )


# ── Public API ───────────────────────────────────────────

@lru_cache
def load_catalog() -> OperatorCatalog:
    """Load and cache the operator catalog from YAML."""
    with open(_CATALOG_PATH) as f:
        raw = yaml.safe_load(f)
    return _parse_catalog(raw)


def operators_for(data_type: str | None) -> list[str]:
    return load_catalog().operators_for(data_type)


def is_range_operator(operator: str) -> bool:
    return load_catalog().is_range_operator(operator)


def map_date_operator(operator: str) -> str:
    return load_catalog().map_date_operator(operator)
