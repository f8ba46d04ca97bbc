"""
Filter compiler: turns widget ``FilterCondition`` lists into predicates.

Each condition is compiled into a backend-agnostic ``CompiledPredicate``
(column + operator + resolved operands) and rendered into a WHERE fragment
by a pluggable ``Quoter``.  The default ``SqlQuoter`` double-quotes
identifiers and single-quotes literals:

    "created_at" BETWEEN '2024-03-15T00:00:00.000Z' AND '2024-03-15T23:59:59.999Z'
    "status" IN ('active', 'trial')
    "email" ILIKE '%@example.com'

A condition that cannot be compiled (missing column, unknown operator,
operator illegal for the column type, unparseable value …) is skipped and
logged; the rest of the list still compiles.
"""
from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Protocol, Sequence

from pydantic import ValidationError as PydanticValidationError

from src.core.errors import ConfigError, DateParseError
from src.core.logging import get_logger
from src.widgets.catalog import LIST_OPERATORS, NULL_OPERATORS, OperatorCatalog, load_catalog
from src.widgets.dates import DateRange, DateResolver, format_instant, is_relative_date
from src.widgets.spec import ColumnMeta, FilterCondition

logger = get_logger(__name__)

_TEXT_PATTERNS = {
    "contains": "%{}%",
    "startsWith": "{}%",
    "endsWith": "%{}",
}

_DEFAULT_AGGREGATION_ALIASES = ("value", "count", "total", "avg", "min", "max", "sum")
_AGG_CALL_RE = re.compile(r"^(count|sum|avg|min|max)\s*\(", re.IGNORECASE)
_YEAR_LIKE_RE = re.compile(r"^\d{1,4}$")
_INTEGER_RE = re.compile(r"^-?\d+$")


class _SkipCondition(Exception):
    """Raised internally when a single condition cannot be compiled."""


# ── Compiled output ─────────────────────────────────────


@dataclass(frozen=True)
class CompiledPredicate:
    column: str
    operator: str
    operands: tuple[Any, ...]
    sql: str
    connector: str = "AND"  # joins this predicate to the next one

    def __str__(self) -> str:
        return self.sql


# ── Quoting ─────────────────────────────────────────────


class Quoter(Protocol):
    def identifier(self, name: str) -> str: ...

    def literal(self, value: Any) -> str: ...


class SqlQuoter:
    """Postgres-style quoting."""

    def identifier(self, name: str) -> str:
        return '"' + name.replace('"', '""') + '"'

    def literal(self, value: Any) -> str:
        if value is None:
            return "NULL"
        if isinstance(value, bool):
            return "TRUE" if value else "FALSE"
        if isinstance(value, (int, float, Decimal)):
            return str(value)
        if isinstance(value, datetime):
            return f"'{format_instant(value)}'"
        return "'" + str(value).replace("'", "''") + "'"


def render_predicate(quoter: Quoter, column: str, operator: str, operands: Sequence[Any]) -> str:
    """Render one structured predicate into a WHERE fragment."""
    col = quoter.identifier(column)
    lits = [quoter.literal(v) for v in operands]

    if operator == "isNull":
        return f"{col} IS NULL"
    if operator == "notNull":
        return f"{col} IS NOT NULL"
    if operator in ("between", "notBetween"):
        keyword = "BETWEEN" if operator == "between" else "NOT BETWEEN"
        return f"{col} {keyword} {lits[0]} AND {lits[1]}"
    if operator in LIST_OPERATORS:
        keyword = "IN" if operator == "in" else "NOT IN"
        return f"{col} {keyword} ({', '.join(lits)})"
    if operator == "pathExists":
        return f"{col} #> {lits[0]} IS NOT NULL"
    if operator == "containsText":
        return f"{col}::text ILIKE {lits[0]}"

    symbol = {
        "eq": "=",
        "neq": "!=",
        "lt": "<",
        "lte": "<=",
        "gt": ">",
        "gte": ">=",
        "ilike": "ILIKE",
        "hasKey": "?",
        "keyEquals": "@>",
    }[operator]
    return f"{col} {symbol} {lits[0]}"


# ── Value helpers ───────────────────────────────────────


def _to_number(value: Any) -> int | float | Decimal:
    """Integers stay exact at any size; other strings parse as ``Decimal``."""
    if isinstance(value, bool):
        raise _SkipCondition(f"boolean {value!r} is not a number")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise _SkipCondition(f"invalid numeric value {value!r}")
        return int(value) if value.is_integer() else value

    text = str(value).strip()
    if _INTEGER_RE.match(text):
        return int(text)
    try:
        number = Decimal(text)
    except InvalidOperation:
        raise _SkipCondition(f"invalid numeric value {value!r}")
    if not number.is_finite():
        raise _SkipCondition(f"invalid numeric value {value!r}")
    return number


def _escape_like(value: Any) -> str:
    """Escape ILIKE wildcards so user input matches literally."""
    return str(value).replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


def _as_pair(value: Any) -> list[Any]:
    parts = [p.strip() for p in value.split(",")] if isinstance(value, str) else value
    if not isinstance(parts, (list, tuple)) or len(parts) < 2:
        raise _SkipCondition(f"range value {value!r} needs a start and an end")
    return list(parts[:2])


def _json_key_equals(value: Any) -> str:
    """``"key:value"`` (or a mapping) into a compact JSON containment document."""
    if isinstance(value, dict):
        return json.dumps(value, separators=(",", ":"))
    text = str(value)
    if ":" not in text:
        raise _SkipCondition(f"keyEquals value {value!r} is not 'key:value'")
    key, raw = (part.strip() for part in text.split(":", 1))
    if not key or not raw:
        raise _SkipCondition(f"keyEquals value {value!r} is not 'key:value'")
    parsed: Any
    if raw == "null":
        parsed = None
    elif re.fullmatch(r"-?\d+(\.\d+)?", raw):
        parsed = _to_number(raw)
        if isinstance(parsed, Decimal):
            parsed = float(parsed)
    else:
        parsed = raw
    return json.dumps({key: parsed}, separators=(",", ":"))


def _json_path(value: Any) -> str:
    path = str(value)
    if path == "$":
        parts: list[str] = []
    elif path.startswith("$."):
        parts = path[2:].split(".")
    else:
        parts = [path]
    return "{" + ",".join(parts) + "}"


# ── Compiler ────────────────────────────────────────────


class FilterCompiler:
    """Compile filter conditions against declared column metadata.

    Parameters
    ----------
    catalog : OperatorCatalog, optional
        Operator legality and date-operator mapping.  Defaults to the YAML catalog.
    resolver : DateResolver, optional
        Resolves relative and absolute date values.
    quoter : Quoter, optional
        Renders the SQL fragment.  Defaults to ``SqlQuoter``.
    """

    def __init__(
        self,
        catalog: OperatorCatalog | None = None,
        resolver: DateResolver | None = None,
        quoter: Quoter | None = None,
    ):
        self.catalog = catalog or load_catalog()
        self.resolver = resolver or DateResolver()
        self.quoter = quoter or SqlQuoter()

    # ── Public API ──────────────────────────────────────

    def compile(
        self,
        conditions: Iterable[Any] | None,
        columns: Sequence[ColumnMeta | dict] | None,
        now: datetime,
    ) -> list[CompiledPredicate]:
        """Compile every well-formed condition; malformed ones are dropped.

        When ``columns`` is ``None`` no metadata is available: operator
        legality is not checked and values are processed by their own shape.
        Column metadata that does not parse raises ``ConfigError``.
        """
        meta = None if columns is None else {c.name: c for c in _parse_columns(columns)}
        raw_conditions = list(conditions or [])
        compiled: list[CompiledPredicate] = []

        for raw in raw_conditions:
            try:
                condition = raw if isinstance(raw, FilterCondition) else FilterCondition.model_validate(raw)
            except PydanticValidationError as exc:
                logger.warning("Skipping malformed filter %r: %s", raw, exc.errors()[0]["msg"])
                continue

            try:
                compiled.append(self.compile_condition(condition, meta, now))
            except (_SkipCondition, DateParseError, ConfigError) as exc:
                logger.warning("Skipping filter on '%s' (%s): %s", condition.column, condition.operator, exc)

        logger.debug("Compiled %d/%d filter(s)", len(compiled), len(raw_conditions))
        return compiled

    def compile_condition(
        self,
        condition: FilterCondition,
        meta: dict[str, ColumnMeta] | None,
        now: datetime,
    ) -> CompiledPredicate:
        """Compile one validated condition; raises when it cannot be compiled."""
        column = None
        if meta is not None:
            column = meta.get(condition.column)
            if column is None:
                raise _SkipCondition(f"column '{condition.column}' not found")
        data_type = column.data_type if column else None

        if data_type and not self.catalog.is_operator_allowed(condition.operator, data_type):
            raise _SkipCondition(f"operator '{condition.operator}' not supported for type '{data_type}'")

        operator, operands = self._process(condition, data_type, now)
        sql = render_predicate(self.quoter, condition.column, operator, operands)
        return CompiledPredicate(
            column=condition.column,
            operator=operator,
            operands=operands,
            sql=sql,
            connector=condition.logical_operator or "AND",
        )

    # ── Value processing ────────────────────────────────

    def _process(self, condition: FilterCondition, data_type: str | None, now: datetime) -> tuple[str, tuple]:
        op = condition.operator
        value = condition.value

        if op in NULL_OPERATORS:
            return op, ()
        if value is None:
            raise _SkipCondition("value is required")

        is_date = (
            self.catalog.is_date_type(data_type)
            or is_relative_date(value)
            or (data_type is None and self.catalog.is_date_operator(op))
        )
        if is_date:
            return self._process_date(op, value, now)

        family = self.catalog.type_family(data_type) if data_type else None

        if op in LIST_OPERATORS:
            items = list(value) if isinstance(value, (list, tuple)) else [value]
            if not items:
                raise _SkipCondition("empty value list")
            return op, tuple(self._scalar(v, family) for v in items)

        if op in ("between", "notBetween"):
            return op, tuple(self._scalar(v, family) for v in _as_pair(value))

        if op in _TEXT_PATTERNS:
            return "ilike", (_TEXT_PATTERNS[op].format(_escape_like(value)),)

        if op == "hasKey":
            return op, (str(value),)
        if op == "keyEquals":
            return op, (_json_key_equals(value),)
        if op == "pathExists":
            return op, (_json_path(value),)
        if op == "containsText":
            return op, ("%" + _escape_like(value) + "%",)

        if family == "json" and isinstance(value, (dict, list)):
            return op, (json.dumps(value, separators=(",", ":")),)
        return op, (self._scalar(value, family),)

    def _scalar(self, value: Any, family: str | None) -> Any:
        if family == "numeric":
            return _to_number(value)
        if family == "boolean":
            return _to_bool(value)
        if family is None and isinstance(value, (bool, int, float)):
            return value
        return str(value)

    def _process_date(self, op: str, value: Any, now: datetime) -> tuple[str, tuple]:
        if op in ("between", "notBetween"):
            if is_relative_date(value):
                rng = self.resolver.resolve(value, now)
            else:
                rng = self.resolver.parse_range(value)
            return op, (rng.start, rng.end)

        mapped = self.catalog.map_date_operator(op)

        if is_relative_date(value):
            rng = self.resolver.resolve(value, now)
            return self._range_comparison(mapped, rng)

        if mapped == "eq" and isinstance(value, str):
            # Bare years / ids are compared literally, not as days.
            if _YEAR_LIKE_RE.match(value.strip()):
                return "eq", (value,)
            if op == "during" and "," in value:
                rng = self.resolver.parse_range(value)
            else:
                rng = self.resolver.resolve(value, now, operator="eq")
            return "between", (rng.start, rng.end)

        if mapped not in ("eq", "neq", "lt", "lte", "gt", "gte"):
            raise _SkipCondition(f"operator '{op}' cannot be applied to a date value")

        instant, date_only = self.resolver.parse_instant(value)
        if mapped == "eq":
            rng = self.resolver.day_range(instant)
            return "between", (rng.start, rng.end)
        if date_only and mapped in ("gt", "lte"):
            instant = self.resolver.day_range(instant).end
        return mapped, (instant,)

    @staticmethod
    def _range_comparison(operator: str, rng: DateRange) -> tuple[str, tuple]:
        if operator == "eq":
            return "between", (rng.start, rng.end)
        if operator == "neq":
            return "notBetween", (rng.start, rng.end)
        if operator in ("lt", "gte"):
            return operator, (rng.start,)
        if operator in ("gt", "lte"):
            return operator, (rng.end,)
        raise _SkipCondition(f"operator '{operator}' cannot take a relative date")


# ── Composition ─────────────────────────────────────────


def combine(predicates: Sequence[CompiledPredicate]) -> str:
    """Join fragments left to right, each using its own connector to the next."""
    parts: list[str] = []
    last = len(predicates) - 1
    for i, predicate in enumerate(predicates):
        parts.append(predicate.sql if i == last else f"{predicate.sql} {predicate.connector}")
    return " ".join(parts)


def categorize_filters(
    conditions: Sequence[Any] | None,
    *,
    is_aggregated: bool,
    y_axis: str | None = None,
    aggregation: str | None = None,
    aggregation_aliases: Sequence[str] | None = None,
) -> tuple[list[Any], list[Any]]:
    """Split raw conditions into ``(where, having)``.

    On aggregated widgets a condition whose column is an aggregate alias
    (``value``, ``count`` …) or an aggregate call (``SUM(amount)``) filters
    the grouped result, so it belongs in HAVING.
    """
    conditions = list(conditions or [])
    if not is_aggregated:
        return conditions, []

    aliases = {a.lower() for a in (aggregation_aliases or _DEFAULT_AGGREGATION_ALIASES)}
    agg_pattern = None
    if y_axis and aggregation:
        agg_pattern = re.compile(rf"^{re.escape(aggregation)}\s*\(.*{re.escape(y_axis)}.*\)$", re.IGNORECASE)

    where: list[Any] = []
    having: list[Any] = []
    for condition in conditions:
        column = _column_of(condition)
        if column is None:
            where.append(condition)
            continue
        lowered = column.lower()
        if lowered in aliases or _AGG_CALL_RE.match(lowered) or (agg_pattern and agg_pattern.match(column)):
            having.append(condition)
        else:
            where.append(condition)
    return where, having


def _column_of(condition: Any) -> str | None:
    if isinstance(condition, FilterCondition):
        return condition.column
    if isinstance(condition, dict) and isinstance(condition.get("column"), str):
        return condition["column"]
    return None


def _parse_columns(columns: Sequence[ColumnMeta | dict]) -> list[ColumnMeta]:
    try:
        return [c if isinstance(c, ColumnMeta) else ColumnMeta.model_validate(c) for c in columns]
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        where = ".".join(str(p) for p in first["loc"])
        raise ConfigError(f"Invalid column metadata ({where}): {first['msg']}") from exc
