from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from insight.exec.filters import FilterSet, normalize_filters
from insight.planner.intent import (
    COMPARISON_KEYS,
    TREND_PRICE,
    TREND_RATE,
    TREND_VOLUME,
    Intent,
)
from insight.utils.schema_cache import SALES_SCHEMA, SchemaSnapshot

MONTH_EXPR = "strftime(sale_date, '%Y-%m')"
TX_COUNT = "CAST(COUNT(*) AS INTEGER)"


@dataclass
class Filter:
    column: str
    op: str  # '=', '!=', '>', '>=', '<', '<=', 'IN', 'BETWEEN'
    value: Any | List[Any]
    cast: Optional[str] = None  # SQL type the bound value is cast to, e.g. 'DATE'


@dataclass
class QueryPlan:
    columns: List[str]
    filters: List[Filter]
    group_by: List[str]
    aggregations: Dict[str, str]  # output_name -> SQL expression (e.g., 'median_price': 'MEDIAN(price_aed)')
    order_by: List[Tuple[str, str]]  # (expr, 'ASC'|'DESC')
    limit: Optional[int] = None
    source: str = "sales"
    select_exprs: Optional[Dict[str, str]] = None  # alias -> SQL expr
    group_by_exprs: Optional[List[str]] = None  # raw SQL expressions to GROUP BY
    conditions: List[str] = field(default_factory=list)  # literal predicates, never parameterized


@dataclass
class CompiledQuery:
    query_text: str
    params: List[Any] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.query_text


def escape_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def _placeholder(f: Filter) -> str:
    return f"CAST(? AS {f.cast})" if f.cast else "?"


def build_sql(plan: QueryPlan, schema: SchemaSnapshot = SALES_SCHEMA) -> Tuple[str, List[Any]]:
    # Validate columns (only for direct column references)
    valid_cols = set(schema.column_names())
    for col in plan.columns + plan.group_by + [f.column for f in plan.filters]:
        if col and col not in valid_cols:
            raise ValueError(f"Unknown column: {col}")

    select_parts: List[str] = []
    params: List[Any] = []

    if plan.select_exprs:
        for alias, expr in plan.select_exprs.items():
            select_parts.append(f"{expr} AS {escape_ident(alias)}")

    if plan.aggregations:
        select_parts.extend([f"{expr} AS {escape_ident(alias)}" for alias, expr in plan.aggregations.items()])

    if plan.columns:
        select_parts.extend([escape_ident(c) for c in plan.columns])

    if not select_parts:
        select_parts = ['*']

    sql = f"SELECT {', '.join(select_parts)} FROM {plan.source}"

    # Placeholders are emitted left to right in the same order params are appended
    where_clauses: List[str] = []
    for f in plan.filters:
        col_sql = escape_ident(f.column)
        op = f.op.upper()
        if op == 'IN' and isinstance(f.value, list):
            placeholders = ', '.join([_placeholder(f)] * len(f.value))
            where_clauses.append(f"{col_sql} IN ({placeholders})")
            params.extend(f.value)
        elif op == 'BETWEEN' and isinstance(f.value, list) and len(f.value) == 2:
            where_clauses.append(f"{col_sql} BETWEEN {_placeholder(f)} AND {_placeholder(f)}")
            params.extend(f.value)
        else:
            where_clauses.append(f"{col_sql} {f.op} {_placeholder(f)}")
            params.append(f.value)
    where_clauses.extend(plan.conditions)
    if where_clauses:
        sql += " WHERE " + " AND ".join(where_clauses)

    gb_parts: List[str] = []
    if plan.group_by_exprs:
        gb_parts.extend(plan.group_by_exprs)
    if plan.group_by:
        gb_parts.extend([escape_ident(g) for g in plan.group_by])
    if gb_parts:
        sql += " GROUP BY " + ", ".join(gb_parts)

    if plan.order_by:
        parts = [f"{expr} {direction}" for expr, direction in plan.order_by]
        sql += " ORDER BY " + ", ".join(parts)

    if plan.limit is not None:
        sql += " LIMIT ?"
        params.append(plan.limit)

    return sql, params


# Trend shape -> (aggregations, literal predicates)
TREND_SHAPES: Dict[str, Tuple[Dict[str, str], List[str]]] = {
    TREND_PRICE: ({"median_price": "MEDIAN(price_aed)", "tx_count": TX_COUNT}, ["price_aed > 0"]),
    TREND_RATE: ({"median_rate": "MEDIAN(rate_per_sqm)", "tx_count": TX_COUNT}, ["rate_per_sqm > 0"]),
    TREND_VOLUME: ({"tx_count": TX_COUNT}, []),
}

COMPARISON_MEASURES = {"median_price": "MEDIAN(price_aed)", "tx_count": TX_COUNT}

# Comparison shape -> FilterSet attribute holding the named entities
COMPARISON_MEMBERS = {
    "compare_projects": "projects",
    "compare_districts": "districts",
    "compare_layouts": "layouts",
}


def _members(values: List[str], allow_all: bool = False) -> List[str]:
    # 'all' in a membership list means no constraint
    if allow_all and "all" in values:
        return []
    return list(values)


def _date_filters(filters: FilterSet) -> List[Filter]:
    out: List[Filter] = []
    if filters.date_from:
        out.append(Filter(column="sale_date", op=">=", value=filters.date_from, cast="DATE"))
    if filters.date_to:
        out.append(Filter(column="sale_date", op="<=", value=filters.date_to, cast="DATE"))
    return out


def _ambient_filters(filters: FilterSet) -> List[Filter]:
    out = _date_filters(filters)
    memberships = [
        ("district", _members(filters.districts)),
        ("property_type", _members(filters.property_types)),
        ("layout", _members(filters.layouts, allow_all=True)),
        ("sale_type", _members(filters.sale_types, allow_all=True)),
        ("sale_sequence", _members(filters.sale_sequences, allow_all=True)),
    ]
    for column, values in memberships:
        if values:
            out.append(Filter(column=column, op="IN", value=values))
    if filters.price_min is not None:
        out.append(Filter(column="price_aed", op=">=", value=filters.price_min))
    if filters.price_max is not None:
        out.append(Filter(column="price_aed", op="<=", value=filters.price_max))
    return out


def trend_plan(query_type: str, filters: FilterSet) -> QueryPlan:
    aggregations, conditions = TREND_SHAPES.get(query_type, TREND_SHAPES[TREND_PRICE])
    return QueryPlan(
        columns=[],
        filters=_ambient_filters(filters),
        group_by=[],
        aggregations=dict(aggregations),
        order_by=[("month", "ASC")],
        select_exprs={"month": MONTH_EXPR},
        group_by_exprs=["month"],
        conditions=list(conditions),
    )


def comparison_plan(query_type: str, filters: FilterSet) -> Optional[QueryPlan]:
    """Comparison shapes only honour the date bounds and their own membership list."""
    dimension = COMPARISON_KEYS[query_type]
    members = list(getattr(filters, COMPARISON_MEMBERS[query_type]))
    if not members:
        return None
    return QueryPlan(
        columns=[dimension],
        filters=_date_filters(filters) + [Filter(column=dimension, op="IN", value=members)],
        group_by=[dimension],
        aggregations=dict(COMPARISON_MEASURES),
        order_by=[("month", "ASC")],
        select_exprs={"month": MONTH_EXPR},
        group_by_exprs=["month"],
        conditions=["price_aed > 0"],
    )


def compile_intent(intent: Intent, schema: SchemaSnapshot = SALES_SCHEMA) -> CompiledQuery:
    """Compile an intent into a positional-parameter query.

    An empty CompiledQuery means nothing is selected yet (comparison with no members).
    """
    filters = normalize_filters(intent.filters) or FilterSet()
    if intent.query_type in COMPARISON_KEYS:
        plan = comparison_plan(intent.query_type, filters)
        if plan is None:
            return CompiledQuery(query_text="", params=[])
    else:
        plan = trend_plan(intent.query_type, filters)
    sql, params = build_sql(plan, schema)
    return CompiledQuery(query_text=sql, params=params)
