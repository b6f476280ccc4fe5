"""
Compile filter trees and sort lists to SQLite SQL.

Targets the document table used by SqliteRepository: metadata lives in
columns, props live in a JSON text column queried through the JSON1
functions (``json_extract``, ``json_each``, ``json_type``).

Absent-field behaviour follows the in-memory engine where SQL allows it:
equality compiles to ``IS`` and ``not-in`` admits NULL, so a missing prop is
unequal to any value and not inside any list. JSON booleans extract as 1/0,
so equality on props also compares ``json_type`` to keep ``true`` apart
from ``1``.

Invariants:
    - Field names and values are always bound as parameters, never inlined
    - Compilation is pure; the same tree always yields the same SQL
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Collection, List, Sequence, Tuple

from ..errors import QueryError
from .filters import Connective, Operator, Where, WhereComposite, WhereLeaf
from .query import Direction, Sort

META_COLUMNS = {
    "id": "id",
    "created_at": "created_at",
    "updated_at": "updated_at",
    "idempotency_key": "idempotency_key",
}
SORTABLE_META = frozenset({"id", "created_at", "updated_at"})
PROPS_COLUMN = "props_json"

_COMPARISONS = {
    Operator.EQ: "IS",
    Operator.NE: "IS NOT",
    Operator.GT: ">",
    Operator.GE: ">=",
    Operator.LT: "<",
    Operator.LE: "<=",
}


def json_path(fieldname: str) -> str:
    """JSON path addressing a top-level prop, quoted to allow any key."""
    escaped = fieldname.replace('"', '\\"')
    return f'$."{escaped}"'


def to_sql_value(value: Any) -> Any:
    """Convert a Python operand into the form stored in the table."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple, dict)):
        # json_extract returns arrays/objects as minified JSON text
        return json.dumps(value, separators=(",", ":"))
    return value


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


def _field(fieldname: str, meta_fields: Collection[str]) -> Tuple[str, List[Any]]:
    if fieldname in meta_fields:
        return META_COLUMNS[fieldname], []
    return f"json_extract({PROPS_COLUMN}, ?)", [json_path(fieldname)]


def _bool_check(type_expr: str) -> str:
    """1 when the JSON value typed by ``type_expr`` is a boolean, else 0 (never NULL)."""
    return f"(IFNULL({type_expr}, '') IN ('true', 'false'))"


def _matches_any(
    expr: str, expr_params: List[Any], check: str, check_params: List[Any], values: Sequence[Any]
) -> Tuple[str, List[Any]]:
    # JSON true/false extract as 1/0, so booleans and numbers are told apart by type
    terms: List[str] = []
    params: List[Any] = []
    for flag in (False, True):
        group = [to_sql_value(v) for v in values if isinstance(v, bool) is flag]
        if group:
            terms.append(f"({expr} IN ({_placeholders(len(group))}) AND {check} = {int(flag)})")
            params.extend([*expr_params, *group, *check_params])
    return f"IFNULL({' OR '.join(terms)}, 0)", params


def _compile_leaf(leaf: WhereLeaf) -> Tuple[str, List[Any]]:
    op = leaf.operator

    if op in (Operator.ARRAY_CONTAINS, Operator.ARRAY_CONTAINS_ANY):
        if leaf.fieldname in META_COLUMNS:
            return "0", []
        path = json_path(leaf.fieldname)
        values = [leaf.value] if op is Operator.ARRAY_CONTAINS else list(leaf.value)
        if not values:
            return "0", []
        member, member_params = _matches_any(
            "json_each.value", [], _bool_check("json_each.type"), [], values
        )
        sql = (
            f"(json_type({PROPS_COLUMN}, ?) = 'array' AND EXISTS "
            f"(SELECT 1 FROM json_each({PROPS_COLUMN}, ?) WHERE {member}))"
        )
        return sql, [path, path, *member_params]

    expr, params = _field(leaf.fieldname, META_COLUMNS)
    strict = leaf.fieldname not in META_COLUMNS
    check = _bool_check(f"json_type({PROPS_COLUMN}, ?)")

    if op in (Operator.EQ, Operator.NE) and strict:
        sql = f"({expr} IS ? AND {check} = ?)"
        if op is Operator.NE:
            sql = f"NOT {sql}"
        return sql, [*params, to_sql_value(leaf.value), *params, int(isinstance(leaf.value, bool))]

    if op in _COMPARISONS:
        return f"{expr} {_COMPARISONS[op]} ?", [*params, to_sql_value(leaf.value)]

    if op is Operator.BETWEEN:
        bounds = [to_sql_value(leaf.value.start), to_sql_value(leaf.value.end)]
        return f"{expr} BETWEEN ? AND ?", [*params, *bounds]

    if op in (Operator.IN, Operator.NOT_IN):
        if not leaf.value:
            return ("0", []) if op is Operator.IN else ("1", [])
        if strict:
            sql, sql_params = _matches_any(expr, params, check, params, leaf.value)
        else:
            values = [to_sql_value(v) for v in leaf.value]
            sql = f"IFNULL({expr} IN ({_placeholders(len(values))}), 0)"
            sql_params = [*params, *values]
        return (sql if op is Operator.IN else f"NOT {sql}"), sql_params

    raise QueryError(f"Unsupported operator '{op}'", fieldname=leaf.fieldname)


def compile_where(where: Where) -> Tuple[str, List[Any]]:
    """Compile a filter tree to a WHERE clause body and its parameters."""
    if isinstance(where, WhereComposite):
        left_sql, left_params = compile_where(where.left)
        right_sql, right_params = compile_where(where.right)
        joiner = "OR" if where.connective is Connective.OR else "AND"
        return f"({left_sql} {joiner} {right_sql})", [*left_params, *right_params]

    if isinstance(where, WhereLeaf):
        return _compile_leaf(where)

    raise QueryError(f"Not a filter tree node: {where!r}")


def compile_sorts(sorts: Sequence[Sort]) -> Tuple[str, List[Any]]:
    """Compile sort keys to an ORDER BY body; ``rowid`` breaks remaining ties."""
    terms: List[str] = []
    params: List[Any] = []
    for sort in sorts:
        expr, expr_params = _field(sort.property, SORTABLE_META)
        direction = "DESC" if sort.direction is Direction.DESC else "ASC"
        terms.append(f"{expr} {direction}")
        params.extend(expr_params)
    terms.append("rowid ASC")
    return ", ".join(terms), params
