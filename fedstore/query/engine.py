"""
In-memory query engine.

Evaluates a Query against a list of entities without any external store:
filter tree evaluation, multi-key stable sort and page-index pagination.
Document-store adapters that cannot push a query down reuse it as well.

Field resolution:
    - ``id``, ``created_at``, ``updated_at`` (and ``idempotency_key`` for
      filters) are read from entity metadata
    - every other name is read from the entity props
    - an absent field resolves to None

Absent fields never raise. Ordering comparisons that Python refuses
(None against a number, mixed types) evaluate to False, and sort keys that
cannot be ordered compare as equal so the next key decides.

Equality (``==``, ``!=``, ``in``, ``not-in`` and the array operators) is
strict about booleans: ``True`` never equals ``1`` and ``False`` never
equals ``0``. Other values compare by Python equality, so ``1 == 1.0``.

Pagination:
    Page ``p`` of size ``n`` asks for ``n + 1`` items starting at ``p * n``.
    If ``n + 1`` come back the extra one is dropped and ``next_cursor`` is
    ``str(p + 1)``; otherwise there is no next page.
"""

from __future__ import annotations

import functools
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..entity import Entity
from ..errors import InvalidCursorError, QueryError
from .filters import Connective, Operator, Where, WhereComposite, WhereLeaf
from .query import Direction, Query, Sort

SORT_META_FIELDS = frozenset({"id", "created_at", "updated_at"})
FILTER_META_FIELDS = frozenset({"id", "created_at", "updated_at", "idempotency_key"})


def _resolve(entity: Entity, fieldname: str, meta_fields: frozenset) -> Any:
    if fieldname in meta_fields:
        return getattr(entity.meta, fieldname)
    return entity.props.get(fieldname)


def _ordered(check: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    @functools.wraps(check)
    def wrapper(a: Any, b: Any) -> bool:
        try:
            return bool(check(a, b))
        except TypeError:
            return False

    return wrapper


def _same(a: Any, b: Any) -> bool:
    if isinstance(a, bool) or isinstance(b, bool):
        return type(a) is type(b) and a == b
    return a == b


def _contains(container: Any, item: Any) -> bool:
    try:
        return any(_same(item, member) for member in container)
    except TypeError:
        return False


def _array_contains(field_value: Any, value: Any) -> bool:
    return isinstance(field_value, (list, tuple)) and _contains(field_value, value)


def _array_contains_any(field_value: Any, values: Sequence[Any]) -> bool:
    if not isinstance(field_value, (list, tuple)):
        return False
    return any(_contains(values, item) for item in field_value)


_OPERATORS: Dict[Operator, Callable[[Any, Any], bool]] = {
    Operator.EQ: _same,
    Operator.NE: lambda a, b: not _same(a, b),
    Operator.GT: _ordered(lambda a, b: a > b),
    Operator.GE: _ordered(lambda a, b: a >= b),
    Operator.LT: _ordered(lambda a, b: a < b),
    Operator.LE: _ordered(lambda a, b: a <= b),
    Operator.IN: lambda a, b: _contains(b, a),
    Operator.NOT_IN: lambda a, b: not _contains(b, a),
    Operator.BETWEEN: _ordered(lambda a, b: b.start <= a <= b.end),
    Operator.ARRAY_CONTAINS: _array_contains,
    Operator.ARRAY_CONTAINS_ANY: _array_contains_any,
}


def evaluate(where: Where, entity: Entity) -> bool:
    """Evaluate a filter tree against one entity."""
    if isinstance(where, WhereComposite):
        if where.connective is Connective.OR:
            return evaluate(where.left, entity) or evaluate(where.right, entity)
        return evaluate(where.left, entity) and evaluate(where.right, entity)

    if isinstance(where, WhereLeaf):
        check = _OPERATORS.get(where.operator)
        if check is None:
            raise QueryError(f"Unsupported operator '{where.operator}'", fieldname=where.fieldname)
        return check(_resolve(entity, where.fieldname, FILTER_META_FIELDS), where.value)

    raise QueryError(f"Not a filter tree node: {where!r}")


def apply_where(where: Optional[Where]) -> Callable[[Entity], bool]:
    """Predicate for ``filter()``; no tree matches everything."""
    if where is None:
        return lambda entity: True
    return lambda entity: evaluate(where, entity)


def _compare(a: Any, b: Any) -> int:
    try:
        if a > b:
            return 1
        if a < b:
            return -1
    except TypeError:
        pass
    return 0


def apply_sorts(sorts: Sequence[Sort]) -> Callable[[Entity, Entity], int]:
    """Comparator for ``functools.cmp_to_key``; the first non-equal key decides."""

    def comparator(a: Entity, b: Entity) -> int:
        for sort in sorts:
            result = _compare(
                _resolve(a, sort.property, SORT_META_FIELDS),
                _resolve(b, sort.property, SORT_META_FIELDS),
            )
            if result:
                return result if sort.direction is Direction.ASC else -result
        return 0

    return comparator


def cursor_index(cursor_ref: Optional[str]) -> int:
    """Page index encoded by a cursor ("" or None is page 0)."""
    if not cursor_ref:
        return 0
    if not (cursor_ref.isascii() and cursor_ref.isdigit()):
        raise InvalidCursorError(cursor_ref)
    return int(cursor_ref)


def page_window(query: Query) -> Tuple[int, Optional[int]]:
    """Offset and fetch size (page size + 1) for a query; size None means all."""
    if query.batch_size is None:
        return 0, None
    return cursor_index(query.cursor_ref) * query.batch_size, query.batch_size + 1


def trim_page(items: List[Any], query: Query) -> Tuple[List[Any], Optional[str]]:
    """Drop the look-ahead item of a ``page_window`` fetch and derive the next cursor."""
    if query.batch_size is None or len(items) != query.batch_size + 1:
        return items, None
    return items[:-1], str(cursor_index(query.cursor_ref) + 1)


def paginate(entities: List[Entity], query: Query) -> Tuple[List[Entity], Optional[str]]:
    """Slice one page out of a materialized result list."""
    offset, size = page_window(query)
    if size is None:
        return entities, None
    return trim_page(entities[offset:offset + size], query)


def run_query(
    entities: Sequence[Entity],
    query: Optional[Query] = None,
) -> Tuple[List[Entity], Optional[str]]:
    """Filter, sort and paginate ``entities``.

    Returns:
        (page of entities, next cursor or None)
    """
    query = query or Query()
    predicate = apply_where(query.filter_by)
    matched = [entity for entity in entities if predicate(entity)]
    if query.order_by:
        # sorted() is stable: full ties keep their original relative order
        matched = sorted(matched, key=functools.cmp_to_key(apply_sorts(query.order_by)))
    return paginate(matched, query)
