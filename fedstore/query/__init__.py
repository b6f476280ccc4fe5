"""
Query layer: filter algebra, query builder and evaluation engines.

Example:
    >>> from fedstore.query import QueryBuilder, Filter, Sort, Direction
    >>> q = (
    ...     QueryBuilder()
    ...     .filter_by(Filter.and_(
    ...         Filter.where("status", "==", "open"),
    ...         Filter.where("total", ">=", 100),
    ...     ))
    ...     .order_by([Sort("total", Direction.DESC)])
    ...     .limit(10)
    ...     .build()
    ... )
"""

from .engine import apply_sorts, apply_where, evaluate, paginate, run_query
from .filters import (
    Connective,
    Filter,
    Operator,
    Range,
    Where,
    WhereComposite,
    WhereLeaf,
    and_,
    is_where,
    or_,
    where,
)
from .query import Direction, Query, QueryBuilder, Sort

__all__ = [
    # Filter algebra
    "Operator",
    "Connective",
    "Range",
    "Where",
    "WhereLeaf",
    "WhereComposite",
    "Filter",
    "where",
    "and_",
    "or_",
    "is_where",
    # Query model
    "Query",
    "QueryBuilder",
    "Sort",
    "Direction",
    # Engine
    "evaluate",
    "apply_where",
    "apply_sorts",
    "paginate",
    "run_query",
]
