"""
Query value object and its fluent builder.

Example:
    >>> q = (
    ...     QueryBuilder()
    ...     .filter_by("status", "==", "open")
    ...     .order_by([Sort("created_at", Direction.DESC)])
    ...     .limit(20)
    ...     .build()
    ... )
    >>> page = await repo.query(q)

Invariants:
    - Query is frozen; every builder call returns a new builder around a new Query
    - Defaults: no filter (match all), no sort, cursor "" (first page), no page size
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Iterable, Optional, Tuple, Union, overload

from ..errors import QueryError
from .filters import Operator, Where, is_where, where

DEFAULT_CURSOR = ""


class Direction(str, Enum):
    ASC = "asc"
    DESC = "desc"


@dataclass(frozen=True)
class Sort:
    """One sort key: a property (or id/created_at/updated_at) and a direction."""

    property: str
    direction: Direction = Direction.ASC

    def __post_init__(self) -> None:
        try:
            direction = Direction(self.direction)
        except ValueError:
            raise QueryError(
                f"Unknown sort direction '{self.direction}' for '{self.property}'",
                fieldname=self.property,
            )
        object.__setattr__(self, "direction", direction)


@dataclass(frozen=True)
class Query:
    """Immutable query.

    Attributes:
        filter_by: Filter tree, or None to match everything
        order_by: Sort keys applied in order; ties cascade to the next key
        cursor_ref: Page index as a decimal string; "" means the first page
        batch_size: Page size, or None for unbounded (no pagination)
    """

    filter_by: Optional[Where] = None
    order_by: Tuple[Sort, ...] = ()
    cursor_ref: str = DEFAULT_CURSOR
    batch_size: Optional[int] = None

    def __post_init__(self) -> None:
        size = self.batch_size
        if size is not None and (isinstance(size, bool) or not isinstance(size, int) or size < 1):
            raise QueryError(f"Page size must be a positive integer, got {size!r}")


class QueryBuilder:
    """Fluent builder producing immutable Query snapshots."""

    def __init__(self, query: Optional[Query] = None) -> None:
        self._query = query or Query()

    @overload
    def filter_by(self, where_tree: Where) -> QueryBuilder: ...

    @overload
    def filter_by(
        self, fieldname: str, operator: Union[Operator, str], value: Any
    ) -> QueryBuilder: ...

    def filter_by(self, *args: Any) -> QueryBuilder:
        """Replace the filter with a tree, or with a single leaf built from a triple."""
        if len(args) == 1 and is_where(args[0]):
            tree = args[0]
        elif len(args) == 3:
            tree = where(*args)
        else:
            raise QueryError("filter_by expects a filter tree or (fieldname, operator, value)")
        return QueryBuilder(replace(self._query, filter_by=tree))

    def order_by(self, sorts: Iterable[Sort]) -> QueryBuilder:
        """Replace the sort list wholesale."""
        return QueryBuilder(replace(self._query, order_by=tuple(sorts)))

    def cursor(self, cursor_ref: str) -> QueryBuilder:
        return QueryBuilder(replace(self._query, cursor_ref=cursor_ref))

    def limit(self, batch_size: Optional[int]) -> QueryBuilder:
        """Set the page size; None removes pagination."""
        return QueryBuilder(replace(self._query, batch_size=batch_size))

    def build(self) -> Query:
        return self._query
