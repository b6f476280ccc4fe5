"""
Filter algebra for repository queries.

A filter is a binary predicate tree:
- WhereLeaf holds ``{fieldname, operator, value}``
- WhereComposite holds ``{connective, left, right}`` with connective ``and``/``or``

Field names are opaque strings; no field existence check happens here. The
only runtime check is on the *shape* of the value each operator expects:

    ==, !=, >, >=, <, <=       scalar
    in, not-in                 list of scalars
    between                    Range(start, end), inclusive on both ends
    array-contains             scalar (field is an array)
    array-contains-any         list of scalars (field is an array)

Invariants:
    - Nodes are frozen; trees are persistent and can be shared freely
    - Building a tree never evaluates it
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Union

from ..errors import QueryError


class Operator(str, Enum):
    """Supported leaf operators."""

    EQ = "=="
    NE = "!="
    GT = ">"
    GE = ">="
    LT = "<"
    LE = "<="
    IN = "in"
    NOT_IN = "not-in"
    BETWEEN = "between"
    ARRAY_CONTAINS = "array-contains"
    ARRAY_CONTAINS_ANY = "array-contains-any"


class Connective(str, Enum):
    AND = "and"
    OR = "or"


LIST_OPERATORS = frozenset({Operator.IN, Operator.NOT_IN, Operator.ARRAY_CONTAINS_ANY})


@dataclass(frozen=True)
class Range:
    """Inclusive ``[start, end]`` bound for the ``between`` operator."""

    start: Any
    end: Any


@dataclass(frozen=True)
class WhereLeaf:
    fieldname: str
    operator: Operator
    value: Any


@dataclass(frozen=True)
class WhereComposite:
    connective: Connective
    left: Where
    right: Where


Where = Union[WhereLeaf, WhereComposite]


def is_where(value: object) -> bool:
    """True if ``value`` is a filter tree node."""
    return isinstance(value, (WhereLeaf, WhereComposite))


def _coerce_operator(operator: Union[Operator, str]) -> Operator:
    try:
        return Operator(operator)
    except ValueError:
        raise QueryError(f"Unknown operator '{operator}'")


def _coerce_value(fieldname: str, operator: Operator, value: Any) -> Any:
    if operator in LIST_OPERATORS:
        if not isinstance(value, (list, tuple, set, frozenset)):
            raise QueryError(
                f"Operator '{operator.value}' on '{fieldname}' expects a list of values",
                fieldname=fieldname,
            )
        return tuple(value)

    if operator is Operator.BETWEEN:
        if isinstance(value, Range):
            return value
        if isinstance(value, Mapping) and "start" in value and "end" in value:
            return Range(start=value["start"], end=value["end"])
        raise QueryError(
            f"Operator 'between' on '{fieldname}' expects a Range(start, end)",
            fieldname=fieldname,
        )

    return value


def where(fieldname: str, operator: Union[Operator, str], value: Any) -> WhereLeaf:
    """Create a leaf condition.

    Args:
        fieldname: Property or metadata field name
        operator: Operator or its string form (e.g. ``">="``)
        value: Operand; lists are frozen into tuples

    Raises:
        QueryError: Unknown operator or wrong value shape
    """
    op = _coerce_operator(operator)
    return WhereLeaf(fieldname=fieldname, operator=op, value=_coerce_value(fieldname, op, value))


def and_(left: Where, right: Where) -> WhereComposite:
    return WhereComposite(connective=Connective.AND, left=left, right=right)


def or_(left: Where, right: Where) -> WhereComposite:
    return WhereComposite(connective=Connective.OR, left=left, right=right)


class Filter:
    """Namespace mirroring the functional helpers: ``Filter.where(...)``."""

    where = staticmethod(where)
    and_ = staticmethod(and_)
    or_ = staticmethod(or_)
