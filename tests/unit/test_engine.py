"""
Unit tests for the in-memory query engine.

Tests cover:
- Operator evaluation, including absent fields
- Self-AND / self-OR idempotence
- Multi-key stable sorting
- Page-index pagination and cursor round-trips
"""

from datetime import datetime, timedelta, timezone

import pytest

from fedstore.entity import Entity, EntityMeta
from fedstore.errors import InvalidCursorError, QueryError
from fedstore.query import (
    Direction,
    Query,
    QueryBuilder,
    Range,
    Sort,
    and_,
    evaluate,
    or_,
    run_query,
    where,
)

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_entity(index, **props):
    created = T0 + timedelta(minutes=index)
    return Entity(
        props=props,
        meta=EntityMeta(
            tag="order",
            id=f"e{index}",
            created_at=created,
            updated_at=created,
        ),
    )


@pytest.fixture
def entities():
    return [
        make_entity(0, value=100, status="open", tags=["a", "b"]),
        make_entity(1, value=250, status="closed", tags=["c"]),
        make_entity(2, value=50, status="open"),
        make_entity(3, value=250, status="open", tags=[]),
        make_entity(4, status="draft", tags="a"),
    ]


def ids(items):
    return [e.meta.id for e in items]


class TestEvaluate:
    """Tests for leaf and composite evaluation."""

    @pytest.mark.parametrize(
        "tree,expected",
        [
            (where("value", "==", 250), ["e1", "e3"]),
            (where("value", "!=", 250), ["e0", "e2", "e4"]),
            (where("value", ">", 100), ["e1", "e3"]),
            (where("value", ">=", 100), ["e0", "e1", "e3"]),
            (where("value", "<", 100), ["e2"]),
            (where("value", "<=", 100), ["e0", "e2"]),
            (where("status", "in", ["open", "draft"]), ["e0", "e2", "e3", "e4"]),
            (where("status", "not-in", ["open"]), ["e1", "e4"]),
            (where("value", "between", Range(50, 100)), ["e0", "e2"]),
            (where("tags", "array-contains", "a"), ["e0"]),
            (where("tags", "array-contains-any", ["b", "c"]), ["e0", "e1"]),
            (where("id", "==", "e2"), ["e2"]),
            (where("created_at", ">=", T0 + timedelta(minutes=3)), ["e3", "e4"]),
        ],
    )
    def test_operators(self, entities, tree, expected):
        assert ids(e for e in entities if evaluate(tree, e)) == expected

    def test_absent_field_fails_ordering_without_raising(self, entities):
        draft = entities[4]
        assert evaluate(where("value", ">", 0), draft) is False
        assert evaluate(where("value", "between", Range(0, 10)), draft) is False
        assert evaluate(where("missing", "==", None), draft) is True

    def test_array_operators_need_array_field(self, entities):
        # "tags" is the string "a" on e4, not an array
        assert evaluate(where("tags", "array-contains", "a"), entities[4]) is False

    def test_booleans_never_equal_numbers(self):
        flagged = make_entity(5, flag=True, count=1, marks=[False])
        assert evaluate(where("flag", "==", True), flagged) is True
        assert evaluate(where("flag", "==", 1), flagged) is False
        assert evaluate(where("count", "==", True), flagged) is False
        assert evaluate(where("count", "==", 1.0), flagged) is True
        assert evaluate(where("flag", "!=", 1), flagged) is True
        assert evaluate(where("flag", "in", [1, 0]), flagged) is False
        assert evaluate(where("count", "not-in", [True]), flagged) is True
        assert evaluate(where("marks", "array-contains", 0), flagged) is False
        assert evaluate(where("marks", "array-contains-any", [0, False]), flagged) is True

    def test_composites(self, entities):
        tree = or_(
            and_(where("status", "==", "open"), where("value", ">", 60)),
            where("status", "==", "draft"),
        )
        assert ids(e for e in entities if evaluate(tree, e)) == ["e0", "e3", "e4"]

    @pytest.mark.parametrize(
        "tree",
        [
            where("value", ">=", 100),
            where("status", "in", ["open"]),
            where("tags", "array-contains", "a"),
            or_(where("value", "<", 60), where("status", "==", "closed")),
        ],
    )
    def test_self_and_or_idempotent(self, entities, tree):
        for entity in entities:
            assert evaluate(and_(tree, tree), entity) == evaluate(tree, entity)
            assert evaluate(or_(tree, tree), entity) == evaluate(tree, entity)


class TestSorting:
    """Tests for multi-key sorting."""

    def test_single_key_desc(self, entities):
        query = QueryBuilder().filter_by("value", ">", 0).order_by([Sort("value", Direction.DESC)]).build()
        data, _ = run_query(entities, query)
        # e1 and e3 tie on value; input order is kept
        assert ids(data) == ["e1", "e3", "e0", "e2"]

    def test_ties_cascade_to_next_key(self, entities):
        query = QueryBuilder().order_by([
            Sort("value", Direction.DESC),
            Sort("created_at", Direction.DESC),
        ]).filter_by("value", ">", 0).build()
        data, _ = run_query(entities, query)
        assert ids(data) == ["e3", "e1", "e0", "e2"]

    def test_stable_when_no_key_distinguishes(self, entities):
        shuffled = [entities[3], entities[0], entities[4], entities[1], entities[2]]
        query = QueryBuilder().order_by([Sort("constant")]).build()
        data, _ = run_query(shuffled, query)
        assert data == shuffled

    def test_unorderable_values_compare_equal(self, entities):
        # e4 has no value; it neither raises nor moves ahead of equal keys
        query = QueryBuilder().order_by([Sort("value")]).build()
        data, _ = run_query(entities, query)
        assert len(data) == 5


class TestPagination:
    """Tests for cursor pagination."""

    def test_first_page_emits_cursor(self, entities):
        data, cursor = run_query(entities, QueryBuilder().limit(2).build())
        assert ids(data) == ["e0", "e1"]
        assert cursor == "1"

    def test_last_page_has_no_cursor(self, entities):
        data, cursor = run_query(entities, QueryBuilder().limit(2).cursor("2").build())
        assert ids(data) == ["e4"]
        assert cursor is None

    def test_exact_fit_has_no_cursor(self, entities):
        data, cursor = run_query(entities, QueryBuilder().limit(5).build())
        assert len(data) == 5
        assert cursor is None

    def test_unbounded_returns_everything(self, entities):
        data, cursor = run_query(entities)
        assert ids(data) == ["e0", "e1", "e2", "e3", "e4"]
        assert cursor is None

    @pytest.mark.parametrize("size", [1, 2, 3, 4, 5, 7])
    def test_round_trip_reproduces_full_result(self, entities, size):
        base = QueryBuilder().order_by([Sort("status"), Sort("id", Direction.DESC)])
        full, _ = run_query(entities, base.build())

        collected = []
        cursor = ""
        while True:
            page, cursor = run_query(entities, base.limit(size).cursor(cursor).build())
            collected.extend(page)
            if cursor is None:
                break

        assert collected == full

    def test_zero_page_size_rejected(self, entities):
        with pytest.raises(QueryError):
            run_query(entities, Query(cursor_ref="", batch_size=0))

    @pytest.mark.parametrize("cursor", ["abc", "-1", "1.5", "٣"])
    def test_invalid_cursor(self, entities, cursor):
        with pytest.raises(InvalidCursorError):
            run_query(entities, QueryBuilder().limit(2).cursor(cursor).build())
