"""
Integration tests for the federated repository.

Wires real backends (in-memory and SQLite) behind one FederatedRepository
sharing an IdentityRegistry, and checks routing, aggregate queries, batch
partitioning, failure reporting and saga rollback across backends.
"""

import asyncio
import tempfile
from unittest.mock import AsyncMock

import pytest

from fedstore.entity import Entity, IdRecord, create_draft
from fedstore.errors import DuplicateTagError, UnregisteredTagError
from fedstore.federation import FederatedRepository
from fedstore.query import QueryBuilder
from fedstore.repository import (
    BatchId,
    BatchItem,
    BatchResult,
    BatchStatus,
    IdentityRegistry,
    InMemoryRepository,
    Repository,
    SqliteRepository,
)
from fedstore.saga import SagaRepositoryProxy, UnitOfWorkSaga


def in_memory(tag):
    return lambda lifecycle: InMemoryRepository(tag=tag, lifecycle=lifecycle)


class RecordingRepository(InMemoryRepository):
    """In-memory backend remembering every sub-batch it receives."""

    def __init__(self, tag, lifecycle):
        super().__init__(tag=tag, lifecycle=lifecycle)
        self.batches = []

    async def batch(self, items):
        self.batches.append(list(items))
        return await super().batch(items)


class GatedRepository(InMemoryRepository):
    """In-memory backend whose query and batch wait until released."""

    def __init__(self, tag, lifecycle, events, fail_batch=False):
        super().__init__(tag=tag, lifecycle=lifecycle)
        self.events = events
        self.fail_batch = fail_batch
        self.release = asyncio.Event()

    async def _gated(self, call):
        self.events.append(("start", self.tag))
        await self.release.wait()
        result = await call
        self.events.append(("end", self.tag))
        return result

    async def query(self, query=None):
        return await self._gated(super().query(query))

    async def batch(self, items):
        if self.fail_batch:
            return await self._gated(asyncio.sleep(0, result=BatchResult.failed()))
        return await self._gated(super().batch(items))


class TestFederatedRepository:
    """Tests for FederatedRepository over in-memory backends."""

    @pytest.fixture
    def registry(self):
        return IdentityRegistry()

    @pytest.fixture
    def store(self, registry):
        return FederatedRepository(
            tag="app",
            resolver=registry,
            repositories=[in_memory("order"), in_memory("user")],
        )

    def test_pool(self, store):
        assert isinstance(store, Repository)
        assert list(store.pool) == ["order", "user"]
        assert store.meta.kind == "federated.repository"
        with pytest.raises(TypeError):
            store.pool["other"] = None

    def test_duplicate_tags_rejected(self, registry):
        with pytest.raises(DuplicateTagError) as exc_info:
            FederatedRepository("app", registry, [in_memory("user"), in_memory("user")])
        assert exc_info.value.tag == "user"

    def test_initializers_receive_resolver(self, registry):
        seen = []

        def initializer(lifecycle):
            seen.append(lifecycle)
            return InMemoryRepository(tag="user", lifecycle=lifecycle)

        FederatedRepository("app", registry, [initializer])
        assert seen == [registry]

    @pytest.mark.asyncio
    async def test_set_then_get(self, store):
        ana = await store.set(create_draft("user", {"name": "Ana"}))

        assert ana.meta.id
        assert await store.get(ana.meta.id) == ana

    @pytest.mark.asyncio
    async def test_set_routes_by_tag_only(self, store):
        ana = await store.set(create_draft("user", {"name": "Ana"}))

        users = await store.query(tag="user")
        orders = await store.query(tag="order")

        assert [e.meta.id for e in users.data] == [ana.meta.id]
        assert orders.data == []
        assert await store.pool["order"].get(ana.meta.id) is None

    @pytest.mark.asyncio
    async def test_set_unregistered_tag_fails_fast(self, store):
        with pytest.raises(UnregisteredTagError) as exc_info:
            await store.set(create_draft("unregistered", {}))

        assert exc_info.value.tag == "unregistered"
        assert '"unregistered"' in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_unknown_ids_are_not_errors(self, store):
        assert await store.get("missing") is None
        await store.remove("missing")

    @pytest.mark.asyncio
    async def test_remove(self, store):
        order = await store.set(create_draft("order", {"value": 100}))
        await store.remove(order.meta.id)
        assert await store.get(order.meta.id) is None

    @pytest.mark.asyncio
    async def test_query_with_tag_is_verbatim(self, store):
        for value in (1, 2, 3):
            await store.set(create_draft("order", {"value": value}))

        page = await store.query(QueryBuilder().limit(2).build(), tag="order")
        direct = await store.pool["order"].query(QueryBuilder().limit(2).build())

        assert page.data == direct.data
        assert page.next_cursor == "1"

    @pytest.mark.asyncio
    async def test_query_unknown_tag(self, store):
        with pytest.raises(UnregisteredTagError):
            await store.query(tag="invoice")

    @pytest.mark.asyncio
    async def test_aggregate_query_unions_backends(self, store):
        ids = set()
        for value in (1, 2):
            ids.add((await store.set(create_draft("order", {"value": value}))).meta.id)
        ids.add((await store.set(create_draft("user", {"name": "Ana"}))).meta.id)

        result = await store.query()

        assert {e.meta.id for e in result.data} == ids
        # Pool order, not completion order
        assert [e.tag for e in result.data] == ["order", "order", "user"]
        assert result.next_cursor is None

    @pytest.mark.asyncio
    async def test_aggregate_query_never_returns_cursor(self, store):
        for value in range(5):
            await store.set(create_draft("order", {"value": value}))

        result = await store.query(QueryBuilder().limit(2).build())
        assert len(result.data) == 2
        assert result.next_cursor is None

    @pytest.mark.asyncio
    async def test_batch_example(self, store):
        existing_user = await store.set(create_draft("user", {"name": "Ana"}))

        result = await store.batch([
            BatchItem.upsert(create_draft("order", {"value": 200})),
            BatchItem.remove(existing_user.meta.id),
        ])

        assert result.status is BatchStatus.SUCCESSFUL
        assert len(result.upserted_ids) == 1
        assert result.upserted_ids[0].tag == "order"
        assert result.removed_ids == [BatchId(id=existing_user.meta.id, tag="user")]
        assert await store.pool["user"].get(existing_user.meta.id) is None
        assert (await store.get(result.upserted_ids[0].id)).props == {"value": 200}

    @pytest.mark.asyncio
    async def test_batch_drops_unresolvable_removals(self, store):
        result = await store.batch([
            BatchItem.remove("ghost"),
            BatchItem.upsert(create_draft("user", {"name": "Ana"})),
        ])

        assert result.successful
        assert result.removed_ids == []
        assert len(result.upserted_ids) == 1

    @pytest.mark.asyncio
    async def test_batch_unregistered_tag_dispatches_nothing(self, store):
        with pytest.raises(UnregisteredTagError):
            await store.batch([
                BatchItem.upsert(create_draft("order", {"value": 1})),
                BatchItem.upsert(create_draft("invoice", {})),
            ])

        assert (await store.query(tag="order")).data == []

    @pytest.mark.asyncio
    async def test_batch_preserves_per_tag_order(self, registry):
        store = FederatedRepository(
            "app",
            registry,
            [
                lambda lifecycle: RecordingRepository("order", lifecycle),
                lambda lifecycle: RecordingRepository("user", lifecycle),
            ],
        )
        first = create_draft("order", {"n": 1})
        user = create_draft("user", {"n": 2})
        second = create_draft("order", {"n": 3})

        await store.batch([BatchItem.upsert(first), BatchItem.upsert(user), BatchItem.upsert(second)])

        order_batches = store.pool["order"].batches
        assert order_batches == [[BatchItem.upsert(first), BatchItem.upsert(second)]]
        assert store.pool["user"].batches == [[BatchItem.upsert(user)]]

    @pytest.mark.asyncio
    async def test_batch_failure_names_every_failing_tag(self, registry):
        def failing_backend(tag):
            def initializer(lifecycle):
                repo = InMemoryRepository(tag=tag, lifecycle=lifecycle)
                repo.batch = AsyncMock(return_value=BatchResult.failed())
                return repo

            return initializer

        def raising_backend(lifecycle):
            repo = InMemoryRepository(tag="audit", lifecycle=lifecycle)
            repo.batch = AsyncMock(side_effect=RuntimeError("disk full"))
            return repo

        store = FederatedRepository(
            "app",
            registry,
            [failing_backend("order"), in_memory("user"), raising_backend],
        )

        result = await store.batch([
            BatchItem.upsert(create_draft("order", {"value": 1})),
            BatchItem.upsert(create_draft("user", {"name": "Ana"})),
            BatchItem.upsert(create_draft("audit", {"event": "x"})),
        ])

        assert result.status is BatchStatus.FAILED
        assert result.failures == ["order", "audit"]
        assert result.upserted_ids == []
        # Succeeding sub-batches are not undone by the router
        assert len((await store.query(tag="user")).data) == 1

    @pytest.mark.asyncio
    async def test_get_delegates_to_resolved_backend(self):
        resolver = IdentityRegistry()
        resolver.get_id_entity = AsyncMock(return_value=IdRecord(id="x1", entity_tag="user"))
        store = FederatedRepository("app", resolver, [in_memory("user")])

        assert await store.get("x1") is None
        resolver.get_id_entity.assert_awaited_once_with("x1")

    @pytest.mark.asyncio
    async def test_resolved_tag_without_backend(self):
        resolver = IdentityRegistry()
        resolver.get_id_entity = AsyncMock(return_value=IdRecord(id="x1", entity_tag="invoice"))
        store = FederatedRepository("app", resolver, [in_memory("user")])

        with pytest.raises(UnregisteredTagError):
            await store.get("x1")


class TestConcurrentFanOut:
    """Fan-out starts every sub-request first and reassembles in pool order."""

    POOL = ["order", "user", "audit"]

    @pytest.fixture
    def events(self):
        return []

    def make_store(self, events, failing=()):
        return FederatedRepository(
            "app",
            IdentityRegistry(),
            [
                lambda lifecycle, tag=tag: GatedRepository(
                    tag, lifecycle, events, fail_batch=tag in failing
                )
                for tag in self.POOL
            ],
        )

    async def release_in_reverse(self, store, events, operation):
        task = asyncio.create_task(operation)
        for _ in range(100):
            if len(events) == len(self.POOL):
                break
            await asyncio.sleep(0)

        assert events == [("start", tag) for tag in self.POOL]

        for tag in reversed(self.POOL):
            store.pool[tag].release.set()
            await asyncio.sleep(0)
            await asyncio.sleep(0)
        return await task

    @pytest.mark.asyncio
    async def test_query_overlaps_and_keeps_pool_order(self, events):
        store = self.make_store(events)
        for tag in self.POOL:
            await store.set(create_draft(tag, {"n": 1}))

        result = await self.release_in_reverse(store, events, store.query())

        ends = [tag for kind, tag in events if kind == "end"]
        assert ends == ["audit", "user", "order"]
        assert [e.tag for e in result.data] == self.POOL
        assert result.next_cursor is None

    @pytest.mark.asyncio
    async def test_batch_overlaps_and_keeps_pool_order(self, events):
        store = self.make_store(events)
        items = [BatchItem.upsert(create_draft(tag, {"n": 1})) for tag in reversed(self.POOL)]

        result = await self.release_in_reverse(store, events, store.batch(items))

        ends = [tag for kind, tag in events if kind == "end"]
        assert ends == ["audit", "user", "order"]
        assert result.successful
        assert [b.tag for b in result.upserted_ids] == self.POOL

    @pytest.mark.asyncio
    async def test_batch_failures_in_pool_order(self, events):
        store = self.make_store(events, failing=("order", "audit"))
        items = [BatchItem.upsert(create_draft(tag, {"n": 1})) for tag in reversed(self.POOL)]

        result = await self.release_in_reverse(store, events, store.batch(items))

        assert result.status is BatchStatus.FAILED
        assert result.failures == ["order", "audit"]


class TestFederationLifecycle:
    """Tests for connect/close over the backend pool."""

    @pytest.mark.asyncio
    async def test_close_reaches_every_backend(self):
        def closable(tag, close):
            def initializer(lifecycle):
                repo = InMemoryRepository(tag=tag, lifecycle=lifecycle)
                repo.connect = AsyncMock()
                repo.close = close
                return repo

            return initializer

        broken = AsyncMock(side_effect=RuntimeError("close failed"))
        healthy = AsyncMock()
        store = FederatedRepository(
            "app",
            IdentityRegistry(),
            [closable("order", broken), in_memory("user"), closable("audit", healthy)],
        )

        with pytest.raises(RuntimeError):
            async with store:
                store.pool["order"].connect.assert_awaited_once()
                store.pool["audit"].connect.assert_awaited_once()

        broken.assert_awaited_once()
        healthy.assert_awaited_once()


class TestMixedBackendFederation:
    """Federation over SQLite orders and in-memory users."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def store(self, data_dir):
        return FederatedRepository(
            tag="app",
            resolver=IdentityRegistry(),
            repositories=[
                lambda lifecycle: SqliteRepository(
                    data_dir, tag="order", lifecycle=lifecycle, wal_mode=False
                ),
                in_memory("user"),
            ],
        )

    @pytest.mark.asyncio
    async def test_routing_and_query(self, store):
        ana = await store.set(create_draft("user", {"name": "Ana"}))
        for value in (100, 250, 50):
            await store.set(create_draft("order", {"value": value, "buyer": ana.meta.id}))

        big = await store.query(QueryBuilder().filter_by("value", ">", 75).build(), tag="order")
        assert sorted(e.props["value"] for e in big.data) == [100, 250]

        everything = await store.query()
        assert [e.tag for e in everything.data] == ["order", "order", "order", "user"]

    @pytest.mark.asyncio
    async def test_batch_across_backends(self, store):
        ana = await store.set(create_draft("user", {"name": "Ana"}))
        order = await store.set(create_draft("order", {"value": 1}))

        result = await store.batch([
            BatchItem.remove(order.meta.id),
            BatchItem.upsert(create_draft("order", {"value": 2})),
            BatchItem.remove(ana.meta.id),
        ])

        assert result.successful
        assert {b.tag for b in result.removed_ids} == {"order", "user"}
        assert await store.get(order.meta.id) is None
        assert await store.get(ana.meta.id) is None

    @pytest.mark.asyncio
    async def test_saga_over_federation(self, store):
        ana = await store.set(create_draft("user", {"name": "Ana"}))
        order = await store.set(create_draft("order", {"value": 1}))

        saga = UnitOfWorkSaga()
        proxy = SagaRepositoryProxy(store, saga)

        created = await proxy.set(create_draft("order", {"value": 2}))
        await proxy.set(Entity(props={"value": 99}, meta=order.meta))
        await proxy.remove(ana.meta.id)
        assert saga.pending == 3

        await saga.rollback()

        assert await store.get(created.meta.id) is None
        assert (await store.get(order.meta.id)).props == {"value": 1}
        restored = await store.get(ana.meta.id)
        assert restored.props == {"name": "Ana"}
        assert restored.meta.created_at == ana.meta.created_at

        orders = await proxy.query(tag="order")
        assert [e.meta.id for e in orders.data] == [order.meta.id]
