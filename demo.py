#!/usr/bin/env python3
"""
fedstore Demo - Shows federated insertions, queries, batches and rollback.

Orders live in SQLite, users in memory; a single FederatedRepository routes
between them by entity tag.
"""

import asyncio
import tempfile

from fedstore import (
    BatchItem,
    FederatedRepository,
    IdentityRegistry,
    InMemoryRepository,
    QueryBuilder,
    SagaRepositoryProxy,
    Sort,
    SqliteRepository,
    UnitOfWorkSaga,
    UnregisteredTagError,
    create_draft,
)
from fedstore.query import Direction


async def main():
    print("=" * 60)
    print("fedstore Demo - Federated Repository")
    print("=" * 60)
    print()

    with tempfile.TemporaryDirectory() as data_dir:
        print(f"[Setup] Using data directory: {data_dir}")

        store = FederatedRepository(
            tag="demo",
            resolver=IdentityRegistry(),
            repositories=[
                lambda lifecycle: SqliteRepository(data_dir, tag="order", lifecycle=lifecycle),
                lambda lifecycle: InMemoryRepository(tag="user", lifecycle=lifecycle),
            ],
        )
        print(f"[Setup] Backends: {dict((t, r.meta.kind) for t, r in store.pool.items())}")

        # 1. Insert
        print("\n[Step 1] Creating a user and two orders...")
        ana = await store.set(create_draft("user", {"name": "Ana"}))
        print(f"  user  {ana.meta.id}  {ana.props}")
        for value in (100, 250):
            order = await store.set(create_draft("order", {"value": value, "buyer": ana.meta.id}))
            print(f"  order {order.meta.id}  {order.props}")

        # 2. Retrieve by id
        print("\n[Step 2] Retrieving the user by id...")
        fetched = await store.get(ana.meta.id)
        print(f"  same entity: {fetched == ana}")

        # 3. Query one backend
        print("\n[Step 3] Orders worth at least 200, highest first...")
        query = (
            QueryBuilder()
            .filter_by("value", ">=", 200)
            .order_by([Sort("value", Direction.DESC)])
            .build()
        )
        result = await store.query(query, tag="order")
        for order in result.data:
            print(f"  {order.props}")

        # 4. Batch across backends
        print("\n[Step 4] Batch: one new order, remove the user...")
        outcome = await store.batch([
            BatchItem.upsert(create_draft("order", {"value": 200})),
            BatchItem.remove(ana.meta.id),
        ])
        print(f"  status:   {outcome.status.value}")
        print(f"  upserted: {[(b.id, b.tag) for b in outcome.upserted_ids]}")
        print(f"  removed:  {[(b.id, b.tag) for b in outcome.removed_ids]}")
        print(f"  user still present: {await store.get(ana.meta.id) is not None}")

        # 5. Aggregate query
        print("\n[Step 5] Everything across all backends...")
        everything = await store.query()
        print(f"  {len(everything.data)} entities, next cursor: {everything.next_cursor}")

        # 6. Saga rollback
        print("\n[Step 6] Saga: create a user, then roll back...")
        saga = UnitOfWorkSaga()
        proxied = SagaRepositoryProxy(store, saga)
        bob = await proxied.set(create_draft("user", {"name": "Bob"}))
        print(f"  before rollback: {await store.get(bob.meta.id) is not None}")
        await saga.rollback()
        print(f"  after rollback:  {await store.get(bob.meta.id) is not None}")

        # 7. Unregistered tag
        print("\n[Step 7] Writing an entity nobody serves...")
        try:
            await store.set(create_draft("unregistered", {}))
        except UnregisteredTagError as e:
            print(f"  refused: {e}")

    print()
    print("=" * 60)
    print("Demo complete!")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
