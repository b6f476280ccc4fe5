"""
In-memory repository implementation.

Stores entities in a dict keyed by id and answers queries with the
in-memory query engine. Useful for:
- Unit tests that need repository behaviour without external dependencies
- Local development
- Small reference datasets (e.g. the id registry)

Invariants:
    - All data is lost on process exit
    - Iteration order is the order of each entity's latest write
    - Writes are serialized with an asyncio lock
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Iterable, List, Optional

from ..entity import Entity
from ..query.engine import run_query
from ..query.query import Query
from .base import (
    Batch,
    BatchId,
    BatchOperation,
    BatchResult,
    BatchStatus,
    LifecycleManager,
    QueryResult,
    RepositoryMeta,
)
from .lifecycle import InMemoryLifecycleManager

logger = logging.getLogger(__name__)

IN_MEMORY_REPOSITORY_KIND = "in.memory.repo"


class InMemoryRepository:
    """Repository holding entities in process memory.

    Attributes:
        tag: Entity tag served by this repository
        meta: Repository metadata

    Example:
        >>> repo = InMemoryRepository(tag="user")
        >>> ana = await repo.set(create_draft("user", {"name": "Ana"}))
        >>> await repo.get(ana.meta.id) == ana
        True
    """

    def __init__(
        self,
        tag: str = "entity",
        lifecycle: Optional[LifecycleManager] = None,
        entities: Iterable[Entity] = (),
    ) -> None:
        """Initialize the repository.

        Args:
            tag: Entity tag served by this repository
            lifecycle: Identity assignment policy (in-memory manager by default)
            entities: Already-identified entities to seed the store with
        """
        self.tag = tag
        self.meta = RepositoryMeta(kind=IN_MEMORY_REPOSITORY_KIND)
        self._lifecycle = lifecycle or InMemoryLifecycleManager()
        self._entities: Dict[str, Entity] = {e.meta.id: e for e in entities if e.meta.id}
        self._lock = asyncio.Lock()

    @staticmethod
    def _put(entities: Dict[str, Entity], entity: Entity) -> None:
        entities.pop(entity.meta.id, None)
        entities[entity.meta.id] = entity

    async def get(self, entity_id: str) -> Optional[Entity]:
        return self._entities.get(entity_id)

    async def set(self, entity: Entity) -> Entity:
        declared = await self._lifecycle.declare_entity(entity)
        async with self._lock:
            self._put(self._entities, declared)
        logger.debug("Entity stored in memory", extra={"tag": self.tag, "id": declared.meta.id})
        return declared

    async def remove(self, entity_id: str) -> None:
        async with self._lock:
            self._entities.pop(entity_id, None)

    async def query(self, query: Optional[Query] = None) -> QueryResult:
        data, next_cursor = run_query(list(self._entities.values()), query)
        return QueryResult(data=data, next_cursor=next_cursor)

    async def batch(self, items: Batch) -> BatchResult:
        """Apply upserts and removals in order; nothing is kept if an item fails."""
        upserted: List[BatchId] = []
        removed: List[BatchId] = []

        async with self._lock:
            working = dict(self._entities)
            for item in items:
                if item.type is BatchOperation.REMOVE:
                    working.pop(item.data, None)
                    removed.append(BatchId(id=item.data))
                else:
                    declared = await self._lifecycle.declare_entity(item.data)
                    self._put(working, declared)
                    upserted.append(BatchId(id=declared.meta.id))
            self._entities = working

        logger.debug(
            "Batch applied in memory",
            extra={"tag": self.tag, "upserted": len(upserted), "removed": len(removed)},
        )
        return BatchResult(
            status=BatchStatus.SUCCESSFUL,
            upserted_ids=upserted,
            removed_ids=removed,
        )

    # Testing helpers

    def snapshot(self) -> List[Entity]:
        """All stored entities in iteration order (testing helper)."""
        return list(self._entities.values())

    def clear(self) -> None:
        """Drop every entity (testing helper)."""
        self._entities.clear()
