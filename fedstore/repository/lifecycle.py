"""
Lifecycle managers: identity assignment for drafts.

- InMemoryLifecycleManager assigns ids and timestamps with no bookkeeping.
- IdentityRegistry does the same and records ``id -> tag`` for every entity
  it declares, so a federated router can route reads and removals by id.

The idempotency key is passed explicitly to ``declare_entity`` (or carried
on the draft); there is no process-wide key.

Invariants:
    - A draft without an id gets a fresh id from ``id_factory``
    - An entity that already has an id keeps it, and keeps ``created_at``
    - ``updated_at`` is set to ``clock()`` on every declaration
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Optional

from ..entity import (
    ID_TAG,
    Entity,
    EntityMeta,
    IdRecord,
    id_record_from_entity,
    id_record_to_entity,
    rebuild,
    utc_now,
)
from ..errors import EntityValidationError
from .base import Repository

logger = logging.getLogger(__name__)


def _uuid() -> str:
    return str(uuid.uuid4())


class InMemoryLifecycleManager:
    """Assigns uuid ids and UTC timestamps.

    Example:
        >>> manager = InMemoryLifecycleManager()
        >>> user = await manager.declare_entity(create_draft("user", {"name": "Ana"}))
        >>> user.meta.id is not None
        True
    """

    def __init__(
        self,
        id_factory: Callable[[], str] = _uuid,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._id_factory = id_factory
        self._clock = clock

    def create_meta(
        self,
        tag: str,
        version: str,
        id: Optional[str] = None,
        created_at: Optional[datetime] = None,
        idempotency_key: str = "",
    ) -> EntityMeta:
        now = self._clock()
        return EntityMeta(
            tag=tag,
            version=version,
            id=id or self._id_factory(),
            created_at=created_at or now,
            updated_at=now,
            idempotency_key=idempotency_key,
        )

    def validate_entity(self, entity: Any) -> bool:
        return isinstance(entity, Entity) and not entity.is_draft

    async def declare_entity(
        self,
        entity: Entity,
        idempotency_key: Optional[str] = None,
    ) -> Entity:
        if not isinstance(entity, Entity):
            raise EntityValidationError(f"Expected an Entity, got {type(entity).__name__}")

        meta = self.create_meta(
            tag=entity.meta.tag,
            version=entity.meta.version,
            id=entity.meta.id,
            created_at=entity.meta.created_at,
            idempotency_key=(
                idempotency_key if idempotency_key is not None else entity.meta.idempotency_key
            ),
        )
        return rebuild(meta.tag, meta.version, entity.props, meta)


class IdentityRegistry(InMemoryLifecycleManager):
    """Identity resolver backed by a repository of id records.

    Each declared entity gets an ``IdRecord(id, entity_tag)`` stored as an
    entity tagged ``id`` in ``store``. Any Repository works as the store; the
    default is a fresh InMemoryRepository.

    Example:
        >>> registry = IdentityRegistry()
        >>> order = await registry.declare_entity(create_draft("order", {"value": 100}))
        >>> (await registry.get_id_entity(order.meta.id)).entity_tag
        'order'
    """

    def __init__(
        self,
        store: Optional[Repository] = None,
        id_factory: Callable[[], str] = _uuid,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(id_factory=id_factory, clock=clock)
        if store is None:
            from .memory import InMemoryRepository

            store = InMemoryRepository(tag=ID_TAG, lifecycle=InMemoryLifecycleManager(clock=clock))
        self._store = store

    async def declare_entity(
        self,
        entity: Entity,
        idempotency_key: Optional[str] = None,
    ) -> Entity:
        declared = await super().declare_entity(entity, idempotency_key)
        if entity.is_draft:
            record = IdRecord(
                id=declared.meta.id,
                entity_tag=declared.tag,
                created_at=declared.meta.created_at,
            )
            await self._store.set(id_record_to_entity(record))
            logger.debug(
                "Registered entity id",
                extra={"id": record.id, "entity_tag": record.entity_tag},
            )
        return declared

    async def get_id_entity(self, entity_id: str) -> Optional[IdRecord]:
        stored = await self._store.get(entity_id)
        if stored is None:
            return None
        return id_record_from_entity(stored)
