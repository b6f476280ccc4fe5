"""
Repository contract and shared result types.

Every storage backend (in-memory, SQLite, S3), the federated router and the
saga proxy implement the same Repository protocol:

    get(id)            -> Entity | None
    set(draft)         -> Entity
    remove(id)         -> None
    query(query)       -> QueryResult
    batch(items)       -> BatchResult

Backends never assign identity themselves; they hand drafts to a
LifecycleManager. The federated router additionally consumes an
IdentityResolver, a lifecycle manager that can tell which tag owns an id.

Invariants:
    - get/remove on an unknown id is not an error (None / no-op)
    - Items of a batch are applied in their original order
    - A backend reports storage failures in ``batch`` as a failed BatchResult

How to change safely:
    - Protocol changes require updating every implementation
    - Add new methods as optional with default implementations
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import (
    Any,
    Callable,
    List,
    Optional,
    Protocol,
    Sequence,
    Union,
    runtime_checkable,
)

from ..entity import Entity, EntityMeta, IdRecord, utc_now
from ..query.query import Query

REPOSITORY_RESOURCE = "repository"


@dataclass(frozen=True)
class RepositoryMeta:
    """Describes a repository implementation.

    Attributes:
        kind: Implementation identifier (e.g. ``in.memory.repo``)
        resource: Resource family, always ``repository``
    """

    kind: str
    resource: str = REPOSITORY_RESOURCE


@dataclass
class QueryResult:
    """One page of query results.

    ``next_cursor`` is None when there is no further page.
    """

    data: List[Entity]
    next_cursor: Optional[str] = None


class BatchOperation(str, Enum):
    UPSERT = "upsert"
    REMOVE = "remove"


class BatchStatus(str, Enum):
    SUCCESSFUL = "successful"
    FAILED = "failed"


@dataclass(frozen=True)
class BatchItem:
    """One batch operation: an upsert of a draft or a removal by id."""

    type: BatchOperation
    data: Union[Entity, str]

    @classmethod
    def upsert(cls, entity: Entity) -> BatchItem:
        return cls(type=BatchOperation.UPSERT, data=entity)

    @classmethod
    def remove(cls, entity_id: str) -> BatchItem:
        return cls(type=BatchOperation.REMOVE, data=entity_id)


Batch = Sequence[BatchItem]


@dataclass(frozen=True)
class BatchId:
    """An id touched by a batch; ``tag`` is set on federated results."""

    id: str
    tag: Optional[str] = None


@dataclass
class BatchResult:
    """Outcome of a batch.

    Attributes:
        status: successful or failed
        time: Completion time
        upserted_ids: Ids written, in batch order
        removed_ids: Ids removed, in batch order
        failures: Tags whose sub-batch failed (federated results only)
    """

    status: BatchStatus
    time: datetime = field(default_factory=utc_now)
    upserted_ids: List[BatchId] = field(default_factory=list)
    removed_ids: List[BatchId] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)

    @property
    def successful(self) -> bool:
        return self.status is BatchStatus.SUCCESSFUL

    @classmethod
    def failed(cls, failures: Optional[List[str]] = None) -> BatchResult:
        return cls(status=BatchStatus.FAILED, failures=failures or [])


@runtime_checkable
class LifecycleManager(Protocol):
    """Assigns identity and lifecycle metadata to drafts."""

    @abstractmethod
    def create_meta(
        self,
        tag: str,
        version: str,
        id: Optional[str] = None,
        created_at: Optional[datetime] = None,
        idempotency_key: str = "",
    ) -> EntityMeta:
        """Build metadata, filling id and timestamps per the manager's policy."""
        ...

    @abstractmethod
    async def declare_entity(
        self,
        entity: Entity,
        idempotency_key: Optional[str] = None,
    ) -> Entity:
        """Return the fully identified version of ``entity``.

        A draft receives a new id and ``created_at``; an identified entity
        keeps both. ``updated_at`` is refreshed either way.
        """
        ...

    @abstractmethod
    def validate_entity(self, entity: Any) -> bool:
        """Structural check: is ``entity`` an identified Entity?"""
        ...


@runtime_checkable
class IdentityResolver(LifecycleManager, Protocol):
    """Lifecycle manager that also knows which tag owns each persisted id."""

    @abstractmethod
    async def get_id_entity(self, entity_id: str) -> Optional[IdRecord]:
        """Look up the owning tag of ``entity_id``; None if unknown."""
        ...


@runtime_checkable
class Repository(Protocol):
    """Uniform persistence contract implemented by every backend.

    Attributes:
        tag: Entity tag this repository serves
        meta: Implementation metadata
    """

    tag: str
    meta: RepositoryMeta

    @abstractmethod
    async def get(self, entity_id: str) -> Optional[Entity]:
        ...

    @abstractmethod
    async def set(self, entity: Entity) -> Entity:
        """Declare identity for ``entity`` and persist it (insert or replace)."""
        ...

    @abstractmethod
    async def remove(self, entity_id: str) -> None:
        ...

    @abstractmethod
    async def query(self, query: Optional[Query] = None) -> QueryResult:
        ...

    @abstractmethod
    async def batch(self, items: Batch) -> BatchResult:
        ...


RepositoryInitializer = Callable[[LifecycleManager], Repository]
"""Builds a backend repository bound to the given lifecycle manager."""
