"""
fedstore - storage-agnostic persistence with tag-routed federation.

This package provides:
- A uniform repository contract (get, set, remove, query, batch)
- A filter algebra and query builder with an in-memory evaluation engine
- In-memory, SQLite and S3 document-store backends
- A federated repository routing each entity to its backend by tag
- Saga-style compensation for multi-step writes

Example:
    >>> from fedstore import (
    ...     FederatedRepository, IdentityRegistry, InMemoryRepository, create_draft,
    ... )
    >>>
    >>> store = FederatedRepository(
    ...     tag="app",
    ...     resolver=IdentityRegistry(),
    ...     repositories=[
    ...         lambda lifecycle: InMemoryRepository(tag="order", lifecycle=lifecycle),
    ...         lambda lifecycle: InMemoryRepository(tag="user", lifecycle=lifecycle),
    ...     ],
    ... )
    >>> ana = await store.set(create_draft("user", {"name": "Ana"}))
    >>> orders = await store.query(tag="order")

Invariants:
    - Ids are assigned once and never change
    - Every entity tag is served by exactly one backend
    - Not-found is an absent result, never an error
"""

from ._version import __version__
from .config import BackendKind, ObservabilityConfig, S3Config, SqliteConfig, StoreConfig
from .entity import (
    Entity,
    EntityMeta,
    IdRecord,
    create_draft,
    entity_from_dict,
    entity_to_dict,
    rebuild,
)
from .errors import (
    BackendError,
    CompensationError,
    ConfigurationError,
    DuplicateTagError,
    EntityValidationError,
    FedstoreError,
    InvalidCursorError,
    QueryError,
    UnregisteredTagError,
)
from .federation import FederatedRepository
from .logging_setup import setup_logging
from .query import Direction, Filter, Query, QueryBuilder, Range, Sort, and_, or_, where
from .repository import (
    BatchId,
    BatchItem,
    BatchResult,
    BatchStatus,
    IdentityRegistry,
    InMemoryLifecycleManager,
    InMemoryRepository,
    QueryResult,
    Repository,
    S3Repository,
    SqliteRepository,
    create_federated_repository,
    create_repository,
)
from .saga import SagaRepositoryProxy, UnitOfWorkSaga

__all__ = [
    # Version
    "__version__",
    # Entities
    "Entity",
    "EntityMeta",
    "IdRecord",
    "create_draft",
    "rebuild",
    "entity_to_dict",
    "entity_from_dict",
    # Query
    "Query",
    "QueryBuilder",
    "Filter",
    "Range",
    "Sort",
    "Direction",
    "where",
    "and_",
    "or_",
    # Repositories
    "Repository",
    "QueryResult",
    "BatchItem",
    "BatchId",
    "BatchResult",
    "BatchStatus",
    "InMemoryLifecycleManager",
    "IdentityRegistry",
    "InMemoryRepository",
    "SqliteRepository",
    "S3Repository",
    "FederatedRepository",
    "create_repository",
    "create_federated_repository",
    # Saga
    "UnitOfWorkSaga",
    "SagaRepositoryProxy",
    # Configuration
    "StoreConfig",
    "SqliteConfig",
    "S3Config",
    "ObservabilityConfig",
    "BackendKind",
    "setup_logging",
    # Errors
    "FedstoreError",
    "ConfigurationError",
    "UnregisteredTagError",
    "DuplicateTagError",
    "QueryError",
    "InvalidCursorError",
    "EntityValidationError",
    "BackendError",
    "CompensationError",
]
