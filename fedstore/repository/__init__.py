"""
Repository layer: the uniform persistence contract and its backends.

Backends:
    InMemoryRepository   process memory (tests, reference data)
    SqliteRepository     JSON documents in one SQLite file per tag
    S3Repository         JSON objects in S3 via aiobotocore
"""

from .base import (
    Batch,
    BatchId,
    BatchItem,
    BatchOperation,
    BatchResult,
    BatchStatus,
    IdentityResolver,
    LifecycleManager,
    QueryResult,
    Repository,
    RepositoryInitializer,
    RepositoryMeta,
)
from .factory import create_federated_repository, create_repository, repository_initializer
from .lifecycle import IdentityRegistry, InMemoryLifecycleManager
from .memory import InMemoryRepository
from .s3 import S3Repository
from .sqlite import SqliteRepository

__all__ = [
    # Protocols and types
    "Repository",
    "RepositoryMeta",
    "RepositoryInitializer",
    "LifecycleManager",
    "IdentityResolver",
    "QueryResult",
    "Batch",
    "BatchItem",
    "BatchId",
    "BatchOperation",
    "BatchResult",
    "BatchStatus",
    # Lifecycle
    "InMemoryLifecycleManager",
    "IdentityRegistry",
    # Factory
    "create_repository",
    "create_federated_repository",
    "repository_initializer",
    # Implementations
    "InMemoryRepository",
    "SqliteRepository",
    "S3Repository",
]
