"""
Factories building repositories from configuration.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from ..config import BackendKind, StoreConfig
from ..errors import ConfigurationError
from .base import IdentityResolver, LifecycleManager, Repository, RepositoryInitializer

if TYPE_CHECKING:
    from ..federation.router import FederatedRepository


def create_repository(
    kind: BackendKind,
    tag: str,
    lifecycle: Optional[LifecycleManager],
    config: StoreConfig,
) -> Repository:
    """Factory function to create a single-backend repository.

    Args:
        kind: Backend to use
        tag: Entity tag the repository serves
        lifecycle: Identity assignment policy (backend default if None)
        config: Store configuration supplying backend settings

    Returns:
        Appropriate Repository implementation

    Raises:
        ConfigurationError: If the backend is not supported
    """
    from .memory import InMemoryRepository
    from .s3 import S3Repository
    from .sqlite import SqliteRepository

    if kind == BackendKind.MEMORY:
        return InMemoryRepository(tag=tag, lifecycle=lifecycle)
    elif kind == BackendKind.SQLITE:
        return SqliteRepository(
            config.sqlite.data_dir,
            tag=tag,
            lifecycle=lifecycle,
            db_pattern=config.sqlite.db_pattern,
            wal_mode=config.sqlite.wal_mode,
            busy_timeout_ms=config.sqlite.busy_timeout_ms,
        )
    elif kind == BackendKind.S3:
        return S3Repository(config.s3, tag=tag, lifecycle=lifecycle)
    else:
        raise ConfigurationError(f"Unsupported backend: {kind}", setting="FEDSTORE_BACKENDS")


def repository_initializer(kind: BackendKind, tag: str, config: StoreConfig) -> RepositoryInitializer:
    """Initializer that builds the configured backend once given a lifecycle manager."""

    def initialize(lifecycle: LifecycleManager) -> Repository:
        return create_repository(kind, tag, lifecycle, config)

    return initialize


def create_federated_repository(
    config: StoreConfig,
    resolver: Optional[IdentityResolver] = None,
) -> FederatedRepository:
    """Build a federation with one backend per configured tag.

    Args:
        config: Store configuration; validated before anything is built
        resolver: Identity resolver shared by all backends
            (a fresh in-memory IdentityRegistry by default)
    """
    from ..federation.router import FederatedRepository
    from .lifecycle import IdentityRegistry

    config.validate()
    initializers = [
        repository_initializer(kind, tag, config)
        for tag, kind in config.backends.items()
    ]
    return FederatedRepository(
        tag=config.federation_tag,
        resolver=resolver or IdentityRegistry(),
        repositories=initializers,
    )
