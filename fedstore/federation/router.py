"""
Federated repository: one Repository contract over many backends.

The router owns an immutable pool ``tag -> repository`` built once from a
list of initializers. Every initializer receives the same identity resolver
as its lifecycle manager, so any id assigned by any backend can later be
resolved back to the backend that owns it.

Routing rules:
    get(id)            resolver lookup; unknown id -> None
    set(entity)        by the entity's own tag; unknown tag -> UnregisteredTagError
    remove(id)         resolver lookup; unknown id -> no-op
    query(q, tag)      with tag: delegate verbatim
                       without tag: fan out, concatenate in pool order, no cursor
    batch(items)       partition by tag, dispatch sub-batches concurrently

Invariants:
    - The pool is read-only after construction
    - Aggregate results are assembled in pool order, never completion order
    - Per-tag sub-batches keep the relative order of the input items
    - Closing the federation closes every backend that holds a connection
    - A configuration error is raised before any backend is called

How to change safely:
    - Cross-backend pagination is deliberately unsupported; adding it needs
      a merge cursor format that every backend can honour
    - The router does not cache resolver lookups between operations
"""

from __future__ import annotations

import asyncio
import logging
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Sequence

from ..entity import Entity
from ..errors import DuplicateTagError, UnregisteredTagError
from ..query.query import Query
from ..repository.base import (
    Batch,
    BatchId,
    BatchItem,
    BatchOperation,
    BatchResult,
    BatchStatus,
    IdentityResolver,
    QueryResult,
    Repository,
    RepositoryInitializer,
    RepositoryMeta,
)

logger = logging.getLogger(__name__)

FEDERATED_REPOSITORY_KIND = "federated.repository"


class FederatedRepository:
    """Routes repository operations to per-tag backends.

    Attributes:
        tag: Tag of the federation itself
        meta: Repository metadata
        resolver: Identity resolver shared with every backend

    Example:
        >>> registry = IdentityRegistry()
        >>> store = FederatedRepository(
        ...     tag="app",
        ...     resolver=registry,
        ...     repositories=[
        ...         lambda lifecycle: InMemoryRepository(tag="order", lifecycle=lifecycle),
        ...         lambda lifecycle: InMemoryRepository(tag="user", lifecycle=lifecycle),
        ...     ],
        ... )
        >>> ana = await store.set(create_draft("user", {"name": "Ana"}))
        >>> await store.get(ana.meta.id) == ana
        True
    """

    def __init__(
        self,
        tag: str,
        resolver: IdentityResolver,
        repositories: Sequence[RepositoryInitializer],
    ) -> None:
        """Build the backend pool.

        Args:
            tag: Tag of the federation itself
            resolver: Identity resolver handed to every initializer
            repositories: Initializers, one per backend tag

        Raises:
            DuplicateTagError: If two initializers produce the same tag
        """
        self.tag = tag
        self.meta = RepositoryMeta(kind=FEDERATED_REPOSITORY_KIND)
        self.resolver = resolver

        pool: Dict[str, Repository] = {}
        for initializer in repositories:
            repo = initializer(resolver)
            if repo.tag in pool:
                raise DuplicateTagError(repo.tag)
            pool[repo.tag] = repo
        self._pool: Mapping[str, Repository] = MappingProxyType(pool)

        logger.info(
            "Federated repository ready",
            extra={
                "tag": tag,
                "backends": {t: r.meta.kind for t, r in pool.items()},
            },
        )

    async def __aenter__(self) -> FederatedRepository:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def connect(self) -> None:
        """Open every backend that manages its own connection."""
        await asyncio.gather(
            *(repo.connect() for repo in self._pool.values() if hasattr(repo, "connect"))
        )

    async def close(self) -> None:
        """Close every backend that manages its own connection.

        Every backend is closed even if an earlier one fails; the first
        failure is re-raised afterwards.
        """
        errors: List[Exception] = []
        for tag, repo in self._pool.items():
            if not hasattr(repo, "close"):
                continue
            try:
                await repo.close()
            except Exception as e:
                logger.error(f"Failed to close backend {tag}: {e}", exc_info=True)
                errors.append(e)
        if errors:
            raise errors[0]

    @property
    def pool(self) -> Mapping[str, Repository]:
        """Read-only view of ``tag -> repository``."""
        return self._pool

    def repository_for(self, tag: str) -> Repository:
        """Backend serving ``tag``.

        Raises:
            UnregisteredTagError: If no backend serves ``tag``
        """
        try:
            return self._pool[tag]
        except KeyError:
            raise UnregisteredTagError(tag) from None

    async def _resolve_tag(self, entity_id: str) -> Optional[str]:
        record = await self.resolver.get_id_entity(entity_id)
        return record.entity_tag if record is not None else None

    async def get(self, entity_id: str) -> Optional[Entity]:
        tag = await self._resolve_tag(entity_id)
        if tag is None:
            return None
        return await self.repository_for(tag).get(entity_id)

    async def set(self, entity: Entity) -> Entity:
        return await self.repository_for(entity.tag).set(entity)

    async def remove(self, entity_id: str) -> None:
        tag = await self._resolve_tag(entity_id)
        if tag is None:
            logger.debug("Remove of unknown id ignored", extra={"id": entity_id})
            return
        await self.repository_for(tag).remove(entity_id)

    async def query(self, query: Optional[Query] = None, tag: Optional[str] = None) -> QueryResult:
        """Query one backend, or every backend when ``tag`` is omitted.

        The aggregate form concatenates each backend's page in pool order
        and never returns a cursor.
        """
        if tag is not None:
            return await self.repository_for(tag).query(query)

        results = await asyncio.gather(*(repo.query(query) for repo in self._pool.values()))
        data: List[Entity] = []
        for result in results:
            data.extend(result.data)
        return QueryResult(data=data)

    async def _partition(self, items: Batch) -> Dict[str, List[BatchItem]]:
        groups: Dict[str, List[BatchItem]] = {}
        for item in items:
            if item.type is BatchOperation.REMOVE:
                tag = await self._resolve_tag(item.data)
                if tag is None:
                    logger.warning(
                        "Dropping batch removal of unresolvable id",
                        extra={"id": item.data},
                    )
                    continue
            else:
                tag = item.data.tag
            groups.setdefault(tag, []).append(item)
        return groups

    async def batch(self, items: Batch) -> BatchResult:
        """Split ``items`` by tag and run each backend's sub-batch concurrently.

        Returns:
            A failed result listing every failing tag, or a successful
            result with the union of all ids tagged by their backend.

        Raises:
            UnregisteredTagError: If any item targets a tag with no backend;
                raised before any sub-batch is dispatched
        """
        groups = await self._partition(items)
        for tag in groups:
            self.repository_for(tag)
        targets = [(tag, repo) for tag, repo in self._pool.items() if tag in groups]

        outcomes = await asyncio.gather(
            *(repo.batch(groups[tag]) for tag, repo in targets),
            return_exceptions=True,
        )

        failures: List[str] = []
        upserted: List[BatchId] = []
        removed: List[BatchId] = []
        for (tag, _), outcome in zip(targets, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.error(
                    f"Sub-batch for tag {tag} raised: {outcome}",
                    exc_info=outcome,
                )
                failures.append(tag)
                continue
            if not outcome.successful:
                logger.warning("Sub-batch reported failure", extra={"tag": tag})
                failures.append(tag)
                continue
            upserted.extend(BatchId(id=b.id, tag=tag) for b in outcome.upserted_ids)
            removed.extend(BatchId(id=b.id, tag=tag) for b in outcome.removed_ids)

        if failures:
            return BatchResult.failed(failures)

        logger.debug(
            "Federated batch applied",
            extra={"tags": list(groups), "upserted": len(upserted), "removed": len(removed)},
        )
        return BatchResult(
            status=BatchStatus.SUCCESSFUL,
            upserted_ids=upserted,
            removed_ids=removed,
        )
