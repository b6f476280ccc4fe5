"""
Saga-style compensation for multi-step writes.

UnitOfWorkSaga records inverse actions; SagaRepositoryProxy wraps any
Repository and registers the inverse of every ``set``/``remove`` it performs.
Calling ``rollback()`` replays the inverses newest-first, one at a time.

Invariants:
    - Compensations run in reverse registration order, sequentially
    - A failed compensation is not retried; rollback stops and raises
      CompensationError with the older compensations still pending
    - ``query`` and ``batch`` pass through without compensation; a batch
      is one external effect from the saga's point of view

How to change safely:
    - Never run compensations concurrently; later ones may rely on state
      restored by earlier ones
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, List, Optional, Union

from .entity import Entity
from .errors import CompensationError
from .query.query import Query
from .repository.base import Batch, BatchResult, QueryResult, Repository

logger = logging.getLogger(__name__)

Compensation = Callable[[], Union[Awaitable[Any], Any]]


class UnitOfWorkSaga:
    """Stack of compensating actions.

    Example:
        >>> saga = UnitOfWorkSaga()
        >>> orders = SagaRepositoryProxy(InMemoryRepository(tag="order"), saga)
        >>> await orders.set(create_draft("order", {"value": 100}))
        >>> await saga.rollback()  # the order is removed again
    """

    def __init__(self) -> None:
        self._compensations: List[Compensation] = []

    @property
    def pending(self) -> int:
        """Number of registered compensations not yet run."""
        return len(self._compensations)

    def register_compensation(self, fn: Compensation) -> None:
        """Register an inverse action; ``fn`` may be sync or async."""
        self._compensations.append(fn)

    def commit(self) -> None:
        """Forget all compensations; the saga completed."""
        if self._compensations:
            logger.debug("Saga committed", extra={"discarded": len(self._compensations)})
        self._compensations.clear()

    async def rollback(self) -> None:
        """Run all compensations newest-first.

        Raises:
            CompensationError: If a compensation fails; it is dropped and the
                older ones stay registered
        """
        total = len(self._compensations)
        if total:
            logger.info("Rolling back saga", extra={"compensations": total})

        while self._compensations:
            fn = self._compensations.pop()
            try:
                result = fn()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                remaining = len(self._compensations)
                logger.error(
                    f"Compensation failed during rollback: {e}",
                    exc_info=True,
                    extra={"remaining": remaining},
                )
                raise CompensationError(str(e), remaining) from e

        if total:
            logger.info("Saga rolled back", extra={"compensations": total})


class SagaRepositoryProxy:
    """Repository wrapper registering compensations for writes.

    Keeps the wrapped repository's ``tag`` and ``meta`` so a proxied backend
    can be placed in a federation pool, or a whole federation can be wrapped.
    """

    def __init__(self, repo: Repository, uow: UnitOfWorkSaga) -> None:
        self.repo = repo
        self.uow = uow
        self.tag = repo.tag
        self.meta = repo.meta

    async def get(self, entity_id: str) -> Optional[Entity]:
        return await self.repo.get(entity_id)

    async def set(self, entity: Entity) -> Entity:
        previous = await self.repo.get(entity.meta.id) if entity.meta.id else None
        written = await self.repo.set(entity)

        if previous is not None:

            async def restore() -> None:
                await self.repo.set(previous)

            self.uow.register_compensation(restore)
        else:
            created_id = written.meta.id

            async def undo_create() -> None:
                await self.repo.remove(created_id)

            self.uow.register_compensation(undo_create)
        return written

    async def remove(self, entity_id: str) -> None:
        previous = await self.repo.get(entity_id)
        if previous is None:
            return

        async def restore() -> None:
            await self.repo.set(previous)

        self.uow.register_compensation(restore)
        await self.repo.remove(entity_id)

    async def query(self, query: Optional[Query] = None, **kwargs: Any) -> QueryResult:
        # kwargs carry router-only options such as ``tag``
        return await self.repo.query(query, **kwargs)

    async def batch(self, items: Batch) -> BatchResult:
        return await self.repo.batch(items)
