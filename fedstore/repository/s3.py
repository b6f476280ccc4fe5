"""
S3 document-store repository.

Each entity is one JSON object at ``{prefix}/{tag}/{id}.json``. Point reads
and writes map directly to GetObject / PutObject / DeleteObject; queries list
the tag prefix, fetch every document and evaluate the query in memory.

Invariants:
    - Object keys are derived only from prefix, tag and id
    - A missing object is a None result, never an error
    - Query results without sort keys are ordered by creation time, then id
    - Concurrent GetObject calls during a query are bounded by a semaphore
    - At most one client is open per repository, even under concurrent first use

How to change safely:
    - Keep the document layout readable by ``entity_from_dict``
    - S3 has no multi-object transactions; batch stops at the first failure
      and leaves earlier items applied

S3 layout:
    s3://{bucket}/{prefix}/{tag}/{id}.json
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, List, Optional

from aiobotocore.session import get_session
from botocore.exceptions import BotoCoreError, ClientError

from ..config import S3Config
from ..entity import Entity, entity_from_dict, entity_to_dict
from ..errors import BackendError
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

S3_REPOSITORY_KIND = "s3.repo"

_MISSING_CODES = frozenset({"NoSuchKey", "404", "NotFound"})
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class S3Repository:
    """Repository persisting entities as JSON objects in S3.

    The client is created on first use (or by ``connect``) and released by
    ``close``. A pre-built client can be injected for testing.

    Example:
        >>> async with S3Repository(S3Config(bucket="app"), tag="user") as repo:
        ...     ana = await repo.set(create_draft("user", {"name": "Ana"}))
    """

    def __init__(
        self,
        s3_config: S3Config,
        tag: str,
        lifecycle: Optional[LifecycleManager] = None,
        client: Any = None,
    ) -> None:
        """Initialize the repository.

        Args:
            s3_config: Bucket, prefix and credentials
            tag: Entity tag served by this repository
            lifecycle: Identity assignment policy
            client: Already-open S3 client (skips session handling)
        """
        self.tag = tag
        self.meta = RepositoryMeta(kind=S3_REPOSITORY_KIND)
        self.s3_config = s3_config
        self._lifecycle = lifecycle or InMemoryLifecycleManager()
        self._s3_client = client
        self._s3_ctx = None
        self._owns_client = client is None
        self._connect_lock = asyncio.Lock()
        self._semaphore = asyncio.Semaphore(s3_config.max_concurrent_reads)

    async def __aenter__(self) -> S3Repository:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def connect(self) -> None:
        """Create the S3 client if none is open; concurrent callers share one client."""
        if self._s3_client is not None:
            return
        async with self._connect_lock:
            if self._s3_client is None:
                await self._open_client()

    async def _open_client(self) -> None:
        session = get_session()

        client_kwargs = {
            "region_name": self.s3_config.region,
        }

        if self.s3_config.endpoint_url:
            client_kwargs["endpoint_url"] = self.s3_config.endpoint_url

        if self.s3_config.access_key_id:
            client_kwargs["aws_access_key_id"] = self.s3_config.access_key_id
            client_kwargs["aws_secret_access_key"] = self.s3_config.secret_access_key

        self._s3_ctx = session.create_client("s3", **client_kwargs)
        self._s3_client = await self._s3_ctx.__aenter__()
        self._owns_client = True
        logger.info(
            "Connected S3 repository",
            extra={
                "tag": self.tag,
                "bucket": self.s3_config.bucket,
                "endpoint": self.s3_config.endpoint_url or "AWS",
            },
        )

    async def close(self) -> None:
        """Close the S3 client if this repository opened it."""
        async with self._connect_lock:
            if self._s3_client is None or not self._owns_client or self._s3_ctx is None:
                return
            ctx, self._s3_ctx, self._s3_client = self._s3_ctx, None, None
            await ctx.__aexit__(None, None, None)
            logger.info("Closed S3 repository", extra={"tag": self.tag})

    async def _client(self) -> Any:
        if self._s3_client is None:
            await self.connect()
        return self._s3_client

    @property
    def key_prefix(self) -> str:
        prefix = self.s3_config.prefix.strip("/")
        return f"{prefix}/{self.tag}/" if prefix else f"{self.tag}/"

    def _key(self, entity_id: str) -> str:
        return f"{self.key_prefix}{entity_id}.json"

    def _error(self, operation: str, e: Exception) -> BackendError:
        return BackendError(S3_REPOSITORY_KIND, operation, str(e))

    async def _read(self, key: str) -> Optional[Entity]:
        client = await self._client()
        try:
            response = await client.get_object(Bucket=self.s3_config.bucket, Key=key)
            content = await response["Body"].read()
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "")
            if error_code in _MISSING_CODES:
                return None
            raise self._error("get", e) from e
        except BotoCoreError as e:
            raise self._error("get", e) from e
        return entity_from_dict(json.loads(content.decode("utf-8")))

    async def _write(self, entity: Entity) -> None:
        client = await self._client()
        body = json.dumps(entity_to_dict(entity)).encode("utf-8")
        try:
            await client.put_object(
                Bucket=self.s3_config.bucket,
                Key=self._key(entity.meta.id),
                Body=body,
                ContentType="application/json",
            )
        except (ClientError, BotoCoreError) as e:
            raise self._error("set", e) from e

    async def _delete(self, entity_id: str) -> None:
        client = await self._client()
        try:
            await client.delete_object(Bucket=self.s3_config.bucket, Key=self._key(entity_id))
        except (ClientError, BotoCoreError) as e:
            raise self._error("remove", e) from e

    async def get(self, entity_id: str) -> Optional[Entity]:
        return await self._read(self._key(entity_id))

    async def set(self, entity: Entity) -> Entity:
        declared = await self._lifecycle.declare_entity(entity)
        await self._write(declared)
        logger.debug("Entity stored in S3", extra={"tag": self.tag, "id": declared.meta.id})
        return declared

    async def remove(self, entity_id: str) -> None:
        await self._delete(entity_id)

    async def _list_keys(self) -> List[str]:
        client = await self._client()
        keys: List[str] = []
        try:
            paginator = client.get_paginator("list_objects_v2")
            async for page in paginator.paginate(
                Bucket=self.s3_config.bucket, Prefix=self.key_prefix
            ):
                for obj in page.get("Contents", []):
                    if obj["Key"].endswith(".json"):
                        keys.append(obj["Key"])
        except (ClientError, BotoCoreError) as e:
            raise self._error("query", e) from e
        return keys

    async def _fetch(self, key: str) -> Optional[Entity]:
        async with self._semaphore:
            return await self._read(key)

    async def query(self, query: Optional[Query] = None) -> QueryResult:
        keys = await self._list_keys()
        fetched = await asyncio.gather(*(self._fetch(key) for key in keys))

        # Objects deleted between listing and fetching are skipped
        entities = [e for e in fetched if e is not None]
        entities.sort(key=lambda e: (e.meta.created_at or _EPOCH, e.meta.id or ""))

        data, next_cursor = run_query(entities, query)
        logger.debug(
            "S3 query evaluated",
            extra={"tag": self.tag, "scanned": len(entities), "returned": len(data)},
        )
        return QueryResult(data=data, next_cursor=next_cursor)

    async def batch(self, items: Batch) -> BatchResult:
        """Apply items in order; the first storage error fails the batch."""
        upserted: List[BatchId] = []
        removed: List[BatchId] = []

        try:
            for item in items:
                if item.type is BatchOperation.REMOVE:
                    await self._delete(item.data)
                    removed.append(BatchId(id=item.data))
                else:
                    declared = await self._lifecycle.declare_entity(item.data)
                    await self._write(declared)
                    upserted.append(BatchId(id=declared.meta.id))
        except BackendError as e:
            logger.error(
                f"S3 batch failed for tag {self.tag} after {len(upserted) + len(removed)} item(s): {e}",
                exc_info=True,
            )
            return BatchResult.failed()

        return BatchResult(
            status=BatchStatus.SUCCESSFUL,
            upserted_ids=upserted,
            removed_ids=removed,
        )
