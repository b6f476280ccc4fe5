"""
SQLite document-store repository.

Each repository owns one SQLite file (one per entity tag) holding a single
``entities`` table. Props are stored as a JSON document; queries are pushed
down to SQL by compiling the filter tree against the JSON1 functions.

Invariants:
    - One SQLite file per tag
    - All batch writes happen in a single transaction
    - Replacing an entity moves it to the end of the default ordering
      (INSERT OR REPLACE assigns a new rowid), matching the in-memory store
    - Pagination follows the page-index cursor contract of the query engine

How to change safely:
    - Schema changes must be backward compatible with existing files
    - Keep the compiled SQL in query/sql.py in step with the table layout

Table schema:
    entities:
        - id TEXT PRIMARY KEY
        - tag TEXT
        - version TEXT
        - props_json TEXT (JSON)
        - created_at TEXT (ISO-8601, UTC)
        - updated_at TEXT (ISO-8601, UTC)
        - idempotency_key TEXT
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional

from ..entity import Entity, EntityMeta, rebuild
from ..errors import BackendError
from ..query.engine import page_window, trim_page
from ..query.query import Query
from ..query.sql import compile_sorts, compile_where, to_sql_value
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

SQLITE_REPOSITORY_KIND = "sqlite.repo"


class SqliteRepository:
    """Repository persisting entities as JSON documents in SQLite.

    Thread safety:
        A connection is opened per operation. Writes are serialized with an
        asyncio lock; SQLite handles concurrent readers via WAL mode.

    Example:
        >>> repo = SqliteRepository("/var/lib/fedstore", tag="order")
        >>> order = await repo.set(create_draft("order", {"value": 100}))
        >>> page = await repo.query(QueryBuilder().filter_by("value", ">", 50).build())
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        data_dir: str,
        tag: str,
        lifecycle: Optional[LifecycleManager] = None,
        db_pattern: str = "{tag}.db",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the repository.

        Args:
            data_dir: Directory for SQLite database files
            tag: Entity tag served by this repository
            lifecycle: Identity assignment policy
            db_pattern: File name pattern, formatted with ``tag``
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.tag = tag
        self.meta = RepositoryMeta(kind=SQLITE_REPOSITORY_KIND)
        self.data_dir = Path(data_dir)
        self.db_pattern = db_pattern
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._lifecycle = lifecycle or InMemoryLifecycleManager()
        self._lock = asyncio.Lock()
        self._schema_ready = False

    @property
    def db_path(self) -> Path:
        # Sanitize tag to prevent path traversal
        safe_tag = "".join(c for c in self.tag if c.isalnum() or c in "-_.")
        return self.data_dir / self.db_pattern.format(tag=safe_tag)

    @contextmanager
    def _get_connection(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Open a configured connection, creating file and schema on first use.

        Raises:
            BackendError: Wrapping any sqlite3 error raised inside the block
        """
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
            )
        except (OSError, sqlite3.Error) as e:
            raise BackendError(SQLITE_REPOSITORY_KIND, operation, str(e)) from e

        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            if not self._schema_ready:
                self._create_schema(conn)
                self._schema_ready = True
            yield conn
        except sqlite3.Error as e:
            raise BackendError(SQLITE_REPOSITORY_KIND, operation, str(e)) from e
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS entities (
                id TEXT PRIMARY KEY,
                tag TEXT NOT NULL,
                version TEXT NOT NULL,
                props_json TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                idempotency_key TEXT NOT NULL DEFAULT ''
            );

            CREATE INDEX IF NOT EXISTS idx_entities_created ON entities(created_at);
            CREATE INDEX IF NOT EXISTS idx_entities_updated ON entities(updated_at);

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%Y-%m-%dT%H:%M:%fZ', 'now'));
        """)
        logger.info("Initialized entity database", extra={"tag": self.tag, "path": str(self.db_path)})

    async def initialize(self) -> None:
        """Create the database file and schema if they don't exist."""
        async with self._lock:
            with self._get_connection("initialize"):
                pass

    @staticmethod
    def _row_to_entity(row: sqlite3.Row) -> Entity:
        meta = EntityMeta(
            tag=row["tag"],
            version=row["version"],
            id=row["id"],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
            idempotency_key=row["idempotency_key"],
        )
        return rebuild(meta.tag, meta.version, json.loads(row["props_json"]), meta)

    @staticmethod
    def _write(conn: sqlite3.Connection, entity: Entity) -> None:
        meta = entity.meta
        conn.execute(
            """
            INSERT OR REPLACE INTO entities
                (id, tag, version, props_json, created_at, updated_at, idempotency_key)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                meta.id,
                meta.tag,
                meta.version,
                json.dumps(entity.props),
                to_sql_value(meta.created_at),
                to_sql_value(meta.updated_at),
                meta.idempotency_key,
            ),
        )

    async def get(self, entity_id: str) -> Optional[Entity]:
        with self._get_connection("get") as conn:
            row = conn.execute("SELECT * FROM entities WHERE id = ?", (entity_id,)).fetchone()
        return self._row_to_entity(row) if row else None

    async def set(self, entity: Entity) -> Entity:
        declared = await self._lifecycle.declare_entity(entity)
        async with self._lock:
            with self._get_connection("set") as conn:
                self._write(conn, declared)
        logger.debug("Entity stored in SQLite", extra={"tag": self.tag, "id": declared.meta.id})
        return declared

    async def remove(self, entity_id: str) -> None:
        async with self._lock:
            with self._get_connection("remove") as conn:
                conn.execute("DELETE FROM entities WHERE id = ?", (entity_id,))

    async def query(self, query: Optional[Query] = None) -> QueryResult:
        query = query or Query()
        sql = "SELECT * FROM entities"
        params: List[Any] = []

        if query.filter_by is not None:
            clause, where_params = compile_where(query.filter_by)
            sql += f" WHERE {clause}"
            params.extend(where_params)

        order, order_params = compile_sorts(query.order_by)
        sql += f" ORDER BY {order}"
        params.extend(order_params)

        offset, size = page_window(query)
        if size is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([size, offset])

        with self._get_connection("query") as conn:
            rows = conn.execute(sql, params).fetchall()

        data, next_cursor = trim_page([self._row_to_entity(row) for row in rows], query)
        return QueryResult(data=data, next_cursor=next_cursor)

    async def batch(self, items: Batch) -> BatchResult:
        """Apply all items in one transaction; a storage error fails the whole batch."""
        upserted: List[BatchId] = []
        removed: List[BatchId] = []

        async with self._lock:
            try:
                with self._get_connection("batch") as conn:
                    conn.execute("BEGIN IMMEDIATE")
                    try:
                        for item in items:
                            if item.type is BatchOperation.REMOVE:
                                conn.execute("DELETE FROM entities WHERE id = ?", (item.data,))
                                removed.append(BatchId(id=item.data))
                            else:
                                declared = await self._lifecycle.declare_entity(item.data)
                                self._write(conn, declared)
                                upserted.append(BatchId(id=declared.meta.id))
                        conn.execute("COMMIT")
                    except Exception:
                        conn.execute("ROLLBACK")
                        raise
            except BackendError as e:
                logger.error(f"SQLite batch failed for tag {self.tag}: {e}", exc_info=True)
                return BatchResult.failed()

        logger.debug(
            "Batch applied in SQLite",
            extra={"tag": self.tag, "upserted": len(upserted), "removed": len(removed)},
        )
        return BatchResult(
            status=BatchStatus.SUCCESSFUL,
            upserted_ids=upserted,
            removed_ids=removed,
        )

    # Testing helpers

    def count(self) -> int:
        """Number of stored entities (testing helper)."""
        with self._get_connection("count") as conn:
            return conn.execute("SELECT COUNT(*) FROM entities").fetchone()[0]


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None
