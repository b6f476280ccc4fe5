"""
Entity model shared by every repository.

An entity is an immutable value made of domain properties (``props``) and
lifecycle metadata (``meta``). A draft is an entity whose identity has not
been assigned yet; a lifecycle manager turns drafts into identified entities.

Invariants:
    - Once assigned, ``meta.id`` never changes for the entity's lifetime
    - ``created_at`` is set once and never changes afterwards
    - ``updated_at`` moves forward on every successful write
    - Entities are never mutated in place; ``rebuild`` returns a new value

How to change safely:
    - New metadata fields need defaults so stored documents stay readable
    - Keep ``entity_to_dict`` / ``entity_from_dict`` symmetric
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

DEFAULT_VERSION = "v1"
ID_TAG = "id"


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class EntityMeta:
    """Identity and lifecycle metadata of an entity.

    Attributes:
        tag: Entity type discriminator; also selects the owning backend
        version: Schema version of the entity type
        id: Stable identifier (None on drafts)
        created_at: First persistence time (None on drafts)
        updated_at: Last successful write time (None on drafts)
        idempotency_key: Key of the logical operation that produced the entity
    """

    tag: str
    version: str = DEFAULT_VERSION
    id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    idempotency_key: str = ""


@dataclass(frozen=True)
class Entity:
    """Immutable domain record.

    Example:
        >>> user = create_draft("user", {"name": "Ana"})
        >>> user.is_draft
        True
    """

    props: Dict[str, Any]
    meta: EntityMeta

    @property
    def id(self) -> Optional[str]:
        return self.meta.id

    @property
    def tag(self) -> str:
        return self.meta.tag

    @property
    def is_draft(self) -> bool:
        """True until a lifecycle manager has assigned identity."""
        return not self.meta.id or self.meta.created_at is None


@dataclass(frozen=True)
class IdRecord:
    """Maps a persisted entity id to the tag of the backend that owns it."""

    id: str
    entity_tag: str
    created_at: Optional[datetime] = None


def create_draft(
    tag: str,
    props: Dict[str, Any],
    version: str = DEFAULT_VERSION,
    idempotency_key: str = "",
) -> Entity:
    """Create a draft entity pending identity assignment."""
    return Entity(
        props=dict(props),
        meta=EntityMeta(tag=tag, version=version, idempotency_key=idempotency_key),
    )


def rebuild(tag: str, version: str, props: Dict[str, Any], meta: EntityMeta) -> Entity:
    """Build an entity of ``tag``/``version`` from props and metadata.

    The tag and version given here win over whatever ``meta`` carries.
    """
    return Entity(
        props=dict(props),
        meta=EntityMeta(
            tag=tag,
            version=version,
            id=meta.id,
            created_at=meta.created_at,
            updated_at=meta.updated_at,
            idempotency_key=meta.idempotency_key,
        ),
    )


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def entity_to_dict(entity: Entity) -> Dict[str, Any]:
    """Convert an entity to a JSON-safe document.

    Props are copied as-is and must already be JSON-serializable.
    """
    meta = entity.meta
    return {
        "id": meta.id,
        "tag": meta.tag,
        "version": meta.version,
        "created_at": _iso(meta.created_at),
        "updated_at": _iso(meta.updated_at),
        "idempotency_key": meta.idempotency_key,
        "props": dict(entity.props),
    }


def entity_from_dict(data: Dict[str, Any]) -> Entity:
    """Create an entity from a document produced by ``entity_to_dict``."""
    meta = EntityMeta(
        tag=data["tag"],
        version=data.get("version", DEFAULT_VERSION),
        id=data.get("id"),
        created_at=_parse_iso(data.get("created_at")),
        updated_at=_parse_iso(data.get("updated_at")),
        idempotency_key=data.get("idempotency_key", ""),
    )
    return rebuild(meta.tag, meta.version, data.get("props", {}), meta)


def id_record_to_entity(record: IdRecord) -> Entity:
    """Store form of an IdRecord: an entity tagged ``id``."""
    return Entity(
        props={"entity_tag": record.entity_tag},
        meta=EntityMeta(tag=ID_TAG, id=record.id, created_at=record.created_at),
    )


def id_record_from_entity(entity: Entity) -> IdRecord:
    return IdRecord(
        id=entity.meta.id or "",
        entity_tag=entity.props["entity_tag"],
        created_at=entity.meta.created_at,
    )
