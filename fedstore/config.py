"""
Configuration management for fedstore.

Stores are configured via environment variables; there are no config files.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Every tag in the federation maps to exactly one backend kind
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - New backend kinds need a BackendKind member and a branch in
      repository/factory.py
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class BackendKind(Enum):
    """Supported repository backends."""

    MEMORY = "memory"
    SQLITE = "sqlite"
    S3 = "s3"


@dataclass(frozen=True)
class SqliteConfig:
    """SQLite document-store configuration.

    Attributes:
        data_dir: Directory for SQLite databases
        db_pattern: Pattern for per-tag database files
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    data_dir: str = "/var/lib/fedstore"
    db_pattern: str = "{tag}.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> SqliteConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("FEDSTORE_DATA_DIR", "/var/lib/fedstore"),
            db_pattern=os.getenv("FEDSTORE_DB_PATTERN", "{tag}.db"),
            wal_mode=os.getenv("FEDSTORE_SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("FEDSTORE_SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class S3Config:
    """S3 document-store configuration.

    Attributes:
        bucket: S3 bucket name
        region: AWS region
        endpoint_url: Custom endpoint URL (for MinIO / LocalStack)
        prefix: Key prefix under which entity documents are stored
        access_key_id: AWS access key ID (optional, uses AWS credential chain)
        secret_access_key: AWS secret access key (optional)
        max_concurrent_reads: Concurrent GetObject calls during a query
    """

    bucket: str = "fedstore"
    region: str = "us-east-1"
    endpoint_url: str | None = None
    prefix: str = "entities"
    access_key_id: str | None = None
    secret_access_key: str | None = None
    max_concurrent_reads: int = 16

    @classmethod
    def from_env(cls) -> S3Config:
        """Load configuration from environment variables."""
        return cls(
            bucket=os.getenv("FEDSTORE_S3_BUCKET", "fedstore"),
            region=os.getenv("FEDSTORE_S3_REGION", os.getenv("AWS_REGION", "us-east-1")),
            endpoint_url=os.getenv("FEDSTORE_S3_ENDPOINT"),
            prefix=os.getenv("FEDSTORE_S3_PREFIX", "entities"),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
            max_concurrent_reads=int(os.getenv("FEDSTORE_S3_MAX_CONCURRENT", "16")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


def parse_backends(spec: str) -> dict[str, BackendKind]:
    """Parse ``"order=sqlite,user=memory"`` into a tag -> kind mapping.

    Raises:
        ConfigurationError: On a malformed entry, unknown kind or repeated tag
    """
    backends: dict[str, BackendKind] = {}
    for entry in spec.split(","):
        entry = entry.strip()
        if not entry:
            continue
        tag, sep, kind = entry.partition("=")
        tag, kind = tag.strip(), kind.strip().lower()
        if not sep or not tag:
            raise ConfigurationError(
                f"Invalid FEDSTORE_BACKENDS entry '{entry}'. Expected tag=kind",
                setting="FEDSTORE_BACKENDS",
            )
        try:
            backend = BackendKind(kind)
        except ValueError:
            raise ConfigurationError(
                f"Invalid backend '{kind}' for tag '{tag}'. Must be one of: memory, sqlite, s3",
                setting="FEDSTORE_BACKENDS",
            )
        if tag in backends:
            raise ConfigurationError(
                f"Tag '{tag}' appears more than once in FEDSTORE_BACKENDS",
                setting="FEDSTORE_BACKENDS",
            )
        backends[tag] = backend
    return backends


@dataclass
class StoreConfig:
    """Complete store configuration.

    Attributes:
        federation_tag: Tag reported by the federated repository
        backends: Entity tag -> backend kind
        sqlite: SQLite configuration (for sqlite backends)
        s3: S3 configuration (for s3 backends)
        observability: Logging configuration
    """

    federation_tag: str = "federated"
    backends: dict[str, BackendKind] = field(default_factory=dict)
    sqlite: SqliteConfig = field(default_factory=SqliteConfig)
    s3: S3Config = field(default_factory=S3Config)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> StoreConfig:
        """Load complete configuration from environment variables.

        Returns:
            StoreConfig with all sections populated from environment.

        Raises:
            ConfigurationError: If required configuration is missing or invalid.
        """
        config = cls(
            federation_tag=os.getenv("FEDSTORE_FEDERATION_TAG", "federated"),
            backends=parse_backends(os.getenv("FEDSTORE_BACKENDS", "")),
            sqlite=SqliteConfig.from_env(),
            s3=S3Config.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def uses(self, kind: BackendKind) -> bool:
        return kind in self.backends.values()

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ConfigurationError: If configuration is invalid.
        """
        if not self.backends:
            raise ConfigurationError(
                "FEDSTORE_BACKENDS must name at least one tag=kind pair",
                setting="FEDSTORE_BACKENDS",
            )

        for tag in self.backends:
            if not tag.strip():
                raise ConfigurationError("Backend tags must be non-empty", setting="FEDSTORE_BACKENDS")

        if self.uses(BackendKind.S3) and not self.s3.bucket:
            raise ConfigurationError(
                "FEDSTORE_S3_BUCKET is required when an s3 backend is configured",
                setting="FEDSTORE_S3_BUCKET",
            )

        if self.uses(BackendKind.SQLITE) and not os.path.exists(self.sqlite.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.sqlite.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Store configuration loaded",
            extra={
                "federation_tag": self.federation_tag,
                "backends": {tag: kind.value for tag, kind in self.backends.items()},
                "data_dir": self.sqlite.data_dir if self.uses(BackendKind.SQLITE) else None,
                "s3_bucket": self.s3.bucket if self.uses(BackendKind.S3) else None,
                "log_level": self.observability.log_level,
            },
        )
