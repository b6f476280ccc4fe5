"""
Error types for fedstore.

This module defines all exception types raised by the persistence layer:
- FedstoreError: Base exception
- ConfigurationError: The repository pool or settings are unusable
- UnregisteredTagError: No backend is registered for an entity tag
- QueryError: A query or filter tree is malformed
- BackendError: A storage adapter failed
- CompensationError: A saga compensation failed during rollback

Invariants:
    - All errors inherit from FedstoreError
    - Not-found is never an error; lookups return None instead
    - Configuration errors always name the offending tag or setting
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class FedstoreError(Exception):
    """Base exception for all fedstore errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "FEDSTORE_ERROR"
        self.details = details or {}


class ConfigurationError(FedstoreError):
    """The store is configured in a way that can never succeed.

    Raised when:
    - An environment setting is missing or invalid
    - The repository pool is empty
    - A backend kind is unknown
    """

    def __init__(self, message: str, setting: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="CONFIGURATION_ERROR",
            details={"setting": setting},
        )
        self.setting = setting


class UnregisteredTagError(ConfigurationError):
    """No repository is registered for an entity tag.

    Attributes:
        tag: The tag that has no backend
    """

    def __init__(self, tag: str) -> None:
        super().__init__(f'No repository registered for tag "{tag}"', setting="tag")
        self.code = "UNREGISTERED_TAG"
        self.details = {"tag": tag}
        self.tag = tag


class DuplicateTagError(ConfigurationError):
    """Two repositories in one pool serve the same entity tag."""

    def __init__(self, tag: str) -> None:
        super().__init__(f'Repository for tag "{tag}" registered more than once', setting="tag")
        self.code = "DUPLICATE_TAG"
        self.details = {"tag": tag}
        self.tag = tag


class QueryError(FedstoreError):
    """Query or filter tree is malformed.

    Raised when:
    - An operator is unknown
    - An operator value has the wrong shape (e.g. ``in`` with a scalar)
    - A page size is not a positive integer
    """

    def __init__(self, message: str, fieldname: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="QUERY_ERROR",
            details={"fieldname": fieldname},
        )
        self.fieldname = fieldname


class InvalidCursorError(QueryError):
    """Cursor is not a decimal page index."""

    def __init__(self, cursor_ref: str) -> None:
        super().__init__(f"Invalid cursor '{cursor_ref}': expected a decimal page index")
        self.code = "INVALID_CURSOR"
        self.details = {"cursor_ref": cursor_ref}
        self.cursor_ref = cursor_ref


class EntityValidationError(FedstoreError):
    """A value handed to a repository is not a well-formed entity."""

    def __init__(self, message: str, tag: Optional[str] = None) -> None:
        super().__init__(message, code="ENTITY_VALIDATION_ERROR", details={"tag": tag})
        self.tag = tag


class BackendError(FedstoreError):
    """A storage adapter operation failed.

    Attributes:
        backend: Repository kind (e.g. ``sqlite.repo``)
        operation: Operation that failed (get, set, remove, query, batch)
    """

    def __init__(self, backend: str, operation: str, detail: str) -> None:
        super().__init__(
            f"Storage backend error in {backend} during {operation}: {detail}",
            code="BACKEND_ERROR",
            details={"backend": backend, "operation": operation},
        )
        self.backend = backend
        self.operation = operation
        self.detail = detail


class CompensationError(FedstoreError):
    """A compensation failed while rolling back a saga.

    The failed compensation is not retried. Compensations registered before
    it stay pending so an outer coordinator can decide what to do.

    Attributes:
        remaining: Number of compensations still registered
    """

    def __init__(self, detail: str, remaining: int) -> None:
        super().__init__(
            f"Saga rollback stopped: {detail} ({remaining} compensation(s) pending)",
            code="COMPENSATION_ERROR",
            details={"remaining": remaining},
        )
        self.remaining = remaining
