"""
Base protocol and types for document store engines.

This module defines the DocumentEngine protocol that document backends must
implement, along with the per-item bulk result type and the engine-level
error hierarchy shared by the document and relational engines.

Invariants:
    - Every document carries ``_id``; stored documents carry ``_rev``
    - A write whose ``_rev`` does not match the stored revision raises
      ConflictError and leaves the stored document unchanged
    - Deleted documents leave a tombstone; writing without ``_rev`` over a
      tombstone re-creates the document
    - bulk_docs attempts every item independently and never raises for a
      single item's failure

How to change safely:
    - Protocol changes require updating all implementations
    - Engine errors must stay below the DAO boundary; DAOs wrap them
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable
import logging

if TYPE_CHECKING:
    from ..config import DaoConfig

logger = logging.getLogger(__name__)


class EngineError(Exception):
    """Base exception for storage engine operations."""
    pass


class EngineConnectionError(EngineError):
    """Connection to the storage engine failed."""
    pass


class ConflictError(EngineError):
    """Write rejected because the revision/version token is stale."""
    pass


class NotFoundError(EngineError):
    """Record does not exist (or has been deleted)."""
    pass


class DocumentNotFoundError(NotFoundError):
    """Document does not exist (or has been deleted)."""
    pass


class InvalidDocumentError(EngineError):
    """Document rejected by the engine as malformed."""
    pass


@dataclass(frozen=True)
class BulkResult:
    """Outcome of one item of a bulk write.

    Attributes:
        id: Document identifier
        rev: New revision when the write succeeded
        error: Engine error kind (e.g. ``conflict``) when it failed
        reason: Human readable failure reason
    """
    id: str
    rev: str | None = None
    error: str | None = None
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BulkResult:
        """Create from a CouchDB ``_bulk_docs`` response row."""
        return cls(
            id=data.get("id", ""),
            rev=data.get("rev"),
            error=data.get("error"),
            reason=data.get("reason"),
        )


@runtime_checkable
class DocumentEngine(Protocol):
    """Protocol for schemaless, revisioned document stores.

    One physical database holds documents of many logical types; callers
    scope their queries with a discriminator field.

    Example:
        >>> engine = InMemoryDocumentEngine()
        >>> await engine.connect()
        >>> rev = await engine.put({"_id": "order1", "entityType": "order"})
        >>> doc = await engine.get("order1")
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the engine.

        Must be called before any other operations.

        Raises:
            EngineConnectionError: If connection fails
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release engine resources."""
        ...

    @abstractmethod
    async def get(self, doc_id: str) -> dict[str, Any]:
        """Fetch the current revision of a document.

        Raises:
            DocumentNotFoundError: If the document is missing or deleted
        """
        ...

    @abstractmethod
    async def put(self, doc: dict[str, Any]) -> str:
        """Create or replace a document.

        Args:
            doc: Document with ``_id``; ``_rev`` is required when replacing
                a live document

        Returns:
            The new revision

        Raises:
            ConflictError: If ``_rev`` is stale or missing for a live document
            InvalidDocumentError: If the engine rejects the document
        """
        ...

    @abstractmethod
    async def remove(self, doc_id: str, rev: str) -> str:
        """Delete a document at the given revision.

        Returns:
            The tombstone revision

        Raises:
            DocumentNotFoundError: If the document is missing or deleted
            ConflictError: If ``rev`` is stale
        """
        ...

    @abstractmethod
    async def bulk_docs(self, docs: list[dict[str, Any]]) -> list[BulkResult]:
        """Write many documents, each independently.

        Returns:
            One BulkResult per input document, in input order
        """
        ...

    @abstractmethod
    async def all_docs(self, keys: list[str] | None = None) -> list[dict[str, Any]]:
        """Fetch live documents by id, or every live document.

        Missing and deleted ids are skipped.
        """
        ...

    @abstractmethod
    async def find(self, selector: dict[str, Any]) -> list[dict[str, Any]]:
        """Return every live document whose fields equal the selector's."""
        ...

    @abstractmethod
    async def create_index(self, fields: list[str], name: str | None = None) -> None:
        """Create a query index over the given fields."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether currently connected to the engine."""
        ...


def create_document_engine(config: "DaoConfig") -> DocumentEngine:
    """Factory function to create a document engine from configuration.

    Args:
        config: DAO configuration

    Returns:
        Appropriate DocumentEngine implementation (not yet connected)

    Raises:
        ValueError: If the engine kind is not supported
    """
    from ..config import DocumentEngineKind
    from .couchdb import CouchDBEngine
    from .memory import InMemoryDocumentEngine

    if config.document_engine == DocumentEngineKind.COUCHDB:
        return CouchDBEngine(config.couchdb)
    elif config.document_engine == DocumentEngineKind.MEMORY:
        return InMemoryDocumentEngine()
    else:
        raise ValueError(f"Unsupported document engine: {config.document_engine}")
