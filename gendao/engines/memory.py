"""
In-memory document engine implementation for testing.

This module provides a revisioned, in-memory document store for:
- Unit tests
- Local development without a CouchDB server

Invariants:
    - All data is lost on process exit
    - Revision tokens follow the ``<generation>-<hex>`` shape CouchDB uses
    - Every operation yields to the event loop once, so concurrent callers
      interleave the way they would against a remote store

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep behaviour compatible with CouchDBEngine for the operations used
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import copy
import uuid
from dataclasses import dataclass, field
from typing import Any
import logging

from .base import (
    BulkResult,
    ConflictError,
    DocumentNotFoundError,
    EngineConnectionError,
    EngineError,
    InvalidDocumentError,
)

logger = logging.getLogger(__name__)


@dataclass
class _StoredDocument:
    """One document slot, live or tombstoned."""
    rev: str
    body: dict[str, Any] = field(default_factory=dict)
    deleted: bool = False

    @property
    def generation(self) -> int:
        return int(self.rev.split("-", 1)[0])


def _next_rev(previous: _StoredDocument | None) -> str:
    generation = previous.generation + 1 if previous is not None else 1
    return f"{generation}-{uuid.uuid4().hex}"


class InMemoryDocumentEngine:
    """In-memory implementation of DocumentEngine for testing.

    Attributes:
        indexes: Field lists passed to create_index, keyed by index name

    Example:
        >>> engine = InMemoryDocumentEngine()
        >>> await engine.connect()
        >>> rev = await engine.put({"_id": "a", "entityType": "order"})
        >>> await engine.remove("a", rev)
    """

    def __init__(self) -> None:
        self._docs: dict[str, _StoredDocument] = {}
        self.indexes: dict[str, list[str]] = {}
        self._connected = False
        self._pending_failure: Exception | None = None

    @property
    def is_connected(self) -> bool:
        """Whether connected."""
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("In-memory document engine connected")

    async def close(self) -> None:
        """Close (no-op for in-memory)."""
        self._connected = False
        logger.debug("In-memory document engine closed")

    async def _enter(self) -> None:
        if not self._connected:
            raise EngineConnectionError("Not connected")
        await asyncio.sleep(0)
        if self._pending_failure is not None:
            failure, self._pending_failure = self._pending_failure, None
            raise failure

    def _live(self, doc_id: str) -> _StoredDocument:
        stored = self._docs.get(doc_id)
        if stored is None or stored.deleted:
            raise DocumentNotFoundError(f"Document not found: {doc_id}")
        return stored

    def _export(self, doc_id: str, stored: _StoredDocument) -> dict[str, Any]:
        doc = copy.deepcopy(stored.body)
        doc["_id"] = doc_id
        doc["_rev"] = stored.rev
        return doc

    def _write(self, doc: dict[str, Any]) -> str:
        doc_id = doc.get("_id")
        if not doc_id or not isinstance(doc_id, str):
            raise InvalidDocumentError("Document must have a string _id")
        if doc_id.startswith("_"):
            raise InvalidDocumentError(f"Only reserved document ids may start with underscore: {doc_id}")

        rev = doc.get("_rev")
        existing = self._docs.get(doc_id)
        if existing is None:
            if rev:
                raise ConflictError(f"Document update conflict: {doc_id}")
        elif existing.deleted:
            if rev and rev != existing.rev:
                raise ConflictError(f"Document update conflict: {doc_id}")
        elif rev != existing.rev:
            raise ConflictError(f"Document update conflict: {doc_id}")

        body = {k: copy.deepcopy(v) for k, v in doc.items() if k not in ("_id", "_rev")}
        new_rev = _next_rev(existing)
        self._docs[doc_id] = _StoredDocument(rev=new_rev, body=body)
        return new_rev

    async def get(self, doc_id: str) -> dict[str, Any]:
        """Fetch the current revision of a document."""
        await self._enter()
        return self._export(doc_id, self._live(doc_id))

    async def put(self, doc: dict[str, Any]) -> str:
        """Create or replace a document."""
        await self._enter()
        return self._write(doc)

    async def remove(self, doc_id: str, rev: str) -> str:
        """Delete a document, leaving a tombstone."""
        await self._enter()
        stored = self._live(doc_id)
        if rev != stored.rev:
            raise ConflictError(f"Document update conflict: {doc_id}")
        tombstone = _next_rev(stored)
        self._docs[doc_id] = _StoredDocument(rev=tombstone, deleted=True)
        return tombstone

    async def bulk_docs(self, docs: list[dict[str, Any]]) -> list[BulkResult]:
        """Write many documents, each independently."""
        await self._enter()
        results = []
        for doc in docs:
            doc_id = doc.get("_id") or ""
            try:
                rev = self._write(doc)
            except ConflictError as e:
                results.append(BulkResult(id=doc_id, error="conflict", reason=str(e)))
            except InvalidDocumentError as e:
                results.append(BulkResult(id=doc_id, error="bad_request", reason=str(e)))
            else:
                results.append(BulkResult(id=doc_id, rev=rev))
        return results

    async def all_docs(self, keys: list[str] | None = None) -> list[dict[str, Any]]:
        """Fetch live documents by id, or every live document."""
        await self._enter()
        ids = keys if keys is not None else sorted(self._docs)
        docs = []
        for doc_id in ids:
            stored = self._docs.get(doc_id)
            if stored is not None and not stored.deleted:
                docs.append(self._export(doc_id, stored))
        return docs

    async def find(self, selector: dict[str, Any]) -> list[dict[str, Any]]:
        """Return every live document whose fields equal the selector's."""
        await self._enter()
        matches = []
        for doc_id in sorted(self._docs):
            stored = self._docs[doc_id]
            if stored.deleted:
                continue
            doc = self._export(doc_id, stored)
            if all(key in doc and doc[key] == value for key, value in selector.items()):
                matches.append(doc)
        return matches

    async def create_index(self, fields: list[str], name: str | None = None) -> None:
        """Record an index definition."""
        await self._enter()
        self.indexes[name or "-".join(fields)] = list(fields)

    # Testing helpers

    def get_revision(self, doc_id: str) -> str | None:
        """Current revision of a document, including tombstones."""
        stored = self._docs.get(doc_id)
        return stored.rev if stored is not None else None

    def is_deleted(self, doc_id: str) -> bool:
        """Whether a document exists only as a tombstone."""
        stored = self._docs.get(doc_id)
        return stored is not None and stored.deleted

    def live_count(self) -> int:
        """Number of live (non-deleted) documents."""
        return sum(1 for stored in self._docs.values() if not stored.deleted)

    def clear(self) -> None:
        """Drop every document and index."""
        self._docs.clear()
        self.indexes.clear()

    def inject_failure(self, exception: Exception | None = None) -> None:
        """Inject a failure for testing.

        The next operation will raise this exception.

        Args:
            exception: Exception to raise (defaults to EngineError)
        """
        self._pending_failure = exception or EngineError("Injected failure")
