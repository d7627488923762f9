"""
Storage engines for gendao.

Document engines implement the DocumentEngine protocol (CouchDB over HTTP,
or in-memory for tests); the relational backend runs on SqliteEngine.
"""

from .base import (
    BulkResult,
    ConflictError,
    DocumentEngine,
    DocumentNotFoundError,
    EngineConnectionError,
    EngineError,
    InvalidDocumentError,
    NotFoundError,
    create_document_engine,
)
from .couchdb import CouchDBEngine
from .memory import InMemoryDocumentEngine
from .sqlite import RelationalTable, SqliteEngine

__all__ = [
    "BulkResult",
    "ConflictError",
    "CouchDBEngine",
    "DocumentEngine",
    "DocumentNotFoundError",
    "EngineConnectionError",
    "EngineError",
    "InMemoryDocumentEngine",
    "InvalidDocumentError",
    "NotFoundError",
    "RelationalTable",
    "SqliteEngine",
    "create_document_engine",
]
