"""
gendao - Generic data access over document and relational stores.

Domain code performs CRUD, bulk writes, field lookups and sequence
generation through one contract, whichever store sits underneath:
- A schemaless document store with per-record revisions (CouchDB), where
  transactions are emulated with a compensating undo log
- A relational store with native transactions (SQLite)

Architecture:
    ┌──────────────┐     ┌──────────────┐     ┌──────────────────┐
    │ Domain code  │────▶│  GenericDAO  │────▶│ TransactionFactory│
    └──────────────┘     └──────┬───────┘     └──────────────────┘
                                │
                 ┌──────────────┴──────────────┐
                 ▼                             ▼
          ┌─────────────┐               ┌───────────────┐
          │ DocumentDAO │               │ RelationalDAO │
          └──────┬──────┘               └───────┬───────┘
                 ▼                              ▼
      ┌─────────────────────┐            ┌──────────────┐
      │ DocumentEngine      │            │ SqliteEngine │
      │ (CouchDB / memory)  │            └──────────────┘
      └─────────────────────┘

Invariants:
    - Only gendao.errors types cross the DAO boundary
    - Rollback replays compensations newest first
    - Sequence values are never handed out twice

How to change safely:
    - Contract changes must land in both DAOs together
    - Persisted field names are shared with existing databases; do not rename
"""

from ._version import __version__
from .config import DaoBackend, DaoConfig
from .dao import DocumentDAO, GenericDAO, RelationalDAO, create_dao
from .errors import (
    BulkSaveError,
    CreateError,
    DaoError,
    DeleteError,
    GenericError,
    GetError,
    MappingError,
    RollbackError,
    UpdateError,
    ValidationError,
)
from .mapper import Entity
from .transaction import Transaction, TransactionState

__all__ = [
    "__version__",
    "BulkSaveError",
    "CreateError",
    "DaoBackend",
    "DaoConfig",
    "DaoError",
    "DeleteError",
    "DocumentDAO",
    "Entity",
    "GenericDAO",
    "GenericError",
    "GetError",
    "MappingError",
    "RelationalDAO",
    "RollbackError",
    "Transaction",
    "TransactionState",
    "UpdateError",
    "ValidationError",
    "create_dao",
]
