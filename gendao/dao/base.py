"""
The GenericDAO contract and the configuration-driven DAO factory.

Domain code depends on GenericDAO only. Which backend sits behind it is
decided once, from DaoConfig.backend, by create_dao().

Invariants:
    - Every DAO raises only gendao.errors types
    - Mutating operations take an optional ``transaction`` keyword; when
      given, the DAO registers a compensation for each successful mutation
    - All records of one DAO belong to one logical entity type

How to change safely:
    - Contract changes require updating DocumentDAO and RelationalDAO
"""

from __future__ import annotations

from abc import abstractmethod
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable
import logging

from ..config import DaoBackend, DaoConfig
from ..errors import GenericError

if TYPE_CHECKING:
    from ..engines.base import DocumentEngine
    from ..engines.sqlite import RelationalTable, SqliteEngine
    from ..mapper import Mapper
    from ..transaction import Transaction

logger = logging.getLogger(__name__)


@runtime_checkable
class GenericDAO(Protocol):
    """Backend-independent data access for one logical entity type."""

    entity_type: str

    @property
    @abstractmethod
    def mapper(self) -> "Mapper":
        """Mapper between this DAO's records and Entity."""
        ...

    @abstractmethod
    async def begin_transaction(self) -> "Transaction":
        """Open a transaction from this DAO's transaction factory."""
        ...

    @abstractmethod
    async def create(
        self, record: dict[str, Any], *, transaction: "Transaction | None" = None
    ) -> dict[str, Any]:
        """Create a record; identity and revision are assigned by the backend.

        Raises:
            CreateError: If the backend rejects the record
        """
        ...

    @abstractmethod
    async def get_one(
        self, record_id: str, *, transaction: "Transaction | None" = None
    ) -> dict[str, Any]:
        """Fetch one record.

        Raises:
            GetError: If the record does not exist
        """
        ...

    @abstractmethod
    async def get_all(self, *, transaction: "Transaction | None" = None) -> list[dict[str, Any]]:
        """Fetch every record of this entity type."""
        ...

    @abstractmethod
    async def get_many(
        self, record_ids: list[str], *, transaction: "Transaction | None" = None
    ) -> list[dict[str, Any]]:
        """Fetch records by id, in the order requested.

        Raises:
            GetError: If any id is missing; the message names every missing id
        """
        ...

    @abstractmethod
    async def update(
        self, record: dict[str, Any], *, transaction: "Transaction | None" = None
    ) -> dict[str, Any]:
        """Update a record carrying its last-known revision/version.

        Raises:
            ValidationError: If identity or revision/version is absent
            UpdateError: On failure; ``conflict`` is True for stale tokens
        """
        ...

    @abstractmethod
    async def delete(self, record_id: str, *, transaction: "Transaction | None" = None) -> str:
        """Delete a record and return its tombstone/prior revision as text.

        Raises:
            DeleteError: If the record does not exist or cannot be deleted
        """
        ...

    @abstractmethod
    async def bulk_save(
        self, records: list[dict[str, Any]], *, transaction: "Transaction | None" = None
    ) -> list[dict[str, Any]]:
        """Create or update many records.

        Raises:
            BulkSaveError: If any item failed; carries every failed id
        """
        ...

    @abstractmethod
    async def find_by_field(
        self, field_name: str, value: Any, *, transaction: "Transaction | None" = None
    ) -> list[dict[str, Any]]:
        """Fetch records of this entity type whose field equals value."""
        ...

    @abstractmethod
    async def get_next_sequence_id(self, name: str, max_retries: int | None = None) -> int:
        """Increment the named counter and return the new value.

        Raises:
            GenericError: If every attempt lost a race
        """
        ...


async def create_dao(
    config: DaoConfig,
    entity_type: str,
    *,
    table: "RelationalTable | None" = None,
    document_engine: "DocumentEngine | None" = None,
    sqlite_engine: "SqliteEngine | None" = None,
    mapper: "Mapper | None" = None,
) -> GenericDAO:
    """Build the DAO for the configured backend.

    Engines are created from configuration unless supplied; a supplied
    document engine is connected if it is not already.

    Args:
        config: DAO configuration
        entity_type: Logical entity type served by the DAO
        table: Table definition (relational backend); defaults to a table
            named after the entity type with no domain columns
        document_engine: Shared document engine (document backend)
        sqlite_engine: Shared SQLite engine (relational backend)
        mapper: Mapper override

    Returns:
        A ready-to-use DAO

    Raises:
        GenericError: If the backend is not supported, or the table is
            named differently from the entity type
    """
    from .document import DocumentDAO
    from .relational import RelationalDAO

    if config.backend == DaoBackend.DOCUMENT:
        from ..engines.base import create_document_engine

        engine = document_engine or create_document_engine(config)
        if not engine.is_connected:
            await engine.connect()
        dao: GenericDAO = DocumentDAO(
            engine,
            entity_type,
            app_version=config.app_version,
            mapper=mapper,
            sequence_max_retries=config.sequence.max_retries,
        )
    elif config.backend == DaoBackend.RELATIONAL:
        from ..engines.sqlite import RelationalTable, SqliteEngine

        if table is not None and table.name != entity_type:
            raise GenericError(
                f"Table {table.name} does not match entity type {entity_type}"
            )
        sqlite = sqlite_engine or SqliteEngine.from_config(config.sqlite)
        relational = RelationalDAO(
            sqlite,
            table or RelationalTable(entity_type),
            app_version=config.app_version,
            mapper=mapper,
            sequence_max_retries=config.sequence.max_retries,
        )
        await relational.initialize()
        dao = relational
    else:
        raise GenericError(f"Unsupported DAO backend: {config.backend}")

    logger.debug(
        "DAO created",
        extra={"backend": config.backend.value, "entity_type": entity_type},
    )
    return dao
