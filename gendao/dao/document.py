"""
Document-store DAO.

Implements GenericDAO over a DocumentEngine. One database holds many
logical types; every query is scoped by the ``entityType`` discriminator.
The engine has no multi-statement transactions, so transactional
all-or-nothing is emulated: each successful mutation inside a transaction
registers an undo action, and rollback replays them newest first.

Invariants:
    - Created ids are ``<entity_type><uuid4 hex>``
    - update requires ``_id`` and ``_rev``; a stale ``_rev`` raises
      UpdateError(conflict=True) and leaves the stored document unchanged
    - Undo actions look up the revision current when they run, not the
      one seen when they were registered
    - A record of another entity type is treated as missing

Known limitations:
    - update fetches, merges and writes without holding anything across
      the gap; a write landing in between is overwritten because the
      caller's ``_rev`` is the one sent
    - bulk_save without a transaction leaves the successful items
      persisted when other items fail
"""

from __future__ import annotations

import uuid
from functools import partial
from typing import Any
import logging

from ..dates import now_iso
from ..engines.base import (
    ConflictError,
    DocumentEngine,
    DocumentNotFoundError,
)
from ..errors import (
    BulkSaveError,
    DeleteError,
    ErrorType,
    GenericError,
    GetError,
    UpdateError,
    ValidationError,
    wrap_errors,
)
from ..mapper import DocumentMapper, Mapper
from ..sequence import DEFAULT_MAX_RETRIES, Counter, SequenceGenerator
from ..transaction import CompensatingTransactionFactory, Transaction, TransactionFactory

logger = logging.getLogger(__name__)

COUNTER_ENTITY_TYPE = "__counter__"


class DocumentCounterStore:
    """Counters kept as documents whose ``_id`` is the counter name."""

    def __init__(self, engine: DocumentEngine) -> None:
        self._engine = engine

    async def load_counter(self, name: str) -> Counter | None:
        """Load the counter document.

        Raises:
            GetError: If ``name`` is the id of a document that is not a counter
        """
        try:
            doc = await self._engine.get(name)
        except DocumentNotFoundError:
            return None
        if doc.get("entityType") != COUNTER_ENTITY_TYPE:
            raise GetError(
                f"Document {name} is not a counter",
                details={"counter": name, "entity_type": doc.get("entityType")},
            )
        return Counter(name, int(doc.get("seq", 0)), doc["_rev"])

    async def insert_counter(self, name: str) -> Counter:
        rev = await self._engine.put({"_id": name, "entityType": COUNTER_ENTITY_TYPE, "seq": 0})
        return Counter(name, 0, rev)

    async def save_counter(self, counter: Counter) -> None:
        await self._engine.put(
            {
                "_id": counter.name,
                "_rev": counter.revision,
                "entityType": COUNTER_ENTITY_TYPE,
                "seq": counter.value,
            }
        )


class DocumentDAO:
    """GenericDAO over a document engine.

    Attributes:
        entity_type: Discriminator written to and filtered on ``entityType``

    Example:
        >>> dao = DocumentDAO(engine, "order", app_version="1.4.0")
        >>> order = await dao.create({"customer": "acme"})
        >>> order = await dao.update({**order, "status": "paid"})
    """

    def __init__(
        self,
        engine: DocumentEngine,
        entity_type: str,
        *,
        app_version: str,
        transaction_factory: TransactionFactory | None = None,
        mapper: Mapper | None = None,
        sequence_max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> None:
        """Initialize the DAO.

        Args:
            engine: Connected document engine
            entity_type: Logical entity type served by this DAO
            app_version: Build/version string stamped into every record
            transaction_factory: Source of transactions (compensating by default)
            mapper: Record/Entity mapper (minimal document mapper by default)
            sequence_max_retries: Default attempts for get_next_sequence_id
        """
        self._engine = engine
        self.entity_type = entity_type
        self._app_version = app_version
        self._transaction_factory = transaction_factory or CompensatingTransactionFactory()
        self._mapper = mapper or DocumentMapper()
        self._sequence = SequenceGenerator(DocumentCounterStore(engine), sequence_max_retries)

    @property
    def mapper(self) -> Mapper:
        return self._mapper

    @property
    def engine(self) -> DocumentEngine:
        return self._engine

    async def begin_transaction(self) -> Transaction:
        return await self._transaction_factory.begin()

    def _check_transaction(self, transaction: Transaction | None) -> None:
        if transaction is not None and not transaction.is_open:
            raise GenericError(
                f"Transaction is {transaction.state.value}",
                details={"transaction_id": transaction.transaction_id},
            )

    def _with_defaults(self, record: dict[str, Any], entity_type: str | None = None) -> dict[str, Any]:
        doc = dict(record)
        doc["entityType"] = entity_type or self.entity_type
        if not doc.get("_id"):
            doc["_id"] = f"{doc['entityType']}{uuid.uuid4().hex}"
        doc["appVersion"] = self._app_version
        if not doc.get("createdDate"):
            doc["createdDate"] = now_iso()
        return doc

    # Undo actions

    async def _undo_create(self, doc_id: str) -> None:
        try:
            current = await self._engine.get(doc_id)
        except DocumentNotFoundError:
            logger.warning("Created document already gone during rollback", extra={"doc_id": doc_id})
            return
        await self._engine.remove(doc_id, current["_rev"])

    async def _undo_update(self, pre_image: dict[str, Any]) -> None:
        restored = {k: v for k, v in pre_image.items() if k != "_rev"}
        try:
            current = await self._engine.get(pre_image["_id"])
        except DocumentNotFoundError:
            current = None
        if current is not None:
            restored["_rev"] = current["_rev"]
        await self._engine.put(restored)

    async def _undo_delete(self, pre_image: dict[str, Any]) -> None:
        restored = {k: v for k, v in pre_image.items() if k != "_rev"}
        await self._engine.put(restored)

    # Contract

    async def create(
        self, record: dict[str, Any], *, transaction: Transaction | None = None
    ) -> dict[str, Any]:
        """Create a document.

        Assigns ``_id`` when absent, sets ``entityType``, ``appVersion`` and
        ``createdDate`` (when absent). Any ``_rev`` on the input is dropped.

        Raises:
            CreateError: If the engine rejects the document
        """
        self._check_transaction(transaction)
        doc = self._with_defaults(record)
        doc.pop("_rev", None)

        with wrap_errors(ErrorType.CREATE, f"Failed to create {self.entity_type} {doc['_id']}"):
            doc["_rev"] = await self._engine.put(doc)

        if transaction is not None:
            transaction.register_undo(
                f"create-undo:{doc['_id']}", partial(self._undo_create, doc["_id"])
            )
        logger.debug(
            "Document created",
            extra={"entity_type": self.entity_type, "doc_id": doc["_id"]},
        )
        return doc

    async def get_one(
        self, record_id: str, *, transaction: Transaction | None = None
    ) -> dict[str, Any]:
        """Fetch one document of this entity type.

        ``transaction`` is accepted for contract uniformity; document reads
        see committed state only.
        """
        try:
            doc = await self._engine.get(record_id)
        except DocumentNotFoundError as e:
            raise GetError(f"{self.entity_type} {record_id} not found", e) from e
        except Exception as e:
            raise GetError(f"Failed to get {self.entity_type} {record_id}", e) from e

        if doc.get("entityType") != self.entity_type:
            raise GetError(f"{self.entity_type} {record_id} not found")
        return doc

    async def get_all(self, *, transaction: Transaction | None = None) -> list[dict[str, Any]]:
        """Fetch every document of this entity type."""
        with wrap_errors(ErrorType.GET, f"Failed to get all {self.entity_type} records"):
            return await self._engine.find({"entityType": self.entity_type})

    async def get_many(
        self, record_ids: list[str], *, transaction: Transaction | None = None
    ) -> list[dict[str, Any]]:
        """Fetch documents by id, in the order requested.

        Raises:
            GetError: If any id is missing or belongs to another entity type
        """
        with wrap_errors(ErrorType.GET, f"Failed to get {self.entity_type} records"):
            docs = await self._engine.all_docs(keys=list(record_ids))

        found = {doc["_id"]: doc for doc in docs if doc.get("entityType") == self.entity_type}
        missing = [record_id for record_id in record_ids if record_id not in found]
        if missing:
            raise GetError(
                f"{self.entity_type} records not found: {', '.join(missing)}",
                details={"missing_ids": missing},
            )
        return [found[record_id] for record_id in record_ids]

    async def update(
        self, record: dict[str, Any], *, transaction: Transaction | None = None
    ) -> dict[str, Any]:
        """Merge the caller's fields over the stored document and write it.

        The write carries the caller's ``_rev``, so a stale caller is
        rejected by the engine.

        Raises:
            ValidationError: If ``_id`` or ``_rev`` is absent
            UpdateError: On failure; ``conflict`` is True for a stale ``_rev``
        """
        missing = [name for name in ("_id", "_rev") if not record.get(name)]
        if missing:
            raise ValidationError(
                f"Update of {self.entity_type} requires {' and '.join(missing)}",
                errors=[f"{name} is required" for name in missing],
            )
        self._check_transaction(transaction)
        doc_id = record["_id"]

        try:
            current = await self._engine.get(doc_id)
        except DocumentNotFoundError as e:
            raise UpdateError(f"{self.entity_type} {doc_id} not found", e, id=doc_id) from e
        except Exception as e:
            raise UpdateError(f"Failed to update {self.entity_type} {doc_id}", e, id=doc_id) from e
        if current.get("entityType") != self.entity_type:
            raise UpdateError(f"{self.entity_type} {doc_id} not found", id=doc_id)

        merged = {**current, **record}
        merged["_rev"] = record["_rev"]
        merged["entityType"] = self.entity_type
        merged["appVersion"] = self._app_version
        merged["updatedDate"] = now_iso()

        try:
            merged["_rev"] = await self._engine.put(merged)
        except ConflictError as e:
            raise UpdateError(
                f"{self.entity_type} {doc_id} was modified concurrently (revision {record['_rev']} is stale)",
                e,
                conflict=True,
                id=doc_id,
            ) from e
        except Exception as e:
            raise UpdateError(f"Failed to update {self.entity_type} {doc_id}", e, id=doc_id) from e

        if transaction is not None:
            transaction.register_undo(f"update-undo:{doc_id}", partial(self._undo_update, current))
        return merged

    async def delete(self, record_id: str, *, transaction: Transaction | None = None) -> str:
        """Delete a document and return the tombstone revision."""
        self._check_transaction(transaction)
        try:
            current = await self._engine.get(record_id)
        except DocumentNotFoundError as e:
            raise DeleteError(f"{self.entity_type} {record_id} not found", e) from e
        except Exception as e:
            raise DeleteError(f"Failed to delete {self.entity_type} {record_id}", e) from e
        if current.get("entityType") != self.entity_type:
            raise DeleteError(f"{self.entity_type} {record_id} not found")

        with wrap_errors(ErrorType.DELETE, f"Failed to delete {self.entity_type} {record_id}"):
            tombstone = await self._engine.remove(record_id, current["_rev"])

        if transaction is not None:
            transaction.register_undo(f"delete-undo:{record_id}", partial(self._undo_delete, current))
        return tombstone

    async def bulk_save(
        self, records: list[dict[str, Any]], *, transaction: Transaction | None = None
    ) -> list[dict[str, Any]]:
        """Create or update many documents, each attempted independently.

        Items keep their own ``entityType`` when set. Items carrying
        ``_rev`` replace the stored document at that revision.

        Raises:
            BulkSaveError: If any item failed; ``saved`` holds the items
                that were written (and, without a transaction, stay written)
        """
        self._check_transaction(transaction)
        docs = [self._with_defaults(record, record.get("entityType")) for record in records]
        for doc in docs:
            if doc.get("_rev"):
                doc["updatedDate"] = now_iso()

        pre_images: dict[str, dict[str, Any]] = {}
        with wrap_errors(ErrorType.BULK_SAVE, f"Failed to bulk save {self.entity_type} records"):
            if transaction is not None:
                updated_ids = [doc["_id"] for doc in docs if doc.get("_rev")]
                if updated_ids:
                    existing = await self._engine.all_docs(keys=updated_ids)
                    pre_images = {doc["_id"]: doc for doc in existing}
            results = await self._engine.bulk_docs(docs)

        saved: list[dict[str, Any]] = []
        failed_ids: list[str] = []
        for doc, result in zip(docs, results):
            if not result.ok:
                failed_ids.append(doc["_id"])
                logger.warning(
                    "Bulk save item failed",
                    extra={
                        "entity_type": self.entity_type,
                        "doc_id": doc["_id"],
                        "error": result.error,
                        "reason": result.reason,
                    },
                )
                continue

            doc["_rev"] = result.rev
            saved.append(doc)
            if transaction is not None:
                pre_image = pre_images.get(doc["_id"])
                if pre_image is not None:
                    transaction.register_undo(
                        f"update-undo:{doc['_id']}", partial(self._undo_update, pre_image)
                    )
                else:
                    transaction.register_undo(
                        f"create-undo:{doc['_id']}", partial(self._undo_create, doc["_id"])
                    )

        if failed_ids:
            raise BulkSaveError(
                f"Bulk save of {self.entity_type} failed for {len(failed_ids)} of "
                f"{len(docs)} record(s): {', '.join(failed_ids)}",
                failed_ids=failed_ids,
                saved=saved,
            )
        return saved

    async def find_by_field(
        self, field_name: str, value: Any, *, transaction: Transaction | None = None
    ) -> list[dict[str, Any]]:
        """Fetch documents of this entity type whose field equals value."""
        selector = {field_name: value, "entityType": self.entity_type}
        with wrap_errors(ErrorType.GET, f"Failed to find {self.entity_type} by {field_name}"):
            return await self._engine.find(selector)

    async def create_index(self, field_name: str) -> None:
        """Create an engine index over ``(entityType, field_name)``."""
        with wrap_errors(ErrorType.GENERIC, f"Failed to create index on {field_name}"):
            await self._engine.create_index(
                ["entityType", field_name], name=f"{self.entity_type}-{field_name}"
            )

    async def get_next_sequence_id(self, name: str, max_retries: int | None = None) -> int:
        """Increment the named counter document and return the new value."""
        return await self._sequence.next_value(name, max_retries)
