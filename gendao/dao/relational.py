"""
Relational DAO.

Implements GenericDAO over SQLite, one table per logical type. Optimistic
locking uses an integer ``version`` column; transactions are native
(NativeTransaction) and every statement of a transactional call runs on
the transaction's connection.

Invariants:
    - New rows get a uuid4 ``_id`` (when absent) and ``version`` 1
    - update matches on ``_id`` and ``version`` and increments ``version``;
      zero matched rows is a conflict when the row exists
    - delete registers its re-insert compensation before deleting
    - bulk_save without a transaction is all-or-nothing

How to change safely:
    - Only validated identifiers may be interpolated into SQL; values are
      always bound parameters
    - Blocking helpers take the connection as their last argument so they
      can be bound with functools.partial and passed to SqliteEngine.run
"""

from __future__ import annotations

import sqlite3
import uuid
from dataclasses import dataclass, field
from functools import partial
from typing import Any
import logging

from ..dates import now_iso
from ..engines.base import ConflictError, EngineError, NotFoundError
from ..engines.sqlite import COUNTERS_TABLE, RelationalTable, SqliteEngine
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
from ..mapper import Mapper, RelationalMapper
from ..sequence import DEFAULT_MAX_RETRIES, Counter, SequenceGenerator
from ..transaction import NativeTransactionFactory, Transaction, TransactionFactory

logger = logging.getLogger(__name__)

_IMMUTABLE_ON_UPDATE = ("_id", "version", "createdDate")
_MANY_CHUNK = 500


# Blocking helpers, run through SqliteEngine.run


def _fetch_row(table: RelationalTable, row_id: str, conn: sqlite3.Connection) -> dict[str, Any] | None:
    row = conn.execute(f"SELECT * FROM {table.name} WHERE _id = ?", (row_id,)).fetchone()
    return dict(row) if row is not None else None


def _fetch_all(table: RelationalTable, conn: sqlite3.Connection) -> list[dict[str, Any]]:
    rows = conn.execute(f"SELECT * FROM {table.name} ORDER BY rowid").fetchall()
    return [dict(row) for row in rows]


def _fetch_many(
    table: RelationalTable, row_ids: list[str], conn: sqlite3.Connection
) -> list[dict[str, Any]]:
    found: list[dict[str, Any]] = []
    for start in range(0, len(row_ids), _MANY_CHUNK):
        chunk = row_ids[start:start + _MANY_CHUNK]
        placeholders = ", ".join("?" * len(chunk))
        rows = conn.execute(
            f"SELECT * FROM {table.name} WHERE _id IN ({placeholders})", chunk
        ).fetchall()
        found.extend(dict(row) for row in rows)
    return found


def _fetch_by_field(
    table: RelationalTable, column: str, value: Any, conn: sqlite3.Connection
) -> list[dict[str, Any]]:
    rows = conn.execute(
        f"SELECT * FROM {table.name} WHERE {column} IS ? ORDER BY rowid", (value,)
    ).fetchall()
    return [dict(row) for row in rows]


def _insert_row(
    table: RelationalTable,
    row: dict[str, Any],
    conn: sqlite3.Connection,
    verb: str = "INSERT",
) -> dict[str, Any] | None:
    columns = list(row)
    conn.execute(
        f"{verb} INTO {table.name} ({', '.join(columns)}) "
        f"VALUES ({', '.join('?' * len(columns))})",
        [row[column] for column in columns],
    )
    return _fetch_row(table, row["_id"], conn)


def _update_row(
    table: RelationalTable,
    row_id: str,
    version: int,
    values: dict[str, Any],
    conn: sqlite3.Connection,
) -> dict[str, Any]:
    assignments = "".join(f"{column} = ?, " for column in values)
    cursor = conn.execute(
        f"UPDATE {table.name} SET {assignments}version = version + 1 "
        f"WHERE _id = ? AND version = ?",
        [*values.values(), row_id, version],
    )
    if cursor.rowcount == 0:
        if _fetch_row(table, row_id, conn) is None:
            raise NotFoundError(f"Row not found: {table.name} {row_id}")
        raise ConflictError(f"Row version conflict: {table.name} {row_id} (version {version})")
    return _fetch_row(table, row_id, conn)


def _delete_row(table: RelationalTable, row_id: str, conn: sqlite3.Connection) -> None:
    conn.execute(f"DELETE FROM {table.name} WHERE _id = ?", (row_id,))


@dataclass
class _BulkItem:
    """One prepared bulk_save item."""
    row_id: str
    row: dict[str, Any] = field(default_factory=dict)
    version: int | None = None
    error: str | None = None


def _bulk_write(
    table: RelationalTable, items: list[_BulkItem], conn: sqlite3.Connection
) -> tuple[list[dict[str, Any]], list[tuple[str, str]]]:
    saved: list[dict[str, Any]] = []
    failures: list[tuple[str, str]] = []
    for item in items:
        if item.error is not None:
            failures.append((item.row_id, item.error))
            continue
        conn.execute("SAVEPOINT bulk_item")
        try:
            if item.version is not None:
                row = _update_row(table, item.row_id, item.version, item.row, conn)
            else:
                row = _insert_row(table, item.row, conn)
        except (sqlite3.Error, EngineError) as e:
            conn.execute("ROLLBACK TO SAVEPOINT bulk_item")
            conn.execute("RELEASE SAVEPOINT bulk_item")
            failures.append((item.row_id, str(e)))
        else:
            conn.execute("RELEASE SAVEPOINT bulk_item")
            saved.append(row)
    return saved, failures


# Counters


def _load_counter(name: str, conn: sqlite3.Connection) -> Counter | None:
    row = conn.execute(
        f"SELECT seq, version FROM {COUNTERS_TABLE} WHERE name = ?", (name,)
    ).fetchone()
    return Counter(name, row["seq"], row["version"]) if row is not None else None


def _insert_counter(name: str, conn: sqlite3.Connection) -> Counter:
    try:
        conn.execute(
            f"INSERT INTO {COUNTERS_TABLE} (_id, name, seq, version) VALUES (?, ?, 0, 1)",
            (str(uuid.uuid4()), name),
        )
    except sqlite3.IntegrityError as e:
        raise ConflictError(f"Counter already exists: {name}") from e
    return Counter(name, 0, 1)


def _save_counter(counter: Counter, conn: sqlite3.Connection) -> None:
    cursor = conn.execute(
        f"UPDATE {COUNTERS_TABLE} SET seq = ?, version = version + 1 "
        f"WHERE name = ? AND version = ?",
        (counter.value, counter.name, counter.revision),
    )
    if cursor.rowcount == 0:
        raise ConflictError(f"Counter version conflict: {counter.name}")


class RelationalCounterStore:
    """Counters kept as rows of the ``counters`` table."""

    def __init__(self, engine: SqliteEngine) -> None:
        self._engine = engine

    async def load_counter(self, name: str) -> Counter | None:
        return await self._engine.run(partial(_load_counter, name))

    async def insert_counter(self, name: str) -> Counter:
        return await self._engine.run(partial(_insert_counter, name))

    async def save_counter(self, counter: Counter) -> None:
        await self._engine.run(partial(_save_counter, counter))


class RelationalDAO:
    """GenericDAO over a SQLite table.

    Attributes:
        entity_type: The table name

    Example:
        >>> table = RelationalTable("orders", {"customer": "TEXT NOT NULL"})
        >>> dao = RelationalDAO(SqliteEngine("orders.db"), table, app_version="1.4.0")
        >>> await dao.initialize()
        >>> async with await dao.begin_transaction() as tx:
        ...     await dao.create({"customer": "acme"}, transaction=tx)
    """

    def __init__(
        self,
        engine: SqliteEngine,
        table: RelationalTable,
        *,
        app_version: str,
        transaction_factory: TransactionFactory | None = None,
        mapper: Mapper | None = None,
        sequence_max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> None:
        """Initialize the DAO.

        Args:
            engine: SQLite engine
            table: Table definition for the entity type
            app_version: Build/version string stamped into every row
            transaction_factory: Source of transactions (native by default)
            mapper: Row/Entity mapper (minimal relational mapper by default)
            sequence_max_retries: Default attempts for get_next_sequence_id
        """
        self._engine = engine
        self._table = table
        self.entity_type = table.name
        self._app_version = app_version
        self._transaction_factory = transaction_factory or NativeTransactionFactory(engine)
        self._mapper = mapper or RelationalMapper(entity_type=table.name)
        self._sequence = SequenceGenerator(RelationalCounterStore(engine), sequence_max_retries)

    @property
    def mapper(self) -> Mapper:
        return self._mapper

    @property
    def table(self) -> RelationalTable:
        return self._table

    async def initialize(self) -> None:
        """Create the entity table and the counters table if missing."""
        await self._engine.ensure_table(self._table)
        await self._engine.ensure_counters_table()

    async def begin_transaction(self) -> Transaction:
        return await self._transaction_factory.begin()

    def _connection_for(self, transaction: Transaction | None) -> sqlite3.Connection | None:
        if transaction is None:
            return None
        if not transaction.is_open:
            raise GenericError(
                f"Transaction is {transaction.state.value}",
                details={"transaction_id": transaction.transaction_id},
            )
        conn = transaction.connection
        if conn is None:
            raise GenericError(
                "Relational DAO requires a native transaction",
                details={"transaction_id": transaction.transaction_id},
            )
        return conn

    def _unknown_columns(self, record: dict[str, Any]) -> list[str]:
        known = self._table.all_columns
        return [name for name in record if name not in known]

    def _with_defaults(self, record: dict[str, Any]) -> dict[str, Any]:
        row = dict(record)
        if not row.get("_id"):
            row["_id"] = str(uuid.uuid4())
        row["version"] = 1
        row["appVersion"] = self._app_version
        if not row.get("createdDate"):
            row["createdDate"] = now_iso()
        return row

    def _update_values(self, record: dict[str, Any]) -> dict[str, Any]:
        values = {k: v for k, v in record.items() if k not in _IMMUTABLE_ON_UPDATE}
        values["appVersion"] = self._app_version
        values["updatedDate"] = now_iso()
        return values

    async def _undo_delete(self, row_id: str, committed: dict[str, Any] | None) -> None:
        if committed is None:
            logger.debug(
                "Deleted row was never committed, nothing to restore",
                extra={"table": self._table.name, "row_id": row_id},
            )
            return
        await self._engine.run(partial(_insert_row, self._table, committed, verb="INSERT OR IGNORE"))

    # Contract

    async def create(
        self, record: dict[str, Any], *, transaction: Transaction | None = None
    ) -> dict[str, Any]:
        """Insert a row and return it as stored.

        Raises:
            ValidationError: If the record has columns the table lacks
            CreateError: If the insert fails
        """
        unknown = self._unknown_columns(record)
        if unknown:
            raise ValidationError(
                f"Unknown column(s) for {self.entity_type}: {', '.join(unknown)}",
                errors=[f"{name} is not a column of {self.entity_type}" for name in unknown],
            )
        conn = self._connection_for(transaction)
        row = self._with_defaults(record)

        with wrap_errors(ErrorType.CREATE, f"Failed to create {self.entity_type} {row['_id']}"):
            created = await self._engine.run(partial(_insert_row, self._table, row), conn)

        logger.debug(
            "Row created",
            extra={"table": self.entity_type, "row_id": row["_id"]},
        )
        return created

    async def get_one(
        self, record_id: str, *, transaction: Transaction | None = None
    ) -> dict[str, Any]:
        conn = self._connection_for(transaction)
        with wrap_errors(ErrorType.GET, f"Failed to get {self.entity_type} {record_id}"):
            row = await self._engine.run(partial(_fetch_row, self._table, record_id), conn)
        if row is None:
            raise GetError(f"{self.entity_type} {record_id} not found")
        return row

    async def get_all(self, *, transaction: Transaction | None = None) -> list[dict[str, Any]]:
        conn = self._connection_for(transaction)
        with wrap_errors(ErrorType.GET, f"Failed to get all {self.entity_type} records"):
            return await self._engine.run(partial(_fetch_all, self._table), conn)

    async def get_many(
        self, record_ids: list[str], *, transaction: Transaction | None = None
    ) -> list[dict[str, Any]]:
        """Fetch rows by id, in the order requested.

        Raises:
            GetError: If any id is missing; the message names every one
        """
        conn = self._connection_for(transaction)
        with wrap_errors(ErrorType.GET, f"Failed to get {self.entity_type} records"):
            rows = await self._engine.run(
                partial(_fetch_many, self._table, list(record_ids)), conn
            )

        found = {row["_id"]: row for row in rows}
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
        """Write the record's columns if its ``version`` is still current.

        Raises:
            ValidationError: If ``_id`` or ``version`` is absent, or a
                column is unknown
            UpdateError: On failure; ``conflict`` is True for a stale version
        """
        errors = [f"{name} is required" for name in ("_id", "version") if record.get(name) in (None, "")]
        errors += [f"{name} is not a column of {self.entity_type}" for name in self._unknown_columns(record)]
        if errors:
            raise ValidationError(f"Invalid update of {self.entity_type}", errors=errors)
        conn = self._connection_for(transaction)
        row_id = record["_id"]

        try:
            return await self._engine.run(
                partial(_update_row, self._table, row_id, record["version"], self._update_values(record)),
                conn,
            )
        except ConflictError as e:
            raise UpdateError(
                f"{self.entity_type} {row_id} was modified concurrently (version {record['version']} is stale)",
                e,
                conflict=True,
                id=row_id,
            ) from e
        except NotFoundError as e:
            raise UpdateError(f"{self.entity_type} {row_id} not found", e, id=row_id) from e
        except Exception as e:
            raise UpdateError(f"Failed to update {self.entity_type} {row_id}", e, id=row_id) from e

    async def delete(self, record_id: str, *, transaction: Transaction | None = None) -> str:
        """Delete a row and return its prior version as text.

        Inside a transaction a re-insert compensation is registered before
        the delete is issued. It restores the last committed image of the
        row, and only if the row is absent when it runs.
        """
        conn = self._connection_for(transaction)
        with wrap_errors(ErrorType.DELETE, f"Failed to delete {self.entity_type} {record_id}"):
            current = await self._engine.run(partial(_fetch_row, self._table, record_id), conn)
            if current is None:
                raise DeleteError(f"{self.entity_type} {record_id} not found")

            if transaction is not None:
                committed = await self._engine.run(partial(_fetch_row, self._table, record_id))
                transaction.register_undo(
                    f"delete-undo:{record_id}",
                    partial(self._undo_delete, record_id, committed),
                )

            await self._engine.run(partial(_delete_row, self._table, record_id), conn)

        return str(current["version"])

    async def bulk_save(
        self, records: list[dict[str, Any]], *, transaction: Transaction | None = None
    ) -> list[dict[str, Any]]:
        """Insert or update many rows, each under its own savepoint.

        Items carrying both ``_id`` and ``version`` are updates; the rest
        are inserts. Without a transaction the batch runs in its own native
        transaction and nothing is kept if any item fails.

        Raises:
            BulkSaveError: If any item failed
        """
        conn = self._connection_for(transaction)

        items: list[_BulkItem] = []
        for record in records:
            unknown = self._unknown_columns(record)
            if record.get("_id") and record.get("version") is not None:
                item = _BulkItem(record["_id"], self._update_values(record), record["version"])
            else:
                row = self._with_defaults(record)
                item = _BulkItem(row["_id"], row)
            if unknown:
                item.error = f"Unknown column(s): {', '.join(unknown)}"
            items.append(item)

        write = partial(_bulk_write, self._table, items)
        if transaction is not None:
            with wrap_errors(ErrorType.BULK_SAVE, f"Failed to bulk save {self.entity_type} records"):
                saved, failures = await self._engine.run(write, conn)
        else:
            own = await NativeTransactionFactory(self._engine).begin()
            try:
                saved, failures = await self._engine.run(write, own.connection)
            except Exception as e:
                await own.rollback()
                raise BulkSaveError(
                    f"Failed to bulk save {self.entity_type} records",
                    e,
                    failed_ids=[item.row_id for item in items],
                ) from e
            if failures:
                await own.rollback()
                saved = []
            else:
                await own.commit()

        if failures:
            for row_id, reason in failures:
                logger.warning(
                    "Bulk save item failed",
                    extra={"table": self.entity_type, "row_id": row_id, "reason": reason},
                )
            failed_ids = [row_id for row_id, _ in failures]
            raise BulkSaveError(
                f"Bulk save of {self.entity_type} failed for {len(failed_ids)} of "
                f"{len(items)} record(s): {', '.join(failed_ids)}",
                failed_ids=failed_ids,
                saved=saved,
            )
        return saved

    async def find_by_field(
        self, field_name: str, value: Any, *, transaction: Transaction | None = None
    ) -> list[dict[str, Any]]:
        """Fetch rows whose column equals value (``None`` matches NULL).

        Raises:
            GetError: If the column is not part of the table
        """
        if field_name not in self._table.all_columns:
            raise GetError(f"{field_name} is not a column of {self.entity_type}")
        conn = self._connection_for(transaction)
        with wrap_errors(ErrorType.GET, f"Failed to find {self.entity_type} by {field_name}"):
            return await self._engine.run(
                partial(_fetch_by_field, self._table, field_name, value), conn
            )

    async def get_next_sequence_id(self, name: str, max_retries: int | None = None) -> int:
        """Increment the named counter row and return the new value."""
        return await self._sequence.next_value(name, max_retries)
